from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from app.auth import assert_actor_authorized
from app.models import AttachQuoteRequest, TripBrief, TripBriefCreateRequest, TripBriefUpdateRequest, TripBriefView
from app.routers.common import raise_http_error
from app.services.errors import LifecycleError
from app.services.trip_briefs import trip_brief_linker

router = APIRouter(prefix="/trip-briefs", tags=["trip-briefs"])


@router.post("", response_model=TripBrief)
def create_trip_brief(
    request: TripBriefCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.traveler_id, authorization=authorization)
    try:
        return trip_brief_linker.create_trip_brief(**request.model_dump())
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[TripBrief])
def list_trip_briefs(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return trip_brief_linker.list_trip_briefs(user_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/{trip_brief_id}", response_model=TripBriefView)
def get_trip_brief(
    trip_brief_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        view = trip_brief_linker.get_view(trip_brief_id)
    except LifecycleError as exc:
        raise_http_error(exc)
    if view.trip_brief.traveler_id != user_id:
        raise HTTPException(status_code=403, detail="Not allowed to view this trip brief")
    return view


@router.patch("/{trip_brief_id}", response_model=TripBrief)
def update_trip_brief(
    trip_brief_id: str,
    request: TripBriefUpdateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    changes = request.model_dump(exclude={"actor_id"}, exclude_none=True)
    try:
        return trip_brief_linker.update_trip_brief(trip_brief_id, actor_id=request.actor_id, **changes)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/{trip_brief_id}/quote-requests", response_model=TripBriefView)
def attach_quote_request(
    trip_brief_id: str,
    request: AttachQuoteRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        brief = trip_brief_linker.get_trip_brief(trip_brief_id)
        if brief.traveler_id != request.actor_id:
            raise HTTPException(status_code=403, detail="Only the traveler who created this trip brief can link requests")
        trip_brief_linker.attach_quote_request(trip_brief_id, request.quote_request_id)
        return trip_brief_linker.get_view(trip_brief_id)
    except LifecycleError as exc:
        raise_http_error(exc)
