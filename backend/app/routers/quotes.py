from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query

from app.auth import assert_actor_authorized
from app.models import Provider, QuoteRequest, QuoteRequestCreate, QuoteRequestView
from app.routers.common import raise_http_error
from app.services.errors import LifecycleError
from app.services.lifecycle import lifecycle_engine
from app.services.notification_dispatcher import notification_dispatcher

router = APIRouter(tags=["quotes"])


@router.get("/providers", response_model=list[Provider])
def list_providers():
    try:
        return lifecycle_engine.list_providers()
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/providers/{provider_id}", response_model=Provider)
def get_provider(provider_id: str):
    try:
        return lifecycle_engine.get_provider(provider_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/quote-requests", response_model=QuoteRequestView)
def submit_quote_request(
    request: QuoteRequestCreate,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.traveler_id, authorization=authorization)
    try:
        quote_request, booking = lifecycle_engine.submit_quote_request(
            traveler_id=request.traveler_id,
            provider_id=request.provider_id,
            procedures=request.procedures,
            contact_email=request.contact_email,
            trip_brief_id=request.trip_brief_id,
            is_group=request.is_group,
            group_members=request.group_members,
            travel_window_start=request.travel_window_start,
            travel_window_end=request.travel_window_end,
            is_flexible=request.is_flexible,
            notes=request.notes,
            contact_phone=request.contact_phone,
            comparing_providers=request.comparing_providers,
            request_type=request.request_type,
        )
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return QuoteRequestView(quote_request=quote_request, booking=booking)


@router.get("/quote-requests", response_model=list[QuoteRequest])
def list_quote_requests(
    user_id: str = Query(...),
    provider_id: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        if provider_id:
            if not lifecycle_engine.is_provider_member(provider_id, user_id):
                raise HTTPException(status_code=403, detail="Not a member of this provider")
            return lifecycle_engine.list_quote_requests(provider_id=provider_id)
        return lifecycle_engine.list_quote_requests(traveler_id=user_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/quote-requests/{quote_request_id}", response_model=QuoteRequestView)
def get_quote_request(
    quote_request_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        quote_request = lifecycle_engine.get_quote_request(quote_request_id)
        if quote_request.traveler_id != user_id and not lifecycle_engine.is_provider_member(quote_request.provider_id, user_id):
            raise HTTPException(status_code=403, detail="Not allowed to view this quote request")
        booking = lifecycle_engine.get_booking(quote_request.booking_id) if quote_request.booking_id else None
        if booking is None:
            raise HTTPException(status_code=404, detail="Quote request has no booking")
        return QuoteRequestView(quote_request=quote_request, booking=booking)
    except LifecycleError as exc:
        raise_http_error(exc)
