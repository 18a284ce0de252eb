import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from app.auth import assert_actor_authorized
from app.models import (
    Booking,
    BookingActionRequest,
    BookingStatusChange,
    InquiryCreateRequest,
    Message,
    MessageCreateRequest,
    PaymentSessionHandle,
    QuoteSubmitRequest,
)
from app.routers.common import raise_http_error, sse_events
from app.services.errors import LifecycleError
from app.services.lifecycle import lifecycle_engine
from app.services.message_thread import message_thread
from app.services.notification_dispatcher import notification_dispatcher
from app.services.realtime import realtime_hub

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _participant_booking(booking_id: str, user_id: str) -> Booking:
    booking = lifecycle_engine.get_booking(booking_id)
    if not lifecycle_engine.is_participant(booking, user_id):
        raise HTTPException(status_code=403, detail="Not a participant of this booking")
    return booking


@router.post("", response_model=Booking)
def create_inquiry(
    request: InquiryCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.traveler_id, authorization=authorization)
    try:
        booking = lifecycle_engine.submit_inquiry(
            traveler_id=request.traveler_id,
            provider_id=request.provider_id,
            procedures=request.procedures,
            preferred_dates=request.preferred_dates,
            message=request.message,
            medical_notes=request.medical_notes,
            trip_brief_id=request.trip_brief_id,
        )
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return booking


@router.get("", response_model=list[Booking])
def list_bookings(
    user_id: str = Query(...),
    role: str = Query(default="all"),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return lifecycle_engine.list_bookings(user_id=user_id, role=role)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(
    booking_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return _participant_booking(booking_id, user_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChange])
def get_booking_history(
    booking_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        _participant_booking(booking_id, user_id)
        return lifecycle_engine.get_status_history(booking_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/{booking_id}/quote", response_model=Booking)
def submit_quote(
    booking_id: str,
    request: QuoteSubmitRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        booking = lifecycle_engine.submit_quote(
            booking_id=booking_id,
            actor_id=request.actor_id,
            price=request.price,
            deposit_percent=request.deposit_percent,
            estimated_dates=request.estimated_dates,
            message=request.message,
        )
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return booking


@router.post("/{booking_id}/deposit-session", response_model=PaymentSessionHandle)
def create_deposit_session(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        return lifecycle_engine.initiate_deposit_payment(booking_id=booking_id, actor_id=request.actor_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/{booking_id}/confirm", response_model=Booking)
def confirm_trip(
    booking_id: str,
    request: BookingActionRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        booking = lifecycle_engine.confirm_trip(booking_id=booking_id, actor_id=request.actor_id, note=request.note)
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return booking


@router.post("/{booking_id}/complete", response_model=Booking)
def mark_completed(
    booking_id: str,
    request: BookingActionRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        booking = lifecycle_engine.mark_completed(booking_id=booking_id, actor_id=request.actor_id, note=request.note)
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return booking


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    request: BookingActionRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_id, authorization=authorization)
    try:
        booking = lifecycle_engine.cancel(booking_id=booking_id, actor_id=request.actor_id, note=request.note)
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return booking


@router.get("/{booking_id}/messages", response_model=list[Message])
def list_messages(
    booking_id: str,
    user_id: str = Query(...),
    after_seq: int = Query(default=0, ge=0),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        _participant_booking(booking_id, user_id)
        return message_thread.list_messages(booking_id, after_seq=after_seq)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/{booking_id}/messages", response_model=Message)
def post_message(
    booking_id: str,
    request: MessageCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.sender_id, authorization=authorization)
    try:
        message = message_thread.post_message(booking_id, sender_id=request.sender_id, body=request.body)
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return message


@router.get("/{booking_id}/messages/stream")
def stream_messages(
    request: Request,
    booking_id: str,
    user_id: str = Query(...),
    last_seen_seq: Optional[int] = Query(default=None, ge=0),
    last_event_id: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    if last_seen_seq is None:
        # EventSource reconnects send the last delivered seq back as Last-Event-ID.
        last_seen_seq = int(last_event_id) if last_event_id and last_event_id.isdigit() else 0
    try:
        _participant_booking(booking_id, user_id)
        subscription = message_thread.subscribe(booking_id, last_seen_seq=last_seen_seq)
    except LifecycleError as exc:
        raise_http_error(exc)
    events = sse_events(
        subscription,
        encode=lambda message: message.model_dump_json(),
        event_name="message",
        event_id=lambda message: message.seq,
        request=request,
    )
    return StreamingResponse(events, media_type="text/event-stream")


@router.get("/{booking_id}/stream")
def stream_booking(
    request: Request,
    booking_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        _participant_booking(booking_id, user_id)
    except LifecycleError as exc:
        raise_http_error(exc)
    subscription = realtime_hub.subscribe("bookings", booking_id)
    events = sse_events(
        subscription,
        encode=lambda event: json.dumps(event.as_dict()),
        event_name="booking",
        request=request,
    )
    return StreamingResponse(events, media_type="text/event-stream")
