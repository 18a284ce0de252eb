import json
from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import StreamingResponse

from app.auth import assert_actor_authorized
from app.models import DeviceTokenRegisterRequest, NotificationPreferences, NotificationPreferencesUpdate, NotificationRecord
from app.routers.common import raise_http_error, sse_events
from app.services.errors import LifecycleError
from app.services.notification_dispatcher import notification_dispatcher
from app.services.realtime import realtime_hub

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    user_id: str = Query(...),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return notification_dispatcher.list_for_user(user_id=user_id, unread_only=unread_only, limit=limit)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/unread-count", response_model=dict)
def unread_count(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return {"user_id": user_id, "unread": notification_dispatcher.unread_count(user_id)}
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/register-device", response_model=dict)
def register_device(
    payload: DeviceTokenRegisterRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        notification_dispatcher.register_device_token(
            user_id=payload.user_id,
            device_token=payload.device_token,
            platform=payload.platform,
        )
    except LifecycleError as exc:
        raise_http_error(exc)
    return {"status": "ok"}


@router.post("/read-all", response_model=dict)
def mark_all_read(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return {"user_id": user_id, "updated": notification_dispatcher.mark_all_read(user_id)}
    except LifecycleError as exc:
        raise_http_error(exc)


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(
    notification_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return notification_dispatcher.mark_read(notification_id=notification_id, actor_id=user_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/preferences", response_model=NotificationPreferences)
def get_preferences(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return notification_dispatcher.get_preferences(user_id)
    except LifecycleError as exc:
        raise_http_error(exc)


@router.put("/preferences", response_model=NotificationPreferences)
def set_preferences(
    payload: NotificationPreferencesUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        return notification_dispatcher.set_preferences(payload.user_id, dict(payload.preferences))
    except LifecycleError as exc:
        raise_http_error(exc)


@router.get("/stream")
def stream_notifications(
    request: Request,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    subscription = realtime_hub.subscribe("notifications", user_id)
    events = sse_events(
        subscription,
        encode=lambda event: json.dumps(event.as_dict()),
        event_name="notification",
        request=request,
    )
    return StreamingResponse(events, media_type="text/event-stream")
