import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import HTTPException, Request

from app.config import REALTIME_KEEPALIVE_SECONDS, REALTIME_POLL_SECONDS
from app.services.errors import (
    InvalidTransition,
    LifecycleError,
    NotFound,
    PaymentUnavailable,
    PermissionDenied,
    TransientStoreError,
    ValidationError,
)
from app.services.realtime import SubscriptionClosed

logger = logging.getLogger(__name__)


def raise_http_error(exc: LifecycleError) -> None:
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=400, detail={"message": str(exc), "field": exc.field})
    if isinstance(exc, PermissionDenied):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "current_status": exc.current_status, "attempted": exc.attempted},
        )
    if isinstance(exc, (TransientStoreError, PaymentUnavailable)):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


async def sse_events(
    subscription: Any,
    encode: Callable[[Any], str],
    event_name: str,
    event_id: Optional[Callable[[Any], Any]] = None,
    request: Optional[Request] = None,
    keepalive_seconds: float = REALTIME_KEEPALIVE_SECONDS,
    poll_seconds: float = REALTIME_POLL_SECONDS,
) -> AsyncIterator[str]:
    """Server-sent events from a live subscription, with keep-alive comments on idle.

    Runs on the event loop and only polls the subscription without blocking,
    so open streams do not hold threadpool workers. Ends when the client
    disconnects.
    """
    last_sent = time.monotonic()
    try:
        while True:
            if request is not None and await request.is_disconnected():
                return
            try:
                item = subscription.get()
            except SubscriptionClosed:
                # Client must re-fetch state before subscribing again.
                yield f"event: resync\ndata: {json.dumps({'reason': 'subscription closed'})}\n\n"
                return
            if item is None:
                if time.monotonic() - last_sent >= keepalive_seconds:
                    last_sent = time.monotonic()
                    yield ": keep-alive\n\n"
                else:
                    await asyncio.sleep(poll_seconds)
                continue
            last_sent = time.monotonic()
            prefix = f"id: {event_id(item)}\n" if event_id else ""
            yield f"{prefix}event: {event_name}\ndata: {encode(item)}\n\n"
    finally:
        subscription.close()
