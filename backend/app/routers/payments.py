import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.routers.common import raise_http_error
from app.services.errors import InvalidTransition, LifecycleError, NotFound, ValidationError
from app.services.lifecycle import lifecycle_engine
from app.services.notification_dispatcher import notification_dispatcher
from app.services.payments import checkout_completion, parse_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/stripe/webhook", response_model=dict)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(default=None),
):
    payload = await request.body()
    try:
        event = parse_webhook_event(payload, stripe_signature)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    completion = checkout_completion(event)
    if completion is None:
        return {"received": True}

    try:
        booking = await run_in_threadpool(
            lifecycle_engine.confirm_deposit_payment,
            completion.booking_id,
            completion.payment_reference,
            session_id=completion.session_id,
            amount_total=completion.amount_total,
        )
    except (NotFound, InvalidTransition, ValidationError) as exc:
        # Stripe retries anything but 2xx; these will never succeed.
        logger.warning(
            "Ignoring checkout %s for booking %s: %s", completion.session_id, completion.booking_id, exc
        )
        return {"received": True, "result": "ignored"}
    except LifecycleError as exc:
        raise_http_error(exc)
    background_tasks.add_task(notification_dispatcher.kick)
    return {"received": True, "result": booking.status}
