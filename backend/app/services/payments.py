import json
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import stripe

from app.config import PAYMENT_CURRENCY, STRIPE_API_KEY, STRIPE_CANCEL_URL, STRIPE_SUCCESS_URL, STRIPE_WEBHOOK_SECRET
from app.models import Booking
from app.services.errors import PaymentUnavailable, ValidationError

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass
class CheckoutSession:
    url: str
    session_id: Optional[str] = None


@dataclass
class CheckoutCompletion:
    booking_id: str
    session_id: str
    payment_reference: str
    amount_total: Optional[int] = None


def to_minor_units(amount: float) -> int:
    """Stripe expects unit_amount in cents."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeCheckoutCollaborator:
    def __init__(
        self,
        api_key: str = STRIPE_API_KEY,
        success_url: str = STRIPE_SUCCESS_URL,
        cancel_url: str = STRIPE_CANCEL_URL,
        currency: str = PAYMENT_CURRENCY,
    ):
        self._api_key = api_key
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._currency = currency.lower()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def create_checkout_session(self, booking: Booking) -> CheckoutSession:
        if not self.configured:
            raise PaymentUnavailable("Payments are not configured")
        if booking.deposit_amount is None:
            raise ValidationError("Booking has no deposit amount", field="deposit_amount")

        procedure_names = ", ".join(item.name for item in booking.procedures) or "Procedure"
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": self._currency,
                            "product_data": {"name": f"Deposit: {procedure_names}"[:100]},
                            "unit_amount": to_minor_units(booking.deposit_amount),
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self._success_url.format(booking_id=booking.id),
                cancel_url=self._cancel_url.format(booking_id=booking.id),
                metadata={"booking_id": booking.id, "traveler_id": booking.traveler_id},
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session failed for booking %s", booking.id)
            raise PaymentUnavailable("Payment provider is unavailable, please retry") from exc
        return CheckoutSession(url=session.url, session_id=session.id)


def parse_webhook_event(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str] = None,
    api_key: Optional[str] = None,
) -> Dict[str, Any]:
    secret = STRIPE_WEBHOOK_SECRET if secret is None else secret
    api_key = STRIPE_API_KEY if api_key is None else api_key
    if not secret:
        if api_key:
            # Live payments never accept unsigned events.
            raise ValidationError("Stripe webhook secret is not configured")
        try:
            event = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("Invalid webhook payload") from exc
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")
        return event
    try:
        return stripe.Webhook.construct_event(payload, signature or "", secret)
    except stripe.SignatureVerificationError as exc:
        raise ValidationError("Invalid Stripe signature") from exc
    except ValueError as exc:
        raise ValidationError("Invalid webhook payload") from exc


def checkout_completion(event: Dict[str, Any]) -> Optional[CheckoutCompletion]:
    """Return the paid checkout carried by ``event``, else None."""
    if event.get("type") != CHECKOUT_COMPLETED:
        return None
    session = (event.get("data") or {}).get("object") or {}
    if session.get("payment_status") != "paid":
        return None
    booking_id = (session.get("metadata") or {}).get("booking_id")
    if not booking_id:
        logger.warning("Checkout session %s has no booking_id metadata", session.get("id"))
        return None
    amount_total = session.get("amount_total")
    return CheckoutCompletion(
        booking_id=str(booking_id),
        session_id=str(session.get("id") or ""),
        payment_reference=str(session.get("payment_intent") or session.get("id") or ""),
        amount_total=int(amount_total) if amount_total is not None else None,
    )


stripe_checkout = StripeCheckoutCollaborator()
