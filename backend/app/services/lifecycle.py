import logging
import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from app.config import ADMIN_USER_IDS, DEFAULT_DEPOSIT_PERCENT
from app.models import Booking, BookingStatusChange, PaymentSessionHandle, PreferredDates, Provider, QuoteRequest
from app.services.database import Database, Transaction, database, dump_json, new_id, utc_now_iso
from app.services.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from app.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher
from app.services.payments import StripeCheckoutCollaborator, stripe_checkout, to_minor_units
from app.services.realtime import RealtimeHub, realtime_hub
from app.services.rows import booking_from_row, quote_request_from_row
from app.services.trip_briefs import TripBriefLinker, trip_brief_linker
from app.services.validation import check_window, clean_email, clean_group_members, clean_procedures, parse_optional_date

logger = logging.getLogger(__name__)

QUOTABLE_STATUSES = ("inquiry", "provider_responded", "quoted")
CANCELLABLE_STATUSES = ("inquiry", "quoted")
PAID_STATUSES = {"deposit_paid", "confirmed", "completed"}
BOOKING_ROLES = {"all", "traveler", "provider"}


def compute_deposit(price: float, deposit_percent: float) -> float:
    """Deposit rounded to cents, halves away from zero."""
    amount = Decimal(str(price)) * Decimal(str(deposit_percent)) / Decimal(100)
    return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def preferred_dates_text(is_flexible: bool, start: Optional[str], end: Optional[str]) -> str:
    if is_flexible:
        return "Flexible"
    if start and end:
        return f"{start} to {end}"
    return start or end or ""


class LifecycleEngine:
    """Booking state machine and quote request intake.

    Every transition is a compare-and-set on the booking status inside one
    write transaction, together with its status history row and the outbox
    rows for its notifications. Realtime events go out after commit.
    """

    def __init__(
        self,
        db: Database,
        dispatcher: NotificationDispatcher,
        realtime: RealtimeHub,
        payments: StripeCheckoutCollaborator,
        linker: TripBriefLinker,
        admin_user_ids: Sequence[str] = tuple(ADMIN_USER_IDS),
        default_deposit_percent: float = DEFAULT_DEPOSIT_PERCENT,
    ):
        self._db = db
        self._dispatcher = dispatcher
        self._realtime = realtime
        self._payments = payments
        self._linker = linker
        self._admin_user_ids = list(admin_user_ids)
        self._default_deposit_percent = default_deposit_percent

    # Providers

    def get_provider(self, provider_id: str) -> Provider:
        with self._db.read() as conn:
            provider = self._provider(conn, provider_id)
        if provider is None:
            raise NotFound("Provider not found")
        return provider

    def list_providers(self) -> List[Provider]:
        with self._db.read() as conn:
            rows = conn.execute("SELECT slug FROM providers ORDER BY name ASC").fetchall()
            return [self._provider(conn, row["slug"]) for row in rows]

    def register_provider(
        self,
        slug: str,
        name: str,
        member_user_ids: Iterable[str] = (),
        admin_managed: bool = False,
        admin_email: Optional[str] = None,
    ) -> Provider:
        slug = slug.strip()
        name = name.strip()
        if not slug or not name:
            raise ValidationError("Provider slug and name are required", field="slug")
        with self._db.transaction() as tx:
            tx.execute(
                """
                INSERT INTO providers (slug, name, admin_managed, admin_email, created_at) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    admin_managed = excluded.admin_managed,
                    admin_email = excluded.admin_email
                """,
                (slug, name, 1 if admin_managed else 0, admin_email, utc_now_iso()),
            )
            for user_id in member_user_ids:
                if user_id.strip():
                    tx.execute(
                        "INSERT OR IGNORE INTO provider_members (provider_slug, user_id) VALUES (?, ?)",
                        (slug, user_id.strip()),
                    )
            provider = self._provider(tx, slug)
        if provider is None:
            raise NotFound(f"Provider {slug} was not saved")
        return provider

    def is_provider_member(self, provider_id: str, user_id: str) -> bool:
        with self._db.read() as conn:
            return user_id in self._provider_members(conn, provider_id)

    def _provider(self, conn: Any, provider_id: str) -> Optional[Provider]:
        row = conn.execute("SELECT * FROM providers WHERE slug = ?", (provider_id,)).fetchone()
        if not row:
            return None
        return Provider(
            slug=row["slug"],
            name=row["name"],
            admin_managed=bool(row["admin_managed"]),
            admin_email=row["admin_email"],
            member_user_ids=self._provider_members(conn, provider_id),
        )

    def _provider_members(self, conn: Any, provider_id: str) -> List[str]:
        rows = conn.execute(
            "SELECT user_id FROM provider_members WHERE provider_slug = ? ORDER BY user_id ASC",
            (provider_id,),
        ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def _require_provider(self, conn: Any, provider_id: str) -> Provider:
        provider = self._provider(conn, (provider_id or "").strip())
        if provider is None:
            raise ValidationError("Unknown provider", field="provider_id")
        return provider

    def _require_provider_member(self, conn: Any, row: Any, actor_id: str) -> None:
        if actor_id not in self._provider_members(conn, row["provider_id"]):
            raise PermissionDenied("Only the provider can perform this action")

    # Inquiries and quote requests

    def submit_inquiry(
        self,
        traveler_id: str,
        provider_id: str,
        procedures: Iterable[Any],
        preferred_dates: Any = None,
        message: str = "",
        medical_notes: str = "",
        trip_brief_id: Optional[str] = None,
    ) -> Booking:
        traveler_id = (traveler_id or "").strip()
        if not traveler_id:
            raise ValidationError("traveler_id is required", field="traveler_id")
        cleaned_procedures = clean_procedures(procedures)
        dates = self._clean_preferred_dates(preferred_dates)

        with self._db.transaction() as tx:
            provider = self._require_provider(tx, provider_id)
            if trip_brief_id:
                self._linker.assert_usable_by(tx, trip_brief_id, traveler_id)
            booking = self._insert_booking(
                tx,
                traveler_id=traveler_id,
                provider=provider,
                procedures=cleaned_procedures,
                preferred_dates=dates,
                message=message,
                medical_notes=medical_notes,
                trip_brief_id=trip_brief_id,
            )
            self._notify_new_inquiry(tx, provider, booking)

        logger.info("Inquiry %s created for provider %s", booking.id, provider.slug)
        self._linker.advance_quietly(trip_brief_id)
        return booking

    def submit_quote_request(
        self,
        traveler_id: str,
        provider_id: str,
        procedures: Iterable[Any],
        contact_email: str,
        trip_brief_id: Optional[str] = None,
        is_group: bool = False,
        group_members: Iterable[Any] = (),
        travel_window_start: Optional[str] = None,
        travel_window_end: Optional[str] = None,
        is_flexible: bool = False,
        notes: str = "",
        contact_phone: Optional[str] = None,
        comparing_providers: bool = False,
        request_type: str = "quote",
    ) -> Tuple[QuoteRequest, Booking]:
        traveler_id = (traveler_id or "").strip()
        if not traveler_id:
            raise ValidationError("traveler_id is required", field="traveler_id")
        cleaned_procedures = clean_procedures(procedures)
        email = clean_email(contact_email)
        members = clean_group_members(group_members) if is_group else []
        if is_group and not members:
            raise ValidationError("Group requests need at least one member", field="group_members")
        if is_flexible:
            start, end = None, None
        else:
            start = parse_optional_date(travel_window_start, field="travel_window_start")
            end = parse_optional_date(travel_window_end, field="travel_window_end")
            check_window(start, end)
        request_type = (request_type or "quote").strip() or "quote"

        quote_request_id = new_id("qr")
        with self._db.transaction() as tx:
            provider = self._require_provider(tx, provider_id)
            if trip_brief_id:
                self._linker.assert_usable_by(tx, trip_brief_id, traveler_id)
            booking = self._insert_booking(
                tx,
                traveler_id=traveler_id,
                provider=provider,
                procedures=cleaned_procedures,
                preferred_dates=PreferredDates(text=preferred_dates_text(is_flexible, start, end), start=start, end=end),
                message=notes,
                medical_notes="",
                trip_brief_id=trip_brief_id,
                origin="quote_request",
                quote_request_id=quote_request_id,
            )
            now_iso = utc_now_iso()
            tx.execute(
                """
                INSERT INTO quote_requests (
                    id, traveler_id, trip_brief_id, provider_id, procedures_json, is_group, group_members_json,
                    travel_window_start, travel_window_end, is_flexible, notes, contact_email, contact_phone,
                    comparing_providers, request_type, status, booking_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    quote_request_id,
                    traveler_id,
                    trip_brief_id,
                    provider.slug,
                    dump_json(cleaned_procedures),
                    1 if is_group else 0,
                    dump_json(members),
                    start,
                    end,
                    1 if is_flexible else 0,
                    (notes or "").strip(),
                    email,
                    (contact_phone or "").strip() or None,
                    1 if comparing_providers else 0,
                    request_type,
                    booking.id,
                    now_iso,
                    now_iso,
                ),
            )
            quote_request = quote_request_from_row(
                tx.execute("SELECT * FROM quote_requests WHERE id = ?", (quote_request_id,)).fetchone()
            )
            self._notify_new_inquiry(tx, provider, booking, group_size=len(members) if is_group else 0)

        logger.info("Quote request %s created with booking %s", quote_request.id, booking.id)
        if trip_brief_id:
            try:
                self._linker.attach_quote_request(trip_brief_id, quote_request.id)
            except Exception:
                logger.exception("Could not attach quote request %s to trip brief %s", quote_request.id, trip_brief_id)
        return quote_request, booking

    def get_quote_request(self, quote_request_id: str) -> QuoteRequest:
        with self._db.read() as conn:
            row = conn.execute("SELECT * FROM quote_requests WHERE id = ?", (quote_request_id,)).fetchone()
        if not row:
            raise NotFound("Quote request not found")
        return quote_request_from_row(row)

    def list_quote_requests(self, traveler_id: Optional[str] = None, provider_id: Optional[str] = None) -> List[QuoteRequest]:
        query = "SELECT * FROM quote_requests WHERE 1 = 1"
        params: List[Any] = []
        if traveler_id:
            query += " AND traveler_id = ?"
            params.append(traveler_id)
        if provider_id:
            query += " AND provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY created_at DESC"
        with self._db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [quote_request_from_row(row) for row in rows]

    def _clean_preferred_dates(self, preferred_dates: Any) -> PreferredDates:
        if preferred_dates is None:
            return PreferredDates()
        if isinstance(preferred_dates, str):
            return PreferredDates(text=preferred_dates.strip())
        dates = preferred_dates if isinstance(preferred_dates, PreferredDates) else PreferredDates(**dict(preferred_dates))
        start = parse_optional_date(dates.start, field="preferred_dates")
        end = parse_optional_date(dates.end, field="preferred_dates")
        check_window(start, end, field="preferred_dates")
        return PreferredDates(text=dates.text.strip(), start=start, end=end)

    def _insert_booking(
        self,
        tx: Transaction,
        *,
        traveler_id: str,
        provider: Provider,
        procedures: List[Dict[str, Any]],
        preferred_dates: PreferredDates,
        message: str,
        medical_notes: str,
        trip_brief_id: Optional[str],
        origin: str = "inquiry",
        quote_request_id: Optional[str] = None,
    ) -> Booking:
        booking_id = new_id("bk")
        now_iso = utc_now_iso()
        tx.execute(
            """
            INSERT INTO bookings (
                id, traveler_id, provider_id, procedures_json, preferred_dates_json, inquiry_message, medical_notes,
                status, trip_brief_id, origin, quote_request_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 'inquiry', ?, ?, ?, ?, ?)
            """,
            (
                booking_id,
                traveler_id,
                provider.slug,
                dump_json(procedures),
                dump_json(preferred_dates.model_dump()),
                (message or "").strip(),
                (medical_notes or "").strip(),
                trip_brief_id,
                origin,
                quote_request_id,
                now_iso,
                now_iso,
            ),
        )
        self._record_history(tx, booking_id, traveler_id, "none", "inquiry", "")
        booking = booking_from_row(tx.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone())
        self._publish_after_commit(tx, booking, event="INSERT")
        return booking

    # Transitions

    def submit_quote(
        self,
        booking_id: str,
        actor_id: str,
        price: float,
        deposit_percent: Optional[float] = None,
        estimated_dates: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Booking:
        if price is None or not math.isfinite(price) or price <= 0:
            raise ValidationError("Quoted price must be greater than zero", field="price")
        percent = self._default_deposit_percent if deposit_percent is None else deposit_percent
        if not math.isfinite(percent) or percent <= 0 or percent > 100:
            raise ValidationError("Deposit percent must be greater than 0 and at most 100", field="deposit_percent")
        deposit_amount = compute_deposit(price, percent)

        with self._db.transaction() as tx:
            row = self._load(tx, booking_id)
            self._require_provider_member(tx, row, actor_id)
            booking = self._transition(
                tx,
                row,
                QUOTABLE_STATUSES,
                "quoted",
                actor_id,
                updates={
                    "quoted_price": float(price),
                    "deposit_percent": float(percent),
                    "deposit_amount": deposit_amount,
                    "provider_message": (message or "").strip() or None,
                    "provider_estimated_dates": (estimated_dates or "").strip() or None,
                    # A checkout opened for an earlier quote can no longer pay this one.
                    "checkout_session_id": None,
                },
            )
            if booking.quote_request_id:
                self._set_quote_request_status(tx, booking.quote_request_id, "responded", ("pending",))
            provider = self._provider(tx, booking.provider_id)
            provider_name = provider.name if provider else booking.provider_id
            self._notify(
                tx,
                booking.traveler_id,
                "quote_received",
                "New quote received",
                f"{provider_name} quoted {price:.2f} with a {deposit_amount:.2f} deposit",
                f"booking:{booking.id}",
            )
        logger.info("Booking %s quoted at %.2f by %s", booking.id, price, actor_id)
        return booking

    def initiate_deposit_payment(self, booking_id: str, actor_id: str) -> PaymentSessionHandle:
        booking = self.get_booking(booking_id)
        if booking.traveler_id != actor_id:
            raise PermissionDenied("Only the traveler can pay the deposit")
        if booking.status != "quoted":
            raise InvalidTransition(booking.status, "deposit_paid", f"cannot pay a deposit on a {booking.status} booking")

        session = self._payments.create_checkout_session(booking)

        with self._db.transaction() as tx:
            changed = tx.execute(
                "UPDATE bookings SET checkout_session_id = ?, updated_at = ? WHERE id = ? AND status = 'quoted'",
                (session.session_id, utc_now_iso(), booking_id),
            ).rowcount
            if not changed:
                current = self._load(tx, booking_id)
                raise InvalidTransition(current["status"], "deposit_paid", f"cannot pay a deposit on a {current['status']} booking")
            updated = booking_from_row(self._load(tx, booking_id))
            self._publish_after_commit(tx, updated)
        logger.info("Checkout session %s created for booking %s", session.session_id, booking_id)
        return PaymentSessionHandle(booking_id=booking_id, url=session.url, session_id=session.session_id)

    def confirm_deposit_payment(
        self,
        booking_id: str,
        payment_reference: str,
        actor_id: str = "payments",
        session_id: Optional[str] = None,
        amount_total: Optional[int] = None,
    ) -> Booking:
        """Record a paid deposit.

        When the payment came from a checkout session, ``session_id`` must be
        the booking's current session and ``amount_total`` (minor units) must
        equal the current deposit. A re-quote clears the session, so paying a
        checkout opened for an older quote is rejected.
        """
        with self._db.transaction() as tx:
            row = self._load(tx, booking_id)
            if row["status"] in PAID_STATUSES:
                logger.info("Deposit for booking %s already recorded; ignoring replay", booking_id)
                return booking_from_row(row)
            expected: Dict[str, Any] = {}
            if session_id is not None:
                if row["checkout_session_id"] != session_id:
                    raise InvalidTransition(
                        str(row["status"]),
                        "deposit_paid",
                        "checkout session is not the current session for this booking",
                    )
                expected["checkout_session_id"] = session_id
            if amount_total is not None and row["deposit_amount"] is not None:
                if amount_total != to_minor_units(row["deposit_amount"]):
                    raise ValidationError("Paid amount does not match the deposit", field="amount_total")
            booking = self._transition(
                tx,
                row,
                ("quoted",),
                "deposit_paid",
                actor_id,
                note=payment_reference or "",
                updates={"payment_reference": payment_reference or None},
                expected=expected,
            )
            if booking.quote_request_id:
                self._set_quote_request_status(tx, booking.quote_request_id, "accepted", ("pending", "responded"))
            for member_id in self._provider_members(tx, booking.provider_id):
                self._notify(
                    tx,
                    member_id,
                    "booking_update",
                    "Deposit paid",
                    f"The traveler paid a {booking.deposit_amount or 0:.2f} deposit",
                    f"booking:{booking.id}",
                )
            self._notify(
                tx,
                booking.traveler_id,
                "booking_update",
                "Deposit received",
                "Your deposit was received. The provider will confirm your trip.",
                f"booking:{booking.id}",
            )
        logger.info("Deposit recorded for booking %s (reference=%s)", booking.id, payment_reference)
        return booking

    def confirm_trip(self, booking_id: str, actor_id: str, note: str = "") -> Booking:
        return self._provider_step(
            booking_id,
            actor_id,
            ("deposit_paid",),
            "confirmed",
            note,
            "Trip confirmed",
            "Your provider confirmed your trip.",
        )

    def mark_completed(self, booking_id: str, actor_id: str, note: str = "") -> Booking:
        return self._provider_step(
            booking_id,
            actor_id,
            ("confirmed",),
            "completed",
            note,
            "Trip completed",
            "Your booking is marked as completed.",
        )

    def _provider_step(
        self,
        booking_id: str,
        actor_id: str,
        allowed_from: Sequence[str],
        to_status: str,
        note: str,
        title: str,
        body: str,
    ) -> Booking:
        with self._db.transaction() as tx:
            row = self._load(tx, booking_id)
            self._require_provider_member(tx, row, actor_id)
            booking = self._transition(tx, row, allowed_from, to_status, actor_id, note=note)
            self._notify(tx, booking.traveler_id, "booking_update", title, body, f"booking:{booking.id}")
        logger.info("Booking %s moved to %s by %s", booking.id, to_status, actor_id)
        return booking

    def cancel(self, booking_id: str, actor_id: str, note: str = "") -> Booking:
        with self._db.transaction() as tx:
            row = self._load(tx, booking_id)
            members = self._provider_members(tx, row["provider_id"])
            is_traveler = row["traveler_id"] == actor_id
            if not is_traveler and actor_id not in members:
                raise PermissionDenied("Only the traveler or the provider can cancel this booking")
            booking = self._transition(
                tx,
                row,
                CANCELLABLE_STATUSES,
                "cancelled",
                actor_id,
                note=note,
                message=f"cannot cancel a {row['status']} booking",
            )
            if booking.quote_request_id:
                self._set_quote_request_status(tx, booking.quote_request_id, "declined", ("pending", "responded"))
            recipients = members if is_traveler else [booking.traveler_id]
            for recipient_id in recipients:
                self._notify(
                    tx,
                    recipient_id,
                    "booking_update",
                    "Booking cancelled",
                    note.strip() or "The booking was cancelled.",
                    f"booking:{booking.id}",
                )
        logger.info("Booking %s cancelled by %s", booking.id, actor_id)
        return booking

    def mark_provider_responded(self, booking_id: str, actor_id: str, tx: Optional[Transaction] = None) -> Booking:
        if tx is None:
            with self._db.transaction() as own_tx:
                return self.mark_provider_responded(booking_id, actor_id, tx=own_tx)
        row = self._load(tx, booking_id)
        self._require_provider_member(tx, row, actor_id)
        if row["status"] != "inquiry":
            return booking_from_row(row)
        return self._transition(tx, row, ("inquiry",), "provider_responded", actor_id)

    def _transition(
        self,
        tx: Transaction,
        row: Any,
        allowed_from: Sequence[str],
        to_status: str,
        actor_id: str,
        note: str = "",
        updates: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
        expected: Optional[Dict[str, Any]] = None,
    ) -> Booking:
        current_status = str(row["status"])
        if current_status not in allowed_from:
            raise InvalidTransition(current_status, to_status, message)

        values: Dict[str, Any] = dict(updates or {})
        values["status"] = to_status
        values["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in values)
        placeholders = ", ".join("?" for _ in allowed_from)
        guards = "".join(f" AND {column} = ?" for column in (expected or {}))
        changed = tx.execute(
            f"UPDATE bookings SET {assignments} WHERE id = ? AND status IN ({placeholders}){guards}",
            (*values.values(), row["id"], *allowed_from, *(expected or {}).values()),
        ).rowcount
        if not changed:
            latest = self._load(tx, row["id"])
            raise InvalidTransition(str(latest["status"]), to_status, message)

        self._record_history(tx, row["id"], actor_id, current_status, to_status, note)
        booking = booking_from_row(self._load(tx, row["id"]))
        self._publish_after_commit(tx, booking)
        return booking

    def _set_quote_request_status(self, tx: Transaction, quote_request_id: str, status: str, allowed_from: Sequence[str]) -> None:
        placeholders = ", ".join("?" for _ in allowed_from)
        tx.execute(
            f"UPDATE quote_requests SET status = ?, updated_at = ? WHERE id = ? AND status IN ({placeholders})",
            (status, utc_now_iso(), quote_request_id, *allowed_from),
        )

    def _record_history(self, tx: Transaction, booking_id: str, actor_id: str, from_status: str, to_status: str, note: str) -> None:
        tx.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (new_id("bsh"), booking_id, actor_id, from_status, to_status, (note or "").strip(), utc_now_iso()),
        )

    def _publish_after_commit(self, tx: Transaction, booking: Booking, event: str = "UPDATE") -> None:
        payload = booking.model_dump()
        tx.after_commit(lambda: self._realtime.publish("bookings", booking.id, payload, event=event))

    def _notify(self, tx: Transaction, recipient_id: str, notification_type: str, title: str, body: str, link: str) -> None:
        # Notification problems must never undo a transition.
        try:
            self._dispatcher.enqueue(recipient_id, notification_type, title, body, link, tx=tx)
        except Exception:
            logger.exception("Notification enqueue raised for %s on %s", recipient_id, link)

    def _notify_new_inquiry(self, tx: Transaction, provider: Provider, booking: Booking, group_size: int = 0) -> None:
        summary = ", ".join(f"{item.name} x{item.quantity}" for item in booking.procedures)
        if group_size:
            summary += f" (group of {group_size})"
        title = "New quote request" if booking.origin == "quote_request" else "New inquiry"
        for member_id in provider.member_user_ids:
            self._notify(tx, member_id, "inquiry_received", title, summary, f"booking:{booking.id}")
        if provider.admin_managed:
            forward_to = provider.admin_email or "the provider"
            for admin_id in self._admin_user_ids:
                self._notify(
                    tx,
                    admin_id,
                    "admin_message",
                    f"{title} for {provider.name}",
                    f"{summary}. Forward to {forward_to}.",
                    f"booking:{booking.id}",
                )

    # Reads

    def _load(self, conn: Any, booking_id: str) -> Any:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFound("Booking not found")
        return row

    def get_booking(self, booking_id: str) -> Booking:
        with self._db.read() as conn:
            return booking_from_row(self._load(conn, booking_id))

    def participants(self, booking: Booking) -> List[str]:
        with self._db.read() as conn:
            members = self._provider_members(conn, booking.provider_id)
        return [booking.traveler_id, *[member for member in members if member != booking.traveler_id]]

    def is_participant(self, booking: Booking, user_id: str) -> bool:
        return user_id in self.participants(booking)

    def list_bookings(self, user_id: str, role: str = "all") -> List[Booking]:
        if role not in BOOKING_ROLES:
            raise ValidationError(f"Invalid role. Allowed: {', '.join(sorted(BOOKING_ROLES))}", field="role")
        provider_clause = "provider_id IN (SELECT provider_slug FROM provider_members WHERE user_id = ?)"
        if role == "traveler":
            where, params = "traveler_id = ?", (user_id,)
        elif role == "provider":
            where, params = provider_clause, (user_id,)
        else:
            where, params = f"traveler_id = ? OR {provider_clause}", (user_id, user_id)
        with self._db.read() as conn:
            rows = conn.execute(
                f"SELECT * FROM bookings WHERE {where} ORDER BY updated_at DESC, created_at DESC",
                params,
            ).fetchall()
        return [booking_from_row(row) for row in rows]

    def get_status_history(self, booking_id: str) -> List[BookingStatusChange]:
        with self._db.read() as conn:
            self._load(conn, booking_id)
            rows = conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at ASC, rowid ASC",
                (booking_id,),
            ).fetchall()
        return [
            BookingStatusChange(
                id=row["id"],
                booking_id=row["booking_id"],
                actor_id=row["actor_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"] or "",
                created_at=row["created_at"],
            )
            for row in rows
        ]


lifecycle_engine = LifecycleEngine(
    database,
    notification_dispatcher,
    realtime_hub,
    stripe_checkout,
    trip_brief_linker,
)
