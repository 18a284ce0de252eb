import threading

import pytest

from app.services.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from app.services.lifecycle import compute_deposit
from app.services.notification_dispatcher import NotificationDispatcher
from conftest import build_stack

PROVIDER = "sonrisa-dental-cancun"
CLINIC = "clinic_user_1"
TRAVELER = "traveler_1"


def _inquiry(stack, traveler_id=TRAVELER, provider_id=PROVIDER, **kwargs):
    return stack.engine.submit_inquiry(
        traveler_id=traveler_id,
        provider_id=provider_id,
        procedures=kwargs.pop("procedures", [{"name": "Dental implant", "quantity": 2}]),
        preferred_dates=kwargs.pop("preferred_dates", {"text": "March", "start": "2026-03-01", "end": "2026-03-10"}),
        message=kwargs.pop("message", "Hello"),
        **kwargs,
    )


def _quoted(stack, price=3000.0, percent=25.0):
    booking = _inquiry(stack)
    return stack.engine.submit_quote(booking.id, CLINIC, price=price, deposit_percent=percent)


def test_submit_inquiry_creates_booking_history_and_provider_notification(stack):
    booking = _inquiry(stack)

    assert booking.status == "inquiry"
    assert booking.id.startswith("bk_")
    assert booking.quoted_price is None
    assert booking.deposit_amount is None
    assert booking.procedures[0].quantity == 2
    assert booking.preferred_dates.start == "2026-03-01"

    history = stack.engine.get_status_history(booking.id)
    assert [(h.from_status, h.to_status) for h in history] == [("none", "inquiry")]

    received = stack.notifications(CLINIC)
    assert len(received) == 1
    assert received[0].type == "inquiry_received"
    assert received[0].link == f"booking:{booking.id}"


@pytest.mark.parametrize(
    "procedures",
    [
        [],
        [{"name": "  ", "quantity": 1}],
        [{"name": "Crown", "quantity": 0}],
    ],
)
def test_submit_inquiry_rejects_bad_procedures(stack, procedures):
    with pytest.raises(ValidationError) as exc:
        _inquiry(stack, procedures=procedures)
    assert exc.value.field == "procedures"


def test_submit_inquiry_rejects_unknown_provider(stack):
    with pytest.raises(ValidationError) as exc:
        _inquiry(stack, provider_id="no-such-clinic")
    assert exc.value.field == "provider_id"
    assert stack.engine.list_bookings(TRAVELER) == []


def test_submit_inquiry_rejects_reversed_preferred_dates(stack):
    with pytest.raises(ValidationError):
        _inquiry(stack, preferred_dates={"start": "2026-03-10", "end": "2026-03-01"})


def test_admin_managed_provider_alerts_admins(stack):
    booking = _inquiry(stack, provider_id="baja-bariatric-center", procedures=[{"name": "Gastric sleeve"}])

    admin_inbox = stack.notifications("admin_1")
    assert len(admin_inbox) == 1
    assert admin_inbox[0].type == "admin_message"
    assert "concierge@example.com" in admin_inbox[0].body
    assert admin_inbox[0].link == f"booking:{booking.id}"
    assert stack.notifications("clinic_user_2")[0].type == "inquiry_received"


def test_inquiry_reaches_every_provider_member(stack):
    _inquiry(stack, provider_id="medellin-aesthetics", procedures=[{"name": "Rhinoplasty"}])
    assert len(stack.notifications("clinic_user_3")) == 1
    assert len(stack.notifications("clinic_user_4")) == 1


def test_submit_quote_computes_deposit_and_notifies_traveler(stack):
    booking = _quoted(stack, price=3000.0, percent=25.0)

    assert booking.status == "quoted"
    assert booking.quoted_price == 3000.0
    assert booking.deposit_percent == 25.0
    assert booking.deposit_amount == 750.0

    inbox = stack.notifications(TRAVELER)
    assert [n.type for n in inbox] == ["quote_received"]


def test_submit_quote_uses_default_deposit_percent(stack):
    booking = _inquiry(stack)
    quoted = stack.engine.submit_quote(booking.id, CLINIC, price=1000.0)
    assert quoted.deposit_percent == 25.0
    assert quoted.deposit_amount == 250.0


def test_compute_deposit_rounds_half_up():
    assert compute_deposit(1234.5, 12.5) == 154.31
    assert compute_deposit(0.05, 50) == 0.03
    assert compute_deposit(999.99, 100) == 999.99


@pytest.mark.parametrize("price,percent", [(0, 25), (-10, 25), (100, 0), (100, 120)])
def test_submit_quote_rejects_bad_amounts(stack, price, percent):
    booking = _inquiry(stack)
    with pytest.raises(ValidationError):
        stack.engine.submit_quote(booking.id, CLINIC, price=price, deposit_percent=percent)
    assert stack.engine.get_booking(booking.id).status == "inquiry"


def test_submit_quote_requires_provider_member(stack):
    booking = _inquiry(stack)
    with pytest.raises(PermissionDenied):
        stack.engine.submit_quote(booking.id, "clinic_user_3", price=100.0)
    with pytest.raises(PermissionDenied):
        stack.engine.submit_quote(booking.id, TRAVELER, price=100.0)


def test_requote_overwrites_quote(stack):
    booking = _quoted(stack, price=3000.0)
    requoted = stack.engine.submit_quote(booking.id, CLINIC, price=2800.0, deposit_percent=10)
    assert requoted.status == "quoted"
    assert requoted.deposit_amount == 280.0


def test_submit_quote_on_unknown_booking(stack):
    with pytest.raises(NotFound):
        stack.engine.submit_quote("bk_missing", CLINIC, price=100.0)


def test_full_lifecycle_to_completed(stack):
    booking = _quoted(stack)

    handle = stack.engine.initiate_deposit_payment(booking.id, TRAVELER)
    assert handle.url == f"https://pay.test/{booking.id}"
    assert stack.engine.get_booking(booking.id).checkout_session_id == handle.session_id
    assert stack.engine.get_booking(booking.id).status == "quoted"

    paid = stack.engine.confirm_deposit_payment(booking.id, "pi_123")
    assert paid.status == "deposit_paid"
    assert paid.payment_reference == "pi_123"

    confirmed = stack.engine.confirm_trip(booking.id, CLINIC)
    assert confirmed.status == "confirmed"
    completed = stack.engine.mark_completed(booking.id, CLINIC)
    assert completed.status == "completed"

    history = [h.to_status for h in stack.engine.get_status_history(booking.id)]
    assert history == ["inquiry", "quoted", "deposit_paid", "confirmed", "completed"]

    with pytest.raises(InvalidTransition):
        stack.engine.submit_quote(booking.id, CLINIC, price=10.0)


def test_replayed_payment_callback_is_idempotent(stack):
    booking = _quoted(stack)
    stack.engine.confirm_deposit_payment(booking.id, "pi_1")
    stack.dispatcher.drain_outbox()
    clinic_before = len(stack.dispatcher.list_for_user(CLINIC))

    replay = stack.engine.confirm_deposit_payment(booking.id, "pi_1")

    assert replay.status == "deposit_paid"
    assert len(stack.engine.get_status_history(booking.id)) == 3
    assert len(stack.notifications(CLINIC)) == clinic_before


def test_requote_after_checkout_rejects_the_old_session(stack):
    booking = _quoted(stack, price=1000.0, percent=25.0)
    handle = stack.engine.initiate_deposit_payment(booking.id, TRAVELER)

    requoted = stack.engine.submit_quote(booking.id, CLINIC, price=8000.0, deposit_percent=25.0)
    assert requoted.checkout_session_id is None
    assert requoted.deposit_amount == 2000.0

    with pytest.raises(InvalidTransition) as exc:
        stack.engine.confirm_deposit_payment(booking.id, "pi_old", session_id=handle.session_id, amount_total=25000)
    assert exc.value.current_status == "quoted"
    current = stack.engine.get_booking(booking.id)
    assert current.status == "quoted"
    assert current.payment_reference is None

    fresh = stack.engine.initiate_deposit_payment(booking.id, TRAVELER)
    paid = stack.engine.confirm_deposit_payment(booking.id, "pi_new", session_id=fresh.session_id, amount_total=200000)
    assert paid.status == "deposit_paid"
    assert paid.payment_reference == "pi_new"


def test_payment_amount_must_match_deposit(stack):
    booking = _quoted(stack, price=1000.0, percent=25.0)
    handle = stack.engine.initiate_deposit_payment(booking.id, TRAVELER)

    with pytest.raises(ValidationError) as exc:
        stack.engine.confirm_deposit_payment(booking.id, "pi_short", session_id=handle.session_id, amount_total=100)
    assert exc.value.field == "amount_total"
    assert stack.engine.get_booking(booking.id).status == "quoted"

    paid = stack.engine.confirm_deposit_payment(booking.id, "pi_ok", session_id=handle.session_id, amount_total=25000)
    assert paid.status == "deposit_paid"


def test_payment_for_unknown_session_is_rejected(stack):
    booking = _quoted(stack)
    with pytest.raises(InvalidTransition):
        stack.engine.confirm_deposit_payment(booking.id, "pi_1", session_id="cs_never_created")
    assert stack.engine.get_booking(booking.id).status == "quoted"


def test_payment_callback_on_cancelled_booking_is_rejected(stack):
    booking = _quoted(stack)
    stack.engine.cancel(booking.id, TRAVELER)
    with pytest.raises(InvalidTransition) as exc:
        stack.engine.confirm_deposit_payment(booking.id, "pi_late")
    assert exc.value.current_status == "cancelled"


def test_initiate_deposit_payment_checks(stack):
    booking = _inquiry(stack)
    with pytest.raises(InvalidTransition):
        stack.engine.initiate_deposit_payment(booking.id, TRAVELER)
    stack.engine.submit_quote(booking.id, CLINIC, price=500.0)
    with pytest.raises(PermissionDenied):
        stack.engine.initiate_deposit_payment(booking.id, CLINIC)
    assert stack.payments.sessions == []


def test_confirm_trip_requires_deposit(stack):
    booking = _quoted(stack)
    with pytest.raises(InvalidTransition) as exc:
        stack.engine.confirm_trip(booking.id, CLINIC)
    assert exc.value.current_status == "quoted"
    assert exc.value.attempted == "confirmed"


def test_cancel_confirmed_booking_is_rejected(stack):
    booking = _quoted(stack)
    stack.engine.confirm_deposit_payment(booking.id, "pi_1")
    stack.engine.confirm_trip(booking.id, CLINIC)

    with pytest.raises(InvalidTransition) as exc:
        stack.engine.cancel(booking.id, TRAVELER)

    assert str(exc.value) == "cannot cancel a confirmed booking"
    assert exc.value.current_status == "confirmed"
    assert exc.value.attempted == "cancelled"
    assert stack.engine.get_booking(booking.id).status == "confirmed"


def test_cancel_from_inquiry_notifies_counterpart(stack):
    booking = _inquiry(stack)
    stack.dispatcher.drain_outbox()

    cancelled = stack.engine.cancel(booking.id, TRAVELER, note="Changed my mind")

    assert cancelled.status == "cancelled"
    titles = [n.title for n in stack.notifications(CLINIC)]
    assert "Booking cancelled" in titles
    with pytest.raises(InvalidTransition):
        stack.engine.cancel(booking.id, CLINIC)


def test_cancel_requires_participant(stack):
    booking = _inquiry(stack)
    with pytest.raises(PermissionDenied):
        stack.engine.cancel(booking.id, "someone_else")


def test_mark_provider_responded_is_monotonic(stack):
    booking = _inquiry(stack)
    with pytest.raises(PermissionDenied):
        stack.engine.mark_provider_responded(booking.id, TRAVELER)

    first = stack.engine.mark_provider_responded(booking.id, CLINIC)
    second = stack.engine.mark_provider_responded(booking.id, CLINIC)

    assert first.status == second.status == "provider_responded"
    assert len(stack.engine.get_status_history(booking.id)) == 2
    assert stack.engine.submit_quote(booking.id, CLINIC, price=100.0).status == "quoted"


def test_stale_snapshot_fails_compare_and_set(stack):
    booking = _quoted(stack)
    with stack.db.read() as conn:
        stale = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking.id,)).fetchone()
    stack.engine.cancel(booking.id, TRAVELER)

    with stack.db.transaction() as tx:
        with pytest.raises(InvalidTransition) as exc:
            stack.engine._transition(tx, stale, ("quoted",), "deposit_paid", "payments")

    assert exc.value.current_status == "cancelled"
    assert stack.engine.get_booking(booking.id).status == "cancelled"


def test_concurrent_payment_and_cancel_have_one_winner(stack):
    booking = _quoted(stack)
    barrier = threading.Barrier(2)
    errors = []

    def run(action):
        barrier.wait()
        try:
            action()
        except InvalidTransition as exc:
            errors.append(exc)

    threads = [
        threading.Thread(target=run, args=(lambda: stack.engine.confirm_deposit_payment(booking.id, "pi_race"),)),
        threading.Thread(target=run, args=(lambda: stack.engine.cancel(booking.id, TRAVELER),)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = stack.engine.get_booking(booking.id)
    assert len(errors) == 1
    assert final.status in {"deposit_paid", "cancelled"}
    assert len(stack.engine.get_status_history(booking.id)) == 3


class ExplodingDispatcher(NotificationDispatcher):
    def enqueue(self, *args, **kwargs):
        raise RuntimeError("notification backend down")


def test_notification_failure_does_not_roll_back_transition(tmp_path):
    stack = build_stack(str(tmp_path / "bookings.sqlite3"), dispatcher_factory=ExplodingDispatcher)

    booking = _inquiry(stack)
    quoted = stack.engine.submit_quote(booking.id, CLINIC, price=1200.0)

    assert stack.engine.get_booking(quoted.id).status == "quoted"
    assert stack.dispatcher.list_for_user(TRAVELER) == []


def test_booking_updates_are_published_after_commit(stack):
    booking = _inquiry(stack)
    subscription = stack.hub.subscribe("bookings", booking.id)

    stack.engine.submit_quote(booking.id, CLINIC, price=100.0)
    stack.engine.cancel(booking.id, CLINIC)

    first = subscription.get(timeout=1.0)
    second = subscription.get(timeout=1.0)
    assert first.payload["status"] == "quoted"
    assert second.payload["status"] == "cancelled"
    subscription.close()


def test_list_bookings_by_role(stack):
    booking = _inquiry(stack)

    assert [b.id for b in stack.engine.list_bookings(TRAVELER, role="traveler")] == [booking.id]
    assert stack.engine.list_bookings(TRAVELER, role="provider") == []
    assert [b.id for b in stack.engine.list_bookings(CLINIC, role="provider")] == [booking.id]
    assert [b.id for b in stack.engine.list_bookings(CLINIC)] == [booking.id]
    with pytest.raises(ValidationError):
        stack.engine.list_bookings(CLINIC, role="admin")


def test_inquiry_with_trip_brief_advances_brief(stack):
    brief = stack.linker.create_trip_brief(traveler_id=TRAVELER, destination="Cancun")
    booking = _inquiry(stack, trip_brief_id=brief.id)

    assert booking.trip_brief_id == brief.id
    assert stack.linker.get_trip_brief(brief.id).status == "quotes_requested"


def test_inquiry_rejects_someone_elses_trip_brief(stack):
    brief = stack.linker.create_trip_brief(traveler_id="other_traveler", destination="Cancun")
    with pytest.raises(ValidationError) as exc:
        _inquiry(stack, trip_brief_id=brief.id)
    assert exc.value.field == "trip_brief_id"
    with pytest.raises(ValidationError):
        _inquiry(stack, trip_brief_id="tb_missing")


def _quote_request(stack, **overrides):
    values = dict(
        traveler_id=TRAVELER,
        provider_id=PROVIDER,
        procedures=[{"name": "Veneers", "quantity": 8}],
        contact_email="traveler@example.com",
        travel_window_start="2026-05-01",
        travel_window_end="2026-05-14",
        notes="Prefer morning appointments",
    )
    values.update(overrides)
    return stack.engine.submit_quote_request(**values)


def test_submit_quote_request_creates_linked_booking(stack):
    quote_request, booking = _quote_request(stack)

    assert quote_request.id.startswith("qr_")
    assert quote_request.status == "pending"
    assert quote_request.booking_id == booking.id
    assert booking.quote_request_id == quote_request.id
    assert booking.origin == "quote_request"
    assert booking.status == "inquiry"
    assert booking.preferred_dates.text == "2026-05-01 to 2026-05-14"
    assert booking.inquiry_message == "Prefer morning appointments"
    assert stack.notifications(CLINIC)[0].title == "New quote request"


def test_flexible_quote_request_dates(stack):
    _, booking = _quote_request(stack, is_flexible=True)
    assert booking.preferred_dates.text == "Flexible"
    assert booking.preferred_dates.start is None


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"contact_email": ""}, "contact_email"),
        ({"contact_email": "not-an-email"}, "contact_email"),
        ({"is_group": True, "group_members": []}, "group_members"),
        ({"travel_window_start": "2026-05-20", "travel_window_end": "2026-05-01"}, "travel_window"),
        ({"procedures": []}, "procedures"),
    ],
)
def test_submit_quote_request_validation(stack, overrides, field):
    with pytest.raises(ValidationError) as exc:
        _quote_request(stack, **overrides)
    assert exc.value.field == field
    assert stack.engine.list_quote_requests(traveler_id=TRAVELER) == []


def test_quote_request_status_follows_booking(stack):
    quote_request, booking = _quote_request(stack, is_group=True, group_members=[{"name": "Ana", "procedures": ["Veneers"]}])
    assert quote_request.group_members[0].name == "Ana"

    stack.engine.submit_quote(booking.id, CLINIC, price=4000.0)
    assert stack.engine.get_quote_request(quote_request.id).status == "responded"

    stack.engine.confirm_deposit_payment(booking.id, "pi_9")
    assert stack.engine.get_quote_request(quote_request.id).status == "accepted"


def test_cancelled_quote_request_booking_declines_request(stack):
    quote_request, booking = _quote_request(stack)
    stack.engine.cancel(booking.id, CLINIC)
    assert stack.engine.get_quote_request(quote_request.id).status == "declined"


def test_quote_request_attaches_trip_brief(stack):
    brief = stack.linker.create_trip_brief(traveler_id=TRAVELER, destination="Cancun")
    quote_request, _ = _quote_request(stack, trip_brief_id=brief.id)

    assert quote_request.trip_brief_id == brief.id
    assert stack.linker.get_trip_brief(brief.id).status == "quotes_requested"
    assert [q.id for q in stack.linker.linked_quote_requests(brief.id)] == [quote_request.id]


def test_register_provider_and_membership(stack):
    provider = stack.engine.register_provider("istanbul-hair", "Istanbul Hair Clinic", member_user_ids=["clinic_user_9"])
    assert provider.member_user_ids == ["clinic_user_9"]
    assert stack.engine.is_provider_member("istanbul-hair", "clinic_user_9")
    assert not stack.engine.is_provider_member("istanbul-hair", CLINIC)
    with pytest.raises(NotFound):
        stack.engine.get_provider("nowhere")


def test_register_provider_raises_when_row_cannot_be_read_back(stack, monkeypatch):
    monkeypatch.setattr(stack.engine, "_provider", lambda conn, provider_id: None)
    with pytest.raises(NotFound):
        stack.engine.register_provider("lost-clinic", "Lost Clinic")
