import threading

import pytest

from app.services.errors import NotFound, PermissionDenied, ValidationError

PROVIDER = "sonrisa-dental-cancun"
CLINIC = "clinic_user_1"
TRAVELER = "traveler_1"


def _booking(stack):
    return stack.engine.submit_inquiry(
        traveler_id=TRAVELER,
        provider_id=PROVIDER,
        procedures=[{"name": "Crown"}],
    )


def test_messages_are_sequenced_and_listed_in_order(stack):
    booking = _booking(stack)
    posted = [
        stack.thread.post_message(booking.id, TRAVELER, "Hi there"),
        stack.thread.post_message(booking.id, CLINIC, "Hello! Happy to help."),
        stack.thread.post_message(booking.id, TRAVELER, "  Great  "),
    ]

    assert [m.seq for m in posted] == [1, 2, 3]
    assert posted[2].body == "Great"
    listed = stack.thread.list_messages(booking.id)
    assert [m.id for m in listed] == [m.id for m in posted]
    assert [m.seq for m in stack.thread.list_messages(booking.id, after_seq=2)] == [3]


def test_post_message_validation(stack):
    booking = _booking(stack)
    with pytest.raises(ValidationError):
        stack.thread.post_message(booking.id, TRAVELER, "   ")
    with pytest.raises(NotFound):
        stack.thread.post_message("bk_missing", TRAVELER, "hello")
    with pytest.raises(PermissionDenied):
        stack.thread.post_message(booking.id, "stranger", "hello")
    assert stack.thread.list_messages(booking.id) == []


def test_list_messages_unknown_booking(stack):
    with pytest.raises(NotFound):
        stack.thread.list_messages("bk_missing")


def test_provider_first_message_marks_booking_responded(stack):
    booking = _booking(stack)

    stack.thread.post_message(booking.id, TRAVELER, "Any availability in March?")
    assert stack.engine.get_booking(booking.id).status == "inquiry"

    stack.thread.post_message(booking.id, CLINIC, "Yes, we can do March.")
    assert stack.engine.get_booking(booking.id).status == "provider_responded"

    stack.thread.post_message(booking.id, CLINIC, "Sending a quote shortly.")
    history = [h.to_status for h in stack.engine.get_status_history(booking.id)]
    assert history == ["inquiry", "provider_responded"]


def test_new_message_notifies_other_participants_only(stack):
    booking = _booking(stack)
    stack.dispatcher.drain_outbox()

    stack.thread.post_message(booking.id, CLINIC, "We reviewed your x-rays.")

    traveler_inbox = stack.notifications(TRAVELER)
    assert [n.title for n in traveler_inbox] == ["New message"]
    assert traveler_inbox[0].body == "We reviewed your x-rays."
    assert all(n.title != "New message" for n in stack.notifications(CLINIC))


def test_messages_allowed_on_cancelled_booking(stack):
    booking = _booking(stack)
    stack.engine.cancel(booking.id, TRAVELER)
    message = stack.thread.post_message(booking.id, CLINIC, "Sorry to see you go.")
    assert message.seq == 1
    assert stack.engine.get_booking(booking.id).status == "cancelled"


def test_subscription_resumes_after_last_seen_seq(stack):
    booking = _booking(stack)
    stack.thread.post_message(booking.id, TRAVELER, "one")
    stack.thread.post_message(booking.id, TRAVELER, "two")

    subscription = stack.thread.subscribe(booking.id, last_seen_seq=1)
    replayed = subscription.get(timeout=0.1)
    assert replayed.seq == 2

    stack.thread.post_message(booking.id, CLINIC, "three")
    live = subscription.get(timeout=1.0)
    assert live.seq == 3
    assert live.body == "three"
    assert subscription.get(timeout=0.05) is None
    subscription.close()
    assert stack.hub.subscriber_count("booking_messages", booking.id) == 0


def test_subscription_drops_live_duplicates_of_replayed_messages(stack):
    booking = _booking(stack)
    first = stack.thread.post_message(booking.id, TRAVELER, "one")

    subscription = stack.thread.subscribe(booking.id)
    # Same row published again, as if its commit raced the replay read.
    stack.hub.publish("booking_messages", booking.id, first.model_dump(), event="INSERT")
    stack.thread.post_message(booking.id, TRAVELER, "two")

    received = [subscription.get(timeout=1.0), subscription.get(timeout=1.0)]
    assert [m.seq for m in received] == [1, 2]
    assert subscription.get(timeout=0.05) is None
    subscription.close()


def test_subscribe_unknown_booking_releases_live_subscription(stack):
    with pytest.raises(NotFound):
        stack.thread.subscribe("bk_missing")
    assert stack.hub.subscriber_count("booking_messages", "bk_missing") == 0


def test_concurrent_posts_get_unique_sequence_numbers(stack):
    booking = _booking(stack)
    errors = []

    def post(index):
        try:
            stack.thread.post_message(booking.id, TRAVELER, f"message {index}")
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=post, args=(i,)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert [m.seq for m in stack.thread.list_messages(booking.id)] == list(range(1, 11))
