import asyncio
import json

import pytest

from app.routers.common import sse_events
from app.services.realtime import RealtimeHub, SubscriptionClosed


def test_publish_reaches_only_matching_key_in_order():
    hub = RealtimeHub(queue_size=8)
    booking_feed = hub.subscribe("bookings", "bk_1")
    other_feed = hub.subscribe("bookings", "bk_2")

    assert hub.publish("bookings", "bk_1", {"status": "quoted"}) == 1
    hub.publish("bookings", "bk_1", {"status": "cancelled"})

    assert booking_feed.get(timeout=0.5).payload == {"status": "quoted"}
    assert booking_feed.get(timeout=0.5).payload == {"status": "cancelled"}
    assert other_feed.get(timeout=0.05) is None


def test_publish_without_subscribers_is_a_noop():
    hub = RealtimeHub()
    assert hub.publish("notifications", "nobody", {"title": "x"}) == 0


def test_slow_subscriber_overflows_and_is_dropped():
    hub = RealtimeHub(queue_size=2)
    subscription = hub.subscribe("booking_messages", "bk_1")

    for seq in range(1, 4):
        hub.publish("booking_messages", "bk_1", {"seq": seq}, event="INSERT")

    assert subscription.overflowed is True
    assert hub.subscriber_count("booking_messages", "bk_1") == 0
    with pytest.raises(SubscriptionClosed):
        subscription.get(timeout=0.05)


def test_close_unregisters_and_ends_iteration():
    hub = RealtimeHub()
    subscription = hub.subscribe("bookings", "bk_1")
    hub.publish("bookings", "bk_1", {"status": "quoted"})
    subscription.close()

    assert hub.subscriber_count("bookings", "bk_1") == 0
    assert [event.payload["status"] for event in subscription] == ["quoted"]


async def _next_chunk(events):
    return await events.__anext__()


async def _collect(events):
    return [chunk async for chunk in events]


class _Client:
    def __init__(self):
        self.gone = False

    async def is_disconnected(self):
        return self.gone


def test_idle_stream_yields_keepalive_without_blocking_the_loop():
    hub = RealtimeHub(queue_size=8)

    async def scenario():
        subscription = hub.subscribe("notifications", "user_1")
        events = sse_events(
            subscription,
            encode=lambda event: json.dumps(event.payload),
            event_name="notification",
            keepalive_seconds=0.2,
            poll_seconds=0.01,
        )
        first = asyncio.ensure_future(_next_chunk(events))
        ticks = 0
        while not first.done():
            ticks += 1
            await asyncio.sleep(0.01)
        keepalive = first.result()

        hub.publish("notifications", "user_1", {"title": "Trip confirmed"}, event="INSERT")
        delivered = await asyncio.wait_for(_next_chunk(events), timeout=1.0)
        await events.aclose()
        return ticks, keepalive, delivered

    ticks, keepalive, delivered = asyncio.run(scenario())

    assert ticks >= 5
    assert keepalive == ": keep-alive\n\n"
    assert delivered == 'event: notification\ndata: {"title": "Trip confirmed"}\n\n'
    assert hub.subscriber_count("notifications", "user_1") == 0


def test_stream_ends_and_unsubscribes_when_client_disconnects():
    hub = RealtimeHub(queue_size=8)
    client = _Client()

    async def scenario():
        subscription = hub.subscribe("bookings", "bk_1")
        events = sse_events(
            subscription,
            encode=lambda event: json.dumps(event.payload),
            event_name="booking",
            request=client,
            keepalive_seconds=60,
            poll_seconds=0.01,
        )
        pending = asyncio.ensure_future(_collect(events))
        await asyncio.sleep(0.05)
        assert hub.subscriber_count("bookings", "bk_1") == 1
        client.gone = True
        return await asyncio.wait_for(pending, timeout=1.0)

    assert asyncio.run(scenario()) == []
    assert hub.subscriber_count("bookings", "bk_1") == 0


def test_overflowed_stream_asks_client_to_resync():
    hub = RealtimeHub(queue_size=1)

    async def scenario():
        subscription = hub.subscribe("bookings", "bk_1")
        hub.publish("bookings", "bk_1", {"status": "quoted"})
        hub.publish("bookings", "bk_1", {"status": "cancelled"})
        events = sse_events(subscription, encode=lambda event: json.dumps(event.payload), event_name="booking")
        return await _collect(events)

    chunks = asyncio.run(scenario())
    assert chunks[-1].startswith("event: resync\n")
    assert hub.subscriber_count("bookings", "bk_1") == 0
