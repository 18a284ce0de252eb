import logging
import queue
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Set, Tuple

from app.config import REALTIME_QUEUE_SIZE
from app.services.database import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class RealtimeEvent:
    table: str
    row_id: str
    event: str
    payload: Dict[str, Any]
    published_at: str = field(default_factory=utc_now_iso)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "row_id": self.row_id,
            "event": self.event,
            "payload": self.payload,
            "published_at": self.published_at,
        }


class SubscriptionClosed(Exception):
    pass


class Subscription:
    """Live feed for one (table, row_id) key.

    Delivery is in publish order. A subscriber that falls more than the queue
    size behind is dropped and marked ``overflowed``; it has to re-read from
    the store before subscribing again.
    """

    def __init__(self, hub: "RealtimeHub", key: Tuple[str, str], maxsize: int):
        self._hub = hub
        self.key = key
        self._queue: "queue.Queue[RealtimeEvent]" = queue.Queue(maxsize=maxsize)
        self.closed = False
        self.overflowed = False

    def _offer(self, event: RealtimeEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.overflowed = True
            self.closed = True
            logger.warning("Realtime subscriber overflowed on %s:%s", *self.key)
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[RealtimeEvent]:
        if self.overflowed:
            raise SubscriptionClosed("subscriber fell behind")
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            if self.closed:
                raise SubscriptionClosed("subscription closed")
            return None

    def __iter__(self) -> Iterator[RealtimeEvent]:
        while True:
            try:
                event = self.get(timeout=1.0)
            except SubscriptionClosed:
                return
            if event is not None:
                yield event

    def close(self) -> None:
        self.closed = True
        self._hub._remove(self)


class RealtimeHub:
    def __init__(self, queue_size: int = REALTIME_QUEUE_SIZE):
        self._lock = Lock()
        self._queue_size = queue_size
        self._subscribers: Dict[Tuple[str, str], Set[Subscription]] = {}

    def subscribe(self, table: str, row_id: str) -> Subscription:
        key = (table, row_id)
        subscription = Subscription(self, key, self._queue_size)
        with self._lock:
            self._subscribers.setdefault(key, set()).add(subscription)
        return subscription

    def publish(self, table: str, row_id: str, payload: Dict[str, Any], event: str = "UPDATE") -> int:
        key = (table, row_id)
        message = RealtimeEvent(table=table, row_id=row_id, event=event, payload=payload)
        with self._lock:
            subscribers = list(self._subscribers.get(key, set()))
        delivered = 0
        dropped = []
        for subscription in subscribers:
            if subscription._offer(message):
                delivered += 1
            else:
                dropped.append(subscription)
        for subscription in dropped:
            self._remove(subscription)
        return delivered

    def subscriber_count(self, table: str, row_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get((table, row_id), set()))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            current = self._subscribers.get(subscription.key)
            if not current:
                return
            current.discard(subscription)
            if not current:
                self._subscribers.pop(subscription.key, None)


realtime_hub = RealtimeHub()
