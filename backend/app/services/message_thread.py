import logging
import sqlite3
from collections import deque
from typing import Deque, Iterator, List, Optional

from app.models import Message
from app.services.database import Database, database, new_id, utc_now_iso
from app.services.errors import NotFound, PermissionDenied, TransientStoreError, ValidationError
from app.services.lifecycle import LifecycleEngine, lifecycle_engine
from app.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher
from app.services.realtime import RealtimeHub, Subscription, SubscriptionClosed, realtime_hub
from app.services.rows import message_from_row

logger = logging.getLogger(__name__)

MESSAGE_TABLE = "booking_messages"
PREVIEW_CHARS = 140


class MessageSubscription:
    """Resumable message feed for one booking.

    Stored messages after ``last_seen_seq`` are replayed first, then live
    messages follow. Anything at or below the last delivered seq is dropped,
    so the feed has no gaps and no duplicates.
    """

    def __init__(self, live: Subscription, backlog: List[Message], last_seen_seq: int):
        self._live = live
        self._backlog: Deque[Message] = deque(backlog)
        self.last_seq = last_seen_seq

    @property
    def overflowed(self) -> bool:
        return self._live.overflowed

    def get(self, timeout: Optional[float] = None) -> Optional[Message]:
        while self._backlog:
            message = self._backlog.popleft()
            if message.seq > self.last_seq:
                self.last_seq = message.seq
                return message
        while True:
            event = self._live.get(timeout=timeout)
            if event is None:
                return None
            message = Message(**event.payload)
            if message.seq <= self.last_seq:
                continue
            self.last_seq = message.seq
            return message

    def __iter__(self) -> Iterator[Message]:
        while True:
            try:
                message = self.get(timeout=1.0)
            except SubscriptionClosed:
                return
            if message is not None:
                yield message

    def close(self) -> None:
        self._live.close()


class MessageThreadService:
    def __init__(
        self,
        db: Database,
        realtime: RealtimeHub,
        dispatcher: NotificationDispatcher,
        engine: LifecycleEngine,
    ):
        self._db = db
        self._realtime = realtime
        self._dispatcher = dispatcher
        self._engine = engine

    def post_message(self, booking_id: str, sender_id: str, body: str) -> Message:
        text = (body or "").strip()
        if not text:
            raise ValidationError("Message body cannot be empty", field="body")

        with self._db.transaction() as tx:
            booking = tx.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
            if not booking:
                raise NotFound("Booking not found")
            members = [
                str(row["user_id"])
                for row in tx.execute(
                    "SELECT user_id FROM provider_members WHERE provider_slug = ?",
                    (booking["provider_id"],),
                ).fetchall()
            ]
            is_provider = sender_id in members
            if sender_id != booking["traveler_id"] and not is_provider:
                raise PermissionDenied("Only booking participants can post messages")

            next_seq = int(
                tx.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM booking_messages WHERE booking_id = ?",
                    (booking_id,),
                ).fetchone()["next_seq"]
            )
            message = Message(
                id=new_id("msg"),
                booking_id=booking_id,
                sender_id=sender_id,
                body=text,
                seq=next_seq,
                created_at=utc_now_iso(),
            )
            try:
                tx.execute(
                    "INSERT INTO booking_messages (id, booking_id, sender_id, body, seq, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (message.id, message.booking_id, message.sender_id, message.body, message.seq, message.created_at),
                )
            except sqlite3.IntegrityError as exc:
                logger.warning("Message seq %s collided on booking %s", next_seq, booking_id)
                raise TransientStoreError("Temporary storage problem, please retry") from exc

            payload = message.model_dump()
            tx.after_commit(lambda: self._realtime.publish(MESSAGE_TABLE, booking_id, payload, event="INSERT"))

            recipients = [booking["traveler_id"], *members]
            preview = text if len(text) <= PREVIEW_CHARS else text[: PREVIEW_CHARS - 3] + "..."
            for recipient_id in dict.fromkeys(recipients):
                if recipient_id == sender_id:
                    continue
                try:
                    self._dispatcher.enqueue(recipient_id, "booking_update", "New message", preview, f"booking:{booking_id}", tx=tx)
                except Exception:
                    logger.exception("Message notification enqueue raised for %s", recipient_id)

            if is_provider and booking["status"] == "inquiry":
                self._engine.mark_provider_responded(booking_id, sender_id, tx=tx)

        return message

    def list_messages(self, booking_id: str, after_seq: int = 0, limit: Optional[int] = None) -> List[Message]:
        query = "SELECT * FROM booking_messages WHERE booking_id = ? AND seq > ? ORDER BY seq ASC"
        params: tuple = (booking_id, max(after_seq or 0, 0))
        if limit:
            query += " LIMIT ?"
            params = (*params, limit)
        with self._db.read() as conn:
            if not conn.execute("SELECT 1 FROM bookings WHERE id = ?", (booking_id,)).fetchone():
                raise NotFound("Booking not found")
            rows = conn.execute(query, params).fetchall()
        return [message_from_row(row) for row in rows]

    def subscribe(self, booking_id: str, last_seen_seq: int = 0) -> MessageSubscription:
        # Register first so nothing committed during the replay read is missed.
        live = self._realtime.subscribe(MESSAGE_TABLE, booking_id)
        try:
            backlog = self.list_messages(booking_id, after_seq=last_seen_seq)
        except Exception:
            live.close()
            raise
        return MessageSubscription(live, backlog, max(last_seen_seq or 0, 0))


message_thread = MessageThreadService(database, realtime_hub, notification_dispatcher, lifecycle_engine)
