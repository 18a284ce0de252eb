import logging
import sqlite3
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional

from app.config import NOTIFICATION_DRAIN_INTERVAL_SECONDS, NOTIFICATION_MAX_ATTEMPTS
from app.models import NotificationPreferences, NotificationRecord
from app.services.database import Database, Transaction, database, new_id, utc_now_iso
from app.services.errors import NotFound, ValidationError
from app.services.push_sender import PushSender, push_sender
from app.services.realtime import RealtimeHub, realtime_hub

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"quote_received", "inquiry_received", "booking_update", "admin_message"}


class NotificationDispatcher:
    """Outbox-backed notification delivery.

    ``enqueue`` only records an intent and never raises; ``drain_outbox``
    turns intents into notification rows, realtime events and push messages.
    An intent stays in the outbox until delivered or until it has failed
    ``max_attempts`` times.
    """

    def __init__(
        self,
        db: Database,
        realtime: RealtimeHub,
        sender: PushSender,
        max_attempts: int = NOTIFICATION_MAX_ATTEMPTS,
    ):
        self._db = db
        self._realtime = realtime
        self._sender = sender
        self._max_attempts = max_attempts
        self._drain_lock = Lock()
        self.failed_enqueues = 0
        self.failed_deliveries = 0

    def enqueue(
        self,
        recipient_id: str,
        notification_type: str,
        title: str,
        body: str = "",
        link: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> Optional[str]:
        try:
            if notification_type not in NOTIFICATION_TYPES:
                raise ValueError(f"Unknown notification type: {notification_type}")
            if not recipient_id:
                raise ValueError("Notification recipient is required")
            if tx is not None:
                return self._insert_outbox(tx, recipient_id, notification_type, title, body, link)
            with self._db.transaction() as own_tx:
                return self._insert_outbox(own_tx, recipient_id, notification_type, title, body, link)
        except Exception:
            self.failed_enqueues += 1
            logger.exception("Notification enqueue failed (recipient=%s type=%s)", recipient_id, notification_type)
            return None

    def _insert_outbox(
        self,
        tx: Transaction,
        recipient_id: str,
        notification_type: str,
        title: str,
        body: str,
        link: Optional[str],
    ) -> str:
        outbox_id = new_id("obx")
        tx.execute(
            """
            INSERT INTO notification_outbox (id, recipient_id, type, title, body, link, attempts, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (outbox_id, recipient_id, notification_type, title, body or "", link, utc_now_iso()),
        )
        return outbox_id

    def kick(self) -> int:
        try:
            return self.drain_outbox()
        except Exception:
            logger.exception("Notification outbox drain failed")
            return 0

    def drain_outbox(self, limit: int = 100) -> int:
        # Another drain in this process is already running; it will pick up our rows.
        if not self._drain_lock.acquire(blocking=False):
            return 0
        try:
            with self._db.read() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM notification_outbox
                    WHERE delivered_at IS NULL AND attempts < ?
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT ?
                    """,
                    (self._max_attempts, limit),
                ).fetchall()
            delivered = 0
            for row in rows:
                try:
                    if self._deliver(row):
                        delivered += 1
                except Exception as exc:
                    self.failed_deliveries += 1
                    logger.exception("Notification delivery failed for outbox row %s", row["id"])
                    self._record_failure(row["id"], exc)
            return delivered
        finally:
            self._drain_lock.release()

    def _deliver(self, row: sqlite3.Row) -> bool:
        record: Optional[NotificationRecord] = None
        tokens: List[str] = []
        with self._db.transaction() as tx:
            now_iso = utc_now_iso()
            claimed = tx.execute(
                "UPDATE notification_outbox SET delivered_at = ?, attempts = attempts + 1 WHERE id = ? AND delivered_at IS NULL",
                (now_iso, row["id"]),
            ).rowcount
            if not claimed:
                return False

            preference = tx.execute(
                "SELECT enabled FROM notification_preferences WHERE user_id = ? AND type = ?",
                (row["recipient_id"], row["type"]),
            ).fetchone()
            if preference is not None and not bool(preference["enabled"]):
                tx.execute(
                    "UPDATE notification_outbox SET last_error = ? WHERE id = ?",
                    ("suppressed by recipient preference", row["id"]),
                )
                return False

            record = NotificationRecord(
                id=new_id("ntf"),
                user_id=row["recipient_id"],
                type=row["type"],
                title=row["title"],
                body=row["body"] or "",
                link=row["link"],
                read=False,
                created_at=now_iso,
            )
            tx.execute(
                """
                INSERT INTO notifications (id, user_id, type, title, body, link, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (record.id, record.user_id, record.type, record.title, record.body, record.link, record.created_at),
            )
            tokens = [
                str(token_row["token"])
                for token_row in tx.execute("SELECT token FROM device_tokens WHERE user_id = ?", (record.user_id,)).fetchall()
            ]
            published = record
            tx.after_commit(
                lambda: self._realtime.publish("notifications", published.user_id, published.model_dump(), event="INSERT")
            )

        self._push(tokens, record)
        return True

    def _push(self, tokens: List[str], record: NotificationRecord) -> None:
        if not tokens:
            return
        try:
            rejected = self._sender.send(tokens, record)
        except Exception:
            logger.exception("Push send failed for notification %s", record.id)
            return
        if not rejected:
            return
        try:
            with self._db.transaction() as tx:
                for token in rejected:
                    tx.execute("DELETE FROM device_tokens WHERE user_id = ? AND token = ?", (record.user_id, token))
        except Exception:
            logger.exception("Failed to forget rejected device tokens for %s", record.user_id)

    def _record_failure(self, outbox_id: str, exc: Exception) -> None:
        try:
            with self._db.transaction() as tx:
                tx.execute(
                    """
                    UPDATE notification_outbox
                    SET attempts = attempts + 1, last_error = ?
                    WHERE id = ? AND delivered_at IS NULL
                    """,
                    (str(exc)[:500], outbox_id),
                )
        except Exception:
            logger.exception("Could not record delivery failure for outbox row %s", outbox_id)

    def pending_outbox(self, include_exhausted: bool = True, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM notification_outbox WHERE delivered_at IS NULL"
        params: List[Any] = []
        if not include_exhausted:
            query += " AND attempts < ?"
            params.append(self._max_attempts)
        query += " ORDER BY created_at ASC LIMIT ?"
        params.append(limit)
        with self._db.read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [dict(row) for row in rows]

    def _record_from_row(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            body=row["body"] or "",
            link=row["link"],
            read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 100) -> List[NotificationRecord]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._db.read() as conn:
            rows = conn.execute(query, (user_id, limit)).fetchall()
        return [self._record_from_row(row) for row in rows]

    def unread_count(self, user_id: str) -> int:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM notifications WHERE user_id = ? AND is_read = 0",
                (user_id,),
            ).fetchone()
        return int(row["total"])

    def mark_read(self, notification_id: str, actor_id: str) -> NotificationRecord:
        with self._db.transaction() as tx:
            row = tx.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            if not row or row["user_id"] != actor_id:
                raise NotFound("Notification not found")
            if not row["is_read"]:
                tx.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
            updated = self._record_from_row(row).model_copy(update={"read": True})
            if not row["is_read"]:
                tx.after_commit(lambda: self._realtime.publish("notifications", actor_id, updated.model_dump()))
        return updated

    def mark_all_read(self, recipient_id: str) -> int:
        with self._db.transaction() as tx:
            changed = tx.execute(
                "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
                (recipient_id,),
            ).rowcount
            if changed:
                tx.after_commit(
                    lambda: self._realtime.publish("notifications", recipient_id, {"user_id": recipient_id, "all_read": True})
                )
        return changed

    def get_preferences(self, user_id: str) -> NotificationPreferences:
        with self._db.read() as conn:
            rows = conn.execute(
                "SELECT type, enabled FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        preferences = {notification_type: True for notification_type in sorted(NOTIFICATION_TYPES)}
        for row in rows:
            preferences[str(row["type"])] = bool(row["enabled"])
        return NotificationPreferences(user_id=user_id, preferences=preferences)

    def set_preferences(self, user_id: str, preferences: Dict[str, bool]) -> NotificationPreferences:
        unknown = sorted(set(preferences) - NOTIFICATION_TYPES)
        if unknown:
            raise ValidationError(f"Unknown notification types: {', '.join(unknown)}", field="preferences")
        with self._db.transaction() as tx:
            for notification_type, enabled in preferences.items():
                tx.execute(
                    """
                    INSERT INTO notification_preferences (user_id, type, enabled) VALUES (?, ?, ?)
                    ON CONFLICT(user_id, type) DO UPDATE SET enabled = excluded.enabled
                    """,
                    (user_id, notification_type, 1 if enabled else 0),
                )
        return self.get_preferences(user_id)

    def register_device_token(self, user_id: str, device_token: str, platform: str = "android") -> None:
        token = device_token.strip()
        if not token:
            return
        with self._db.transaction() as tx:
            tx.execute(
                """
                INSERT INTO device_tokens (user_id, token, platform) VALUES (?, ?, ?)
                ON CONFLICT(user_id, token) DO UPDATE SET platform = excluded.platform
                """,
                (user_id, token, platform),
            )


class OutboxWorker:
    """Background thread that drains the outbox on a fixed interval."""

    def __init__(self, dispatcher: NotificationDispatcher, interval_seconds: float = NOTIFICATION_DRAIN_INTERVAL_SECONDS):
        self._dispatcher = dispatcher
        self._interval = interval_seconds
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._run, name="notification-outbox", daemon=True)
        self._thread.start()
        logger.info("Notification outbox worker started (interval=%ss)", self._interval)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._dispatcher.kick()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None


notification_dispatcher = NotificationDispatcher(database, realtime_hub, push_sender)
outbox_worker = OutboxWorker(notification_dispatcher)
