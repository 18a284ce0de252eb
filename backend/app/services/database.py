import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterator, List, Sequence
from uuid import uuid4

from app.services.errors import TransientStoreError

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def load_json(raw_value: Any, default: Any) -> Any:
    if raw_value in (None, ""):
        return default
    if not isinstance(raw_value, str):
        return default
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError:
        return default
    return parsed if isinstance(parsed, type(default)) else default


SEED_PROVIDERS = [
    {
        "slug": "sonrisa-dental-cancun",
        "name": "Sonrisa Dental Cancun",
        "admin_managed": False,
        "admin_email": None,
        "members": ["clinic_user_1"],
    },
    {
        "slug": "baja-bariatric-center",
        "name": "Baja Bariatric Center",
        "admin_managed": True,
        "admin_email": "concierge@example.com",
        "members": ["clinic_user_2"],
    },
    {
        "slug": "medellin-aesthetics",
        "name": "Medellin Aesthetics Clinic",
        "admin_managed": False,
        "admin_email": None,
        "members": ["clinic_user_3", "clinic_user_4"],
    },
]


class Transaction:
    """Write transaction handle with post-commit hooks.

    Hooks run after COMMIT while the store lock is still held, so anything
    they publish is observed in commit order.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._after_commit: List[Callable[[], None]] = []

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def _run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                callback()
            except Exception:
                logger.exception("Post-commit hook failed")


@dataclass
class Database:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Serialised write transaction.

        Commits on normal exit and rolls back on any exception. Storage-level
        failures are re-raised as TransientStoreError; engine errors raised by
        the caller propagate unchanged.
        """
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.OperationalError as exc:
                raise TransientStoreError("Temporary storage problem, please retry") from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
                tx = Transaction(conn)
                yield tx
                conn.execute("COMMIT")
                tx._run_after_commit()
            except sqlite3.OperationalError as exc:
                self._rollback(conn)
                logger.warning("Write transaction failed: %s", exc)
                raise TransientStoreError("Temporary storage problem, please retry") from exc
            except BaseException:
                self._rollback(conn)
                raise
            finally:
                conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.OperationalError as exc:
            raise TransientStoreError("Temporary storage problem, please retry") from exc
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            logger.warning("Read failed: %s", exc)
            raise TransientStoreError("Temporary storage problem, please retry") from exc
        finally:
            conn.close()

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.exception("Rollback failed")

    def _init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    slug TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    admin_managed INTEGER NOT NULL DEFAULT 0,
                    admin_email TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_members (
                    provider_slug TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    PRIMARY KEY (provider_slug, user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trip_briefs (
                    id TEXT PRIMARY KEY,
                    traveler_id TEXT NOT NULL,
                    trip_name TEXT NOT NULL,
                    destination TEXT,
                    travel_window_start TEXT,
                    travel_window_end TEXT,
                    is_flexible INTEGER NOT NULL DEFAULT 0,
                    procedure_categories_json TEXT NOT NULL DEFAULT '[]',
                    procedures_json TEXT NOT NULL DEFAULT '[]',
                    procedures_unsure INTEGER NOT NULL DEFAULT 0,
                    is_group INTEGER NOT NULL DEFAULT 0,
                    group_members_json TEXT NOT NULL DEFAULT '[]',
                    budget_range TEXT NOT NULL DEFAULT 'no_budget',
                    status TEXT NOT NULL DEFAULT 'planning',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    traveler_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    procedures_json TEXT NOT NULL,
                    preferred_dates_json TEXT NOT NULL DEFAULT '{}',
                    inquiry_message TEXT NOT NULL DEFAULT '',
                    medical_notes TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    quoted_price REAL,
                    deposit_percent REAL,
                    deposit_amount REAL,
                    provider_message TEXT,
                    provider_estimated_dates TEXT,
                    trip_brief_id TEXT,
                    origin TEXT NOT NULL DEFAULT 'inquiry',
                    quote_request_id TEXT,
                    checkout_session_id TEXT,
                    payment_reference TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK (deposit_amount IS NULL OR quoted_price IS NOT NULL)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_traveler ON bookings (traveler_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings (provider_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_status_history (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quote_requests (
                    id TEXT PRIMARY KEY,
                    traveler_id TEXT NOT NULL,
                    trip_brief_id TEXT,
                    provider_id TEXT NOT NULL,
                    procedures_json TEXT NOT NULL,
                    is_group INTEGER NOT NULL DEFAULT 0,
                    group_members_json TEXT NOT NULL DEFAULT '[]',
                    travel_window_start TEXT,
                    travel_window_end TEXT,
                    is_flexible INTEGER NOT NULL DEFAULT 0,
                    notes TEXT NOT NULL DEFAULT '',
                    contact_email TEXT NOT NULL,
                    contact_phone TEXT,
                    comparing_providers INTEGER NOT NULL DEFAULT 0,
                    request_type TEXT NOT NULL DEFAULT 'quote',
                    status TEXT NOT NULL DEFAULT 'pending',
                    booking_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_quote_requests_brief ON quote_requests (trip_brief_id)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_messages (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (booking_id, seq)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL DEFAULT '',
                    link TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, created_at)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_outbox (
                    id TEXT PRIMARY KEY,
                    recipient_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL DEFAULT '',
                    link TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    delivered_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_preferences (
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    enabled INTEGER NOT NULL,
                    PRIMARY KEY (user_id, type)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS device_tokens (
                    user_id TEXT NOT NULL,
                    token TEXT NOT NULL,
                    platform TEXT NOT NULL DEFAULT 'android',
                    PRIMARY KEY (user_id, token)
                )
                """
            )

    def _seed_if_needed(self) -> None:
        with self.transaction() as conn:
            existing = conn.execute("SELECT COUNT(*) AS total FROM providers").fetchone()
            if existing["total"]:
                return
            now_iso = utc_now_iso()
            for provider in SEED_PROVIDERS:
                conn.execute(
                    "INSERT INTO providers (slug, name, admin_managed, admin_email, created_at) VALUES (?, ?, ?, ?, ?)",
                    (
                        provider["slug"],
                        provider["name"],
                        1 if provider["admin_managed"] else 0,
                        provider["admin_email"],
                        now_iso,
                    ),
                )
                for user_id in provider["members"]:
                    conn.execute(
                        "INSERT INTO provider_members (provider_slug, user_id) VALUES (?, ?)",
                        (provider["slug"], user_id),
                    )
            logger.info("Seeded %d providers", len(SEED_PROVIDERS))


default_db = str(Path(__file__).resolve().parents[2] / "data" / "bookings.sqlite3")
database = Database(db_path=os.getenv("BOOKINGS_DB_PATH", default_db))
