import os
import sys
import tempfile
from dataclasses import dataclass, field
from typing import List

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The app singletons open their database at import time.
os.environ.setdefault("BOOKINGS_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="bookings-tests-"), "bookings.sqlite3"))
os.environ["NOTIFICATION_WORKER_ENABLED"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["STRIPE_API_KEY"] = ""

from app.services.database import Database
from app.services.lifecycle import LifecycleEngine
from app.services.message_thread import MessageThreadService
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.payments import CheckoutSession
from app.services.realtime import RealtimeHub
from app.services.trip_briefs import TripBriefLinker


class FakePayments:
    def __init__(self):
        self.sessions: List[str] = []

    @property
    def configured(self) -> bool:
        return True

    def create_checkout_session(self, booking):
        self.sessions.append(booking.id)
        return CheckoutSession(url=f"https://pay.test/{booking.id}", session_id=f"cs_test_{booking.id}")


class FakePush:
    def __init__(self, rejected=None):
        self.sent = []
        self.rejected = list(rejected or [])

    @property
    def enabled(self) -> bool:
        return True

    def send(self, tokens, record):
        self.sent.append((list(tokens), record))
        return [token for token in tokens if token in self.rejected]


@dataclass
class Stack:
    db: Database
    hub: RealtimeHub
    dispatcher: NotificationDispatcher
    linker: TripBriefLinker
    engine: LifecycleEngine
    thread: MessageThreadService
    payments: FakePayments
    push: FakePush = field(default_factory=FakePush)

    def notifications(self, user_id: str):
        self.dispatcher.drain_outbox()
        return self.dispatcher.list_for_user(user_id)


def build_stack(db_path: str, dispatcher_factory=None, max_attempts: int = 3) -> Stack:
    db = Database(db_path=db_path)
    hub = RealtimeHub(queue_size=16)
    push = FakePush()
    dispatcher = (dispatcher_factory or NotificationDispatcher)(db, hub, push, max_attempts=max_attempts)
    linker = TripBriefLinker(db)
    payments = FakePayments()
    engine = LifecycleEngine(db, dispatcher, hub, payments, linker, admin_user_ids=("admin_1",), default_deposit_percent=25.0)
    thread = MessageThreadService(db, hub, dispatcher, engine)
    return Stack(db=db, hub=hub, dispatcher=dispatcher, linker=linker, engine=engine, thread=thread, payments=payments, push=push)


@pytest.fixture
def stack(tmp_path):
    return build_stack(str(tmp_path / "bookings.sqlite3"))
