import logging
from threading import Lock
from typing import Any, Dict, List

from app.config import FIREBASE_CREDENTIALS_PATH
from app.models import NotificationRecord

logger = logging.getLogger(__name__)

INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")
# FCM multicast accepts at most 500 tokens per call.
MULTICAST_LIMIT = 500


class PushSender:
    """Firebase Cloud Messaging fan-out for delivered notifications.

    ``send`` returns the device tokens Firebase rejected as invalid so the
    caller can forget them.
    """

    def __init__(self, credentials_path: str = FIREBASE_CREDENTIALS_PATH):
        self._credentials_path = credentials_path
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging: Any = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            if not self._credentials_path:
                logger.info("Push delivery disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging

                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self._credentials_path))
            except Exception:
                logger.exception("Push delivery disabled: Firebase init failed")
                return
            self._messaging = messaging
            self._enabled = True
            logger.info("Push delivery initialized")

    def _payload(self, record: NotificationRecord) -> Dict[str, str]:
        return {
            "notification_id": record.id,
            "type": record.type,
            "link": record.link or "",
        }

    def send(self, tokens: List[str], record: NotificationRecord) -> List[str]:
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        rejected: List[str] = []
        for start in range(0, len(tokens), MULTICAST_LIMIT):
            chunk = tokens[start : start + MULTICAST_LIMIT]
            message = self._messaging.MulticastMessage(
                notification=self._messaging.Notification(title=record.title, body=record.body),
                tokens=chunk,
                data=self._payload(record),
            )
            batch = self._messaging.send_each_for_multicast(message)
            for token, response in zip(chunk, batch.responses):
                if response.success:
                    continue
                error_text = str(response.exception).lower() if response.exception else ""
                if any(marker in error_text for marker in INVALID_TOKEN_MARKERS):
                    rejected.append(token)
        return rejected


push_sender = PushSender()
