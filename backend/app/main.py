import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.config import NOTIFICATION_WORKER_ENABLED, env_csv
from app.routers import bookings, notifications, payments, quotes, trip_briefs
from app.services.database import database
from app.services.notification_dispatcher import notification_dispatcher, outbox_worker
from app.services.payments import stripe_checkout
from app.services.push_sender import push_sender

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if NOTIFICATION_WORKER_ENABLED:
        outbox_worker.start()
    try:
        yield
    finally:
        outbox_worker.stop()


app = FastAPI(title="Booking Lifecycle API", version="0.1.0", lifespan=lifespan)

cors_origins = env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(bookings.router)
app.include_router(quotes.router)
app.include_router(trip_briefs.router)
app.include_router(notifications.router)
app.include_router(payments.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    with database.read() as conn:
        conn.execute("SELECT 1").fetchone()
    return {
        "status": "ready",
        "outbox_worker": outbox_worker.running,
        "pending_notifications": len(notification_dispatcher.pending_outbox(include_exhausted=False)),
        "payments_configured": stripe_checkout.configured,
        "push_enabled": push_sender.enabled,
    }
