"""Payout notification service: lifecycle consumer plus per-ledger notification reads."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from settlepay.common.config import settings
from settlepay.common.db import SessionLocal
from settlepay.common.logging import configure_logging, logger
from settlepay.common.metrics import metrics_response
from settlepay.common.startup import log_startup_config
from settlepay.common.tracing import instrument_app, setup_tracing
from settlepay.services.notification.service import CONSUMER_GROUP, NotificationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "LIFECYCLE_TOPIC"],
)
service = NotificationService(SessionLocal, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Consume payout lifecycle events for as long as the app runs."""

    logger.info(
        "payout notification consumer starting topic=%s group=%s channel=%s",
        settings.lifecycle_topic,
        CONSUMER_GROUP,
        service.channel,
    )
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()
    logger.info("payout notification consumer stopped topic=%s", settings.lifecycle_topic)


app = FastAPI(title="SettlePay Notification Service", lifespan=lifespan)
instrument_app(app)


def get_notification_service() -> NotificationService:
    return service


@app.get("/notifications/{ledger_id}")
def ledger_notifications(ledger_id: str, svc: NotificationService = Depends(get_notification_service)):
    """Every status broadcast sent for one payout ledger."""

    return {
        "ledger_id": ledger_id,
        "items": [
            {
                "new_status": row.new_status,
                "recipient": row.recipient,
                "channel": row.channel,
                "message": row.message,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in svc.notifications_for(ledger_id)
        ],
    }


@app.get("/health")
def health():
    return {"ok": True, "topic": settings.lifecycle_topic}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
