"""Notification sink for payout lifecycle events."""

import asyncio

from sqlalchemy import select

from settlepay.common.config import settings
from settlepay.common.events import EventEnvelope, consume_forever
from settlepay.common.logging import logger
from settlepay.common.metrics import duplicate_events_skipped_total
from settlepay.services.notification.models import InboxEvent, NotificationLog

CONSUMER_GROUP = "notification-payouts"

STATUS_MESSAGES = {
    "pending": "Payout of {amount} generated for your week",
    "processing": "Payout of {amount} is being processed",
    "completed": "Payout of {amount} has been transferred",
    "failed": "Payout of {amount} failed",
    "cancelled": "Payout of {amount} was cancelled",
}


class NotificationService:
    """Records one broadcast per lifecycle event, skipping redeliveries."""

    def __init__(self, session_factory, service_name: str = "notification", channel: str = "socket") -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.channel = channel

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    async def handle_lifecycle(self, event: EventEnvelope) -> None:
        """Persist one notification log per distinct event id."""

        payload = event.payload
        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped event_type=%s event_id=%s", event.event_type, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=settings.lifecycle_topic).inc()
                return
            status = payload.get("new_status", "")
            template = STATUS_MESSAGES.get(status, "Payout status changed to " + status)
            message = template.format(amount=payload.get("amount"))
            db.add(
                NotificationLog(
                    ledger_id=payload.get("ledger_id", event.aggregate_id),
                    professional_id=payload.get("professional_id", ""),
                    recipient=payload.get("professional_email", ""),
                    channel=self.channel,
                    new_status=status,
                    message=message,
                )
            )
            db.add(InboxEvent(event_id=event.event_id, consumed_by_service=self.service_name))
            db.commit()
        logger.info("payout_notification ledger_id=%s status=%s", event.aggregate_id, status)

    def notifications_for(self, ledger_id: str) -> list[NotificationLog]:
        """Broadcasts recorded for one ledger, oldest first."""

        with self.session_factory() as db:
            return list(
                db.scalars(
                    select(NotificationLog)
                    .where(NotificationLog.ledger_id == ledger_id)
                    .order_by(NotificationLog.created_at, NotificationLog.id)
                )
            )

    async def start_consumers(self) -> None:
        await asyncio.gather(
            consume_forever(settings.lifecycle_topic, CONSUMER_GROUP, self.handle_lifecycle),
        )
