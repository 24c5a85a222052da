"""Transactional outbox: enqueue inside the state-change transaction, publish later.

Rows are claimed in batches (`PENDING`, or `PROCESSING` rows whose claim went
stale), handed to the event bus, then marked `SENT` or returned to `PENDING`.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update

from settlepay.common.events import EventEnvelope
from settlepay.common.logging import logger
from settlepay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


def enqueue_event(db, outbox_model, topic: str, event: EventEnvelope, aggregate_type: str = "payout_ledger") -> None:
    """Stage one envelope in the caller's session; commits with the caller."""

    db.add(
        outbox_model(
            aggregate_type=aggregate_type,
            aggregate_id=event.aggregate_id,
            event_type=event.event_type,
            topic=topic,
            payload=event.model_dump(),
        )
    )


def claim_outbox_batch(db, outbox_model, limit: int = 100, claim_timeout_seconds: int = 30) -> list[dict]:
    """Flip a batch of publishable rows to `PROCESSING` and return them."""

    table = outbox_model.__table__
    now = datetime.now(timezone.utc)
    stale_claim = (table.c.status == "PROCESSING") & (
        table.c.sent_at < now - timedelta(seconds=claim_timeout_seconds)
    )
    candidates = (
        select(table.c.id)
        .where(or_(table.c.status == "PENDING", stale_claim))
        .order_by(table.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    claimed = db.execute(
        update(table)
        .where(table.c.id.in_(candidates))
        .values(status="PROCESSING", sent_at=now)
        .returning(table.c.id, table.c.topic, table.c.payload)
    ).all()
    return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in claimed]


def _settle_claim(db, outbox_model, event_id: str, delivered: bool) -> None:
    table = outbox_model.__table__
    values = {"status": "SENT", "sent_at": datetime.now(timezone.utc)} if delivered else {
        "status": "PENDING",
        "sent_at": None,
    }
    db.execute(update(table).where(table.c.id == event_id, table.c.status == "PROCESSING").values(**values))


def outbox_backlog(db, outbox_model) -> tuple[int, float]:
    """Return `(pending_count, oldest_pending_age_seconds)`."""

    table = outbox_model.__table__
    waiting = table.c.status.in_(("PENDING", "PROCESSING"))
    count, oldest = db.execute(select(func.count(), func.min(table.c.created_at)).where(waiting)).one()
    if oldest is None:
        return int(count), 0.0
    if oldest.tzinfo is None:
        oldest = oldest.replace(tzinfo=timezone.utc)
    return int(count), max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())


class OutboxPublisher:
    """Background loop draining one service's outbox table into the event bus."""

    def __init__(self, session_factory, outbox_model, bus, service_name: str, poll_seconds: float = 0.5) -> None:
        self.session_factory = session_factory
        self.outbox_model = outbox_model
        self.bus = bus
        self.service_name = service_name
        self.poll_seconds = poll_seconds

    def _record_backlog(self, db) -> None:
        pending, age_seconds = outbox_backlog(db, self.outbox_model)
        outbox_pending_total.labels(service=self.service_name).set(float(pending))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age_seconds)

    async def publish_batch(self, limit: int = 100) -> int:
        """Publish one claimed batch; returns the number delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, self.outbox_model, limit=limit)
            db.commit()
        delivered = 0
        for row in rows:
            try:
                await self.bus.publish(row["topic"], EventEnvelope(**row["payload"]))
                ok = True
                delivered += 1
            except Exception as exc:
                logger.exception("outbox publish failed id=%s topic=%s: %s", row["id"], row["topic"], exc)
                ok = False
            with self.session_factory() as db:
                _settle_claim(db, self.outbox_model, row["id"], delivered=ok)
                db.commit()
        with self.session_factory() as db:
            self._record_backlog(db)
        return delivered

    async def run_forever(self) -> None:
        while True:
            try:
                await self.publish_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(self.poll_seconds)
