"""Kafka envelope + producer/consumer helpers.

Lifecycle events leave the orchestrator through its outbox and are consumed by
downstream sinks (notification fan-out, dashboards) with these helpers.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from settlepay.common.config import settings
from settlepay.common.logging import bind_log_context, logger
from settlepay.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


def decode_envelope(raw: bytes) -> EventEnvelope:
    return EventEnvelope(**json.loads(raw.decode("utf-8")))


class KafkaBus:
    """Lazy Kafka producer wrapper used by service outbox publishers."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(event.model_dump()).encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def dispatch_event(topic: str, event: EventEnvelope, handler: EventHandler) -> None:
    """Run `handler` with correlation ids bound and queue delay observed."""

    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    delay_seconds = (datetime.now(timezone.utc) - occurred_at.astimezone(timezone.utc)).total_seconds()
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(max(0.0, delay_seconds))

    with bind_log_context(trace_id=event.trace_id, event_id=event.event_id, ledger_id=event.aggregate_id):
        logger.info("event_received topic=%s event_type=%s aggregate_id=%s", topic, event.event_type, event.aggregate_id)
        await handler(event)


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    A failing message is logged and skipped; offsets are committed per batch.
    Broker errors restart the consumer after a short pause.
    """

    while True:
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        try:
            await consumer.start()
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=50)
                for messages in batches.values():
                    for msg in messages:
                        try:
                            await dispatch_event(topic, decode_envelope(msg.value), handler)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s", topic, group_id, msg.offset, exc
                            )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            await consumer.stop()
