"""Signed gateway webhook intake."""

from pydantic import ValidationError as PydanticValidationError

from settlepay.common.errors import SecurityError
from settlepay.common.logging import logger
from settlepay.common.metrics import webhook_events_total
from settlepay.services.gateway.schemas import PayoutWebhook
from settlepay.services.gateway.service import PayoutGateway
from settlepay.services.orchestrator.service import WEBHOOK_STATUSES, SettlementOrchestrator


class WebhookReceiver:
    """Verifies, parses and routes payout webhooks to the orchestrator.

    The signature is checked over the exact raw bytes before anything is
    parsed or looked up, so an unsigned request learns nothing about ledgers.
    """

    def __init__(self, orchestrator: SettlementOrchestrator, gateway: PayoutGateway, service_name: str = "orchestrator"):
        self.orchestrator = orchestrator
        self.gateway = gateway
        self.service_name = service_name

    def _count(self, event: str, outcome: str) -> None:
        webhook_events_total.labels(service=self.service_name, event=event, outcome=outcome).inc()

    def handle(self, raw_body: bytes, signature: str | None, trace_id: str = "") -> str:
        """Return the outcome: `applied`, `noop`, `buffered` or `ignored`."""

        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("webhook_rejected reason=invalid_signature bytes=%s", len(raw_body))
            self._count("unknown", "invalid_signature")
            raise SecurityError("Invalid webhook signature")

        try:
            webhook = PayoutWebhook.model_validate_json(raw_body)
            entity = webhook.payout_entity()
        except (PydanticValidationError, ValueError) as exc:
            logger.warning("webhook_ignored reason=malformed error=%s", exc)
            self._count("unknown", "malformed")
            return "ignored"

        if webhook.event not in WEBHOOK_STATUSES or entity is None:
            logger.info("webhook_ignored event=%s", webhook.event)
            self._count(webhook.event, "ignored")
            return "ignored"

        outcome = self.orchestrator.apply_webhook(webhook.event, entity.model_dump(), trace_id)
        logger.info("webhook_handled event=%s gateway_payout_id=%s outcome=%s", webhook.event, entity.id, outcome)
        self._count(webhook.event, outcome)
        return outcome
