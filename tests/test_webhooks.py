"""Webhook verification, idempotent replays and early deliveries."""

import json

import pytest
from sqlalchemy import select

from settlepay.common.errors import Conflict, SecurityError
from settlepay.services.gateway.service import compute_signature
from settlepay.services.orchestrator.models import WebhookInbox
from settlepay.services.orchestrator.webhooks import WebhookReceiver

from conftest import WEBHOOK_SECRET, WEEK


def _webhook(event: str, payout_id: str, **entity) -> bytes:
    body = {"event": event, "payload": {"payout": {"entity": {"id": payout_id, **entity}}}}
    return json.dumps(body).encode("utf-8")


def _signed(raw: bytes) -> str:
    return compute_signature(WEBHOOK_SECRET, raw)


@pytest.fixture
def receiver(orchestrator, gateway):
    return WebhookReceiver(orchestrator, gateway)


@pytest.fixture
def processing_ledger(orchestrator, professional_with_revenue):
    ledger = orchestrator.generate(professional_with_revenue, WEEK).ledger
    return orchestrator.process(ledger.ledger_id)


def test_invalid_signature_is_rejected_without_changes(receiver, orchestrator, processing_ledger):
    """Bad or missing signatures raise before the ledger is touched."""

    raw = _webhook("payout.processed", processing_ledger.gateway_payout_id, utr="UTR1")

    with pytest.raises(SecurityError):
        receiver.handle(raw, "0" * 64)
    with pytest.raises(SecurityError):
        receiver.handle(raw, None)

    assert orchestrator.get(processing_ledger.ledger_id).status == "processing"


def test_processed_webhook_completes_ledger(receiver, orchestrator, processing_ledger):
    """A processed webhook completes the ledger with its UTR."""

    raw = _webhook("payout.processed", processing_ledger.gateway_payout_id, status="processed", utr="UTR1")

    assert receiver.handle(raw, _signed(raw)) == "applied"

    ledger = orchestrator.get(processing_ledger.ledger_id)
    assert ledger.status == "completed"
    assert ledger.transaction_id == "UTR1"


def test_replayed_webhook_is_a_noop(receiver, orchestrator, processing_ledger):
    """Replaying a webhook changes nothing."""

    raw = _webhook("payout.processed", processing_ledger.gateway_payout_id, utr="UTR1")
    receiver.handle(raw, _signed(raw))
    first = orchestrator.get(processing_ledger.ledger_id)

    assert receiver.handle(raw, _signed(raw)) == "noop"

    again = orchestrator.get(processing_ledger.ledger_id)
    assert again.transferred_at == first.transferred_at
    assert again.state_version == first.state_version
    assert len(orchestrator.timeline(processing_ledger.ledger_id)) == 3


def test_failed_webhook_fails_ledger(receiver, orchestrator, processing_ledger):
    """A failed webhook records the gateway reason."""

    raw = _webhook("payout.failed", processing_ledger.gateway_payout_id, failure_reason="Account closed")

    receiver.handle(raw, _signed(raw))

    ledger = orchestrator.get(processing_ledger.ledger_id)
    assert ledger.status == "failed"
    assert ledger.failure_reason == "Account closed"


def test_failed_webhook_without_reason(receiver, orchestrator, processing_ledger):
    """A failed webhook without a reason gets a default one."""

    raw = _webhook("payout.failed", processing_ledger.gateway_payout_id)

    receiver.handle(raw, _signed(raw))

    assert orchestrator.get(processing_ledger.ledger_id).failure_reason == "Payment failed"


def test_contradicting_terminal_state_is_ignored(receiver, orchestrator, processing_ledger):
    """A late failure cannot reopen a completed ledger."""

    done = _webhook("payout.processed", processing_ledger.gateway_payout_id, utr="UTR1")
    receiver.handle(done, _signed(done))
    late_failure = _webhook("payout.failed", processing_ledger.gateway_payout_id)

    assert receiver.handle(late_failure, _signed(late_failure)) == "noop"
    assert orchestrator.get(processing_ledger.ledger_id).status == "completed"


def test_unhandled_event_is_acknowledged(receiver, processing_ledger):
    """Events we do not act on are acknowledged and ignored."""

    raw = _webhook("payout.queued", processing_ledger.gateway_payout_id)

    assert receiver.handle(raw, _signed(raw)) == "ignored"


def test_malformed_body_is_acknowledged(receiver):
    """A signed but unreadable body is ignored, not an error."""

    raw = b"not json"

    assert receiver.handle(raw, _signed(raw)) == "ignored"


def test_early_webhook_is_buffered_then_applied(receiver, orchestrator, session_factory, professional_with_revenue):
    """A webhook that beats the submit response is replayed once the payout id is stored."""

    raw = _webhook("payout.processed", "pout_1", utr="UTR-EARLY")
    assert receiver.handle(raw, _signed(raw)) == "buffered"

    ledger = orchestrator.generate(professional_with_revenue, WEEK).ledger
    submitted = orchestrator.process(ledger.ledger_id)

    assert submitted.status == "completed"
    assert submitted.transaction_id == "UTR-EARLY"
    with session_factory() as db:
        row = db.execute(select(WebhookInbox)).scalar_one()
        assert row.status == "APPLIED"
        assert row.applied_at is not None


def test_repeated_lost_race_is_acknowledged(receiver, orchestrator, processing_ledger, monkeypatch):
    """Two stale commits in a row answer `noop` so the gateway is not told to redeliver."""

    def always_stale(db):
        db.rollback()
        raise Conflict("payout was modified concurrently; reload and retry", code="stale_state")

    monkeypatch.setattr(orchestrator, "_commit", always_stale)
    raw = _webhook("payout.processed", processing_ledger.gateway_payout_id, utr="UTR1")

    assert receiver.handle(raw, _signed(raw)) == "noop"
    assert orchestrator.get(processing_ledger.ledger_id).status == "processing"
