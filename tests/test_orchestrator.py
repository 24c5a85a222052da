"""Settlement lifecycle through the orchestrator."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from settlepay.common.errors import Conflict, GatewayError, NotFound, ValidationError
from settlepay.services.gateway.models import GatewayCall
from settlepay.services.gateway.schemas import PayoutStatus
from settlepay.services.gateway.service import Ok
from settlepay.services.ledger.models import LedgerTimeline, OutboxEvent, PayoutLedger
from settlepay.services.ledger.service import LedgerStore
from settlepay.services.marketplace.models import Professional
from settlepay.services.orchestrator.service import SettlementOrchestrator

from conftest import WEEK, rejected_err, seed_order, seed_professional, timeout_err


def _count(session_factory, model) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def _generated(orchestrator, professional_id) -> PayoutLedger:
    return orchestrator.generate(professional_id, WEEK, "trace-1").ledger


def test_generate_creates_pending_ledger(orchestrator, session_factory, professional_with_revenue):
    """Generating writes a pending ledger, its first timeline row and an outbox event."""

    result = orchestrator.generate(professional_with_revenue, WEEK, "trace-1")

    assert result.created
    ledger = orchestrator.get(result.ledger.ledger_id)
    assert ledger.status == "pending"
    assert ledger.total_revenue == Decimal("800.00")
    assert ledger.platform_commission == Decimal("200.00")
    assert ledger.professional_payout == Decimal("600.00")
    assert len(ledger.service_items) == 2
    assert _count(session_factory, OutboxEvent) == 1
    assert [row.to_state for row in orchestrator.timeline(ledger.ledger_id)] == ["pending"]


def test_second_generate_returns_existing(orchestrator, session_factory, professional_with_revenue):
    """Scenario B: regenerating a week hands back the same ledger."""

    first = orchestrator.generate(professional_with_revenue, WEEK, "trace-1")
    second = orchestrator.generate(professional_with_revenue, WEEK, "trace-2")

    assert not second.created
    assert second.ledger.ledger_id == first.ledger.ledger_id
    assert _count(session_factory, PayoutLedger) == 1


def test_racing_generate_yields_one_ledger(orchestrator, session_factory, gateway, professional_with_revenue):
    """The loser of an insert race gets the winner's ledger back."""

    class LateStore(LedgerStore):
        misses = 2

        def find_for_week(self, db, professional_id, window):
            if self.misses:
                self.misses -= 1
                return None
            return super().find_for_week(db, professional_id, window)

    winner = orchestrator.generate(professional_with_revenue, WEEK, "trace-1")
    racer = SettlementOrchestrator(session_factory, gateway, store=LateStore(), commission_rate=Decimal("0.25"))

    loser = racer.generate(professional_with_revenue, WEEK, "trace-2")

    assert not loser.created
    assert loser.ledger.ledger_id == winner.ledger.ledger_id
    assert _count(session_factory, PayoutLedger) == 1


def test_generate_without_revenue(orchestrator, session_factory):
    """No revenue in the week means no ledger."""

    professional_id = seed_professional(session_factory)

    with pytest.raises(ValidationError) as exc:
        orchestrator.generate(professional_id, WEEK)
    assert exc.value.code == "no_revenue"
    assert _count(session_factory, PayoutLedger) == 0


def test_generate_unknown_professional(orchestrator):
    """Generating for an unknown professional is NotFound."""

    with pytest.raises(NotFound):
        orchestrator.generate("missing", WEEK)


def test_summary_preview_creates_nothing(orchestrator, session_factory, professional_with_revenue):
    """Previewing computes the split but writes nothing."""

    preview = orchestrator.summary_preview(professional_with_revenue, WEEK)

    assert preview["financial"]["total_revenue"] == Decimal("800")
    assert preview["financial"]["professional_payout"] == Decimal("600.00")
    assert preview["total_services"] == 2
    assert preview["existing_payout"] is None
    assert _count(session_factory, PayoutLedger) == 0


def test_process_completes_on_processed_submit(orchestrator, session_factory, gateway, professional_with_revenue):
    """A submit answered as processed completes the ledger at once."""

    ledger = _generated(orchestrator, professional_with_revenue)
    gateway.submit_results.append(Ok(PayoutStatus(gateway_payout_id="pout_77", status="processed", utr="UTR77")))

    done = orchestrator.process(ledger.ledger_id, admin_notes="weekly run", trace_id="trace-2")

    assert done.status == "completed"
    assert done.transaction_id == "UTR77"
    assert done.transferred_at is not None
    assert done.admin_notes == "weekly run"
    assert gateway.submissions()[0][2] == f"{ledger.ledger_id}:1"
    assert gateway.submissions()[0][3] == Decimal("600.00")
    with session_factory() as db:
        professional = db.get(Professional, professional_with_revenue)
        assert professional.gateway_fund_account_id == "fa_1"
    states = [row.to_state for row in orchestrator.timeline(ledger.ledger_id)]
    assert states == ["pending", "processing", "completed"]
    assert _count(session_factory, OutboxEvent) == 3
    assert _count(session_factory, GatewayCall) == 2


def test_process_leaves_processing_until_gateway_reports(orchestrator, gateway, professional_with_revenue):
    """A queued submit leaves the ledger processing with its payout id."""

    ledger = _generated(orchestrator, professional_with_revenue)

    submitted = orchestrator.process(ledger.ledger_id)

    assert submitted.status == "processing"
    assert submitted.gateway_payout_id == "pout_1"


def test_cached_link_skips_provisioning(orchestrator, session_factory, gateway):
    """Professionals with a stored gateway link are not provisioned again."""

    professional_id = seed_professional(session_factory, gateway_contact_id="cont_9", gateway_fund_account_id="fa_9")
    seed_order(session_factory, professional_id, "100.00")
    ledger = _generated(orchestrator, professional_id)

    orchestrator.process(ledger.ledger_id)

    assert not any(call[0] == "provision_account" for call in gateway.calls)


def test_unverified_bank_blocks_processing(orchestrator, session_factory, gateway):
    """Scenario C: the ledger stays pending and the gateway is never called."""

    professional_id = seed_professional(session_factory, bank_verified=False)
    seed_order(session_factory, professional_id, "400.00")
    ledger = _generated(orchestrator, professional_id)

    with pytest.raises(ValidationError) as exc:
        orchestrator.process(ledger.ledger_id)

    assert exc.value.code == "bank_not_verified"
    assert orchestrator.get(ledger.ledger_id).status == "pending"
    assert gateway.calls == []


def test_missing_bank_details_block_processing(orchestrator, session_factory):
    """Processing requires bank details on file."""

    professional_id = seed_professional(session_factory, bank_details=None)
    seed_order(session_factory, professional_id, "400.00")
    ledger = _generated(orchestrator, professional_id)

    with pytest.raises(ValidationError) as exc:
        orchestrator.process(ledger.ledger_id)
    assert exc.value.code == "bank_details_missing"


def test_timeout_then_retry_completes(orchestrator, gateway, professional_with_revenue):
    """Scenario D: a timeout fails the ledger; the retry reuses the key and succeeds."""

    ledger = _generated(orchestrator, professional_with_revenue)
    gateway.submit_results.append(timeout_err())

    with pytest.raises(GatewayError):
        orchestrator.process(ledger.ledger_id)

    failed = orchestrator.get(ledger.ledger_id)
    assert failed.status == "failed"
    assert "timeout" in failed.failure_reason
    assert failed.failure_retryable

    gateway.submit_results.append(Ok(PayoutStatus(gateway_payout_id="pout_2", status="processed", utr="UTR2")))
    retried = orchestrator.retry(ledger.ledger_id)

    assert retried.status == "completed"
    assert retried.professional_payout == Decimal("600.00")
    keys = [call[2] for call in gateway.submissions()]
    assert keys == [f"{ledger.ledger_id}:1", f"{ledger.ledger_id}:1"]


def test_rejection_is_recorded_verbatim_and_bumps_key_on_retry(orchestrator, gateway, professional_with_revenue):
    """Rejections keep the gateway text and retry under a new key."""

    ledger = _generated(orchestrator, professional_with_revenue)
    gateway.submit_results.append(rejected_err())

    with pytest.raises(GatewayError):
        orchestrator.process(ledger.ledger_id)

    failed = orchestrator.get(ledger.ledger_id)
    assert failed.failure_reason == "Failed to submit payout: Insufficient balance"
    assert not failed.failure_retryable

    orchestrator.retry(ledger.ledger_id)
    assert gateway.submissions()[-1][2] == f"{ledger.ledger_id}:2"


def test_unexpected_error_never_leaves_processing(orchestrator, gateway, professional_with_revenue):
    """An unexpected exception still fails the ledger."""

    ledger = _generated(orchestrator, professional_with_revenue)

    def explode(*args, **kwargs):
        raise RuntimeError("connection pool exhausted")

    gateway.submit_payout = explode

    with pytest.raises(RuntimeError):
        orchestrator.process(ledger.ledger_id)

    failed = orchestrator.get(ledger.ledger_id)
    assert failed.status == "failed"
    assert failed.failure_reason == "connection pool exhausted"


def test_process_twice_is_rejected(orchestrator, gateway, professional_with_revenue):
    """A ledger is submitted at most once per process call."""

    ledger = _generated(orchestrator, professional_with_revenue)
    orchestrator.process(ledger.ledger_id)

    with pytest.raises(Conflict):
        orchestrator.process(ledger.ledger_id)
    assert len(gateway.submissions()) == 1


def test_retry_requires_failed(orchestrator, professional_with_revenue):
    """Only failed ledgers can be retried."""

    ledger = _generated(orchestrator, professional_with_revenue)

    with pytest.raises(Conflict) as exc:
        orchestrator.retry(ledger.ledger_id)
    assert exc.value.code == "invalid_transition"


def test_cancel_completed_is_rejected(orchestrator, gateway, professional_with_revenue):
    """Scenario E: funds already moved, so cancel is refused and nothing changes."""

    ledger = _generated(orchestrator, professional_with_revenue)
    gateway.submit_results.append(Ok(PayoutStatus(gateway_payout_id="pout_5", status="processed", utr="UTR5")))
    orchestrator.process(ledger.ledger_id)

    with pytest.raises(Conflict) as exc:
        orchestrator.cancel(ledger.ledger_id, "customer dispute")

    assert exc.value.code == "already_completed"
    assert orchestrator.get(ledger.ledger_id).status == "completed"


def test_cancel_pending(orchestrator, professional_with_revenue):
    """Pending ledgers can be cancelled with a reason."""

    ledger = _generated(orchestrator, professional_with_revenue)

    cancelled = orchestrator.cancel(ledger.ledger_id, "duplicate bank account")

    assert cancelled.status == "cancelled"
    assert cancelled.cancel_reason == "duplicate bank account"


def test_cancel_failed_is_invalid(orchestrator, gateway, professional_with_revenue):
    """Failed ledgers are retried, not cancelled."""

    ledger = _generated(orchestrator, professional_with_revenue)
    gateway.submit_results.append(rejected_err())
    with pytest.raises(GatewayError):
        orchestrator.process(ledger.ledger_id)

    with pytest.raises(Conflict) as exc:
        orchestrator.cancel(ledger.ledger_id, "give up")
    assert exc.value.code == "invalid_transition"


def test_stale_write_is_a_conflict(orchestrator, session_factory, professional_with_revenue):
    """A write based on an outdated version is rejected as stale_state."""

    ledger = _generated(orchestrator, professional_with_revenue)
    with session_factory() as first, session_factory() as second:
        mine = first.get(PayoutLedger, ledger.ledger_id)
        theirs = second.get(PayoutLedger, ledger.ledger_id)
        theirs.mark_cancelled("admin")
        second.commit()

        orchestrator._transition(first, mine, mine.mark_processing, "process_requested", "trace")
        with pytest.raises(Conflict) as exc:
            orchestrator._commit(first)
    assert exc.value.code == "stale_state"
    assert orchestrator.get(ledger.ledger_id).status == "cancelled"


def test_check_status_completes_processing(orchestrator, gateway, professional_with_revenue):
    """Polling a processed payout completes the ledger."""

    ledger = _generated(orchestrator, professional_with_revenue)
    orchestrator.process(ledger.ledger_id)
    gateway.status_results.append(Ok(PayoutStatus(gateway_payout_id="pout_1", status="processed", utr="UTR1")))

    check = orchestrator.check_status(ledger.ledger_id)

    assert check.gateway_status == "processed"
    assert check.ledger.status == "completed"
    assert check.ledger.transaction_id == "UTR1"


def test_check_status_reversal_fails_ledger(orchestrator, gateway, professional_with_revenue):
    """A reversed payout fails the ledger with the gateway reason."""

    ledger = _generated(orchestrator, professional_with_revenue)
    orchestrator.process(ledger.ledger_id)
    gateway.status_results.append(
        Ok(PayoutStatus(gateway_payout_id="pout_1", status="reversed", failure_reason="Beneficiary bank offline"))
    )

    check = orchestrator.check_status(ledger.ledger_id)

    assert check.ledger.status == "failed"
    assert check.ledger.failure_reason == "Beneficiary bank offline"


def test_check_status_error_leaves_ledger_alone(orchestrator, gateway, professional_with_revenue):
    """Polling errors surface without a transition."""

    ledger = _generated(orchestrator, professional_with_revenue)
    orchestrator.process(ledger.ledger_id)
    gateway.status_results.append(timeout_err())

    with pytest.raises(GatewayError):
        orchestrator.check_status(ledger.ledger_id)
    assert orchestrator.get(ledger.ledger_id).status == "processing"


def test_check_status_without_payout_id(orchestrator, gateway, professional_with_revenue):
    """Without a payout id there is nothing to poll."""

    ledger = _generated(orchestrator, professional_with_revenue)

    check = orchestrator.check_status(ledger.ledger_id)

    assert check.gateway_status is None
    assert check.ledger.status == "pending"
    assert gateway.calls == []


def test_list_pending_and_history(orchestrator, session_factory, professional_with_revenue):
    """Pending and history listings return the generated ledger."""

    ledger = _generated(orchestrator, professional_with_revenue)

    pending, total = orchestrator.list_pending(page=1, limit=10)
    history, history_total = orchestrator.history(professional_with_revenue)

    assert total == 1 and pending[0].ledger_id == ledger.ledger_id
    assert history_total == 1 and history[0].ledger_id == ledger.ledger_id


def _stuck_processing(orchestrator, session_factory, professional_id, gateway_payout_id=None) -> str:
    ledger = _generated(orchestrator, professional_id)
    with session_factory() as db:
        row = db.get(PayoutLedger, ledger.ledger_id)
        row.mark_processing()
        row.gateway_payout_id = gateway_payout_id
        db.commit()
    return ledger.ledger_id


def test_reconcile_finds_payout_by_reference(orchestrator, session_factory, gateway, professional_with_revenue):
    """Reconciliation adopts a payout found by reference."""

    ledger_id = _stuck_processing(orchestrator, session_factory, professional_with_revenue)
    gateway.reference_result = Ok(PayoutStatus(gateway_payout_id="pout_ref", status="processed", utr="UTRREF"))

    report = orchestrator.reconcile_processing(older_than_seconds=0)

    assert report.checked == 1
    assert report.updated == [ledger_id]
    ledger = orchestrator.get(ledger_id)
    assert ledger.status == "completed"
    assert ledger.gateway_payout_id == "pout_ref"


def test_reconcile_fails_payout_unknown_to_gateway(orchestrator, session_factory, gateway, professional_with_revenue):
    """A stuck payout the gateway never saw fails as retryable."""

    ledger_id = _stuck_processing(orchestrator, session_factory, professional_with_revenue)

    orchestrator.reconcile_processing(older_than_seconds=0)

    ledger = orchestrator.get(ledger_id)
    assert ledger.status == "failed"
    assert ledger.failure_retryable


def test_reconcile_polls_known_payout_and_reports_errors(
    orchestrator, session_factory, gateway, professional_with_revenue
):
    """Poll errors are reported per ledger and change nothing."""

    ledger_id = _stuck_processing(orchestrator, session_factory, professional_with_revenue, "pout_known")
    gateway.status_results.append(timeout_err())

    report = orchestrator.reconcile_processing(older_than_seconds=0)

    assert report.updated == []
    assert ledger_id in report.errors
    assert orchestrator.get(ledger_id).status == "processing"


def test_reconcile_skips_recent_payouts(orchestrator, session_factory, gateway, professional_with_revenue):
    """Payouts younger than the age threshold are left alone."""

    _stuck_processing(orchestrator, session_factory, professional_with_revenue)

    report = orchestrator.reconcile_processing(older_than_seconds=3600)

    assert report.checked == 0
    assert gateway.calls == []


def test_timeline_rows_are_written_per_transition(orchestrator, session_factory, gateway, professional_with_revenue):
    """Each transition appends one timeline row."""

    ledger = _generated(orchestrator, professional_with_revenue)
    gateway.submit_results.append(timeout_err())
    with pytest.raises(GatewayError):
        orchestrator.process(ledger.ledger_id)

    assert _count(session_factory, LedgerTimeline) == 3
    reasons = [row.reason for row in orchestrator.timeline(ledger.ledger_id)]
    assert reasons[-1] == "timeout:submit_failed"
