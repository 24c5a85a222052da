"""Settlement orchestrator.

Drives payout ledgers through `pending -> processing -> completed|failed`,
talks to the payout gateway, reconciles gateway status (submit response, poll,
webhook) and records timeline rows plus lifecycle outbox events for every
transition.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from settlepay.common.config import settings
from settlepay.common.errors import (
    Conflict,
    DuplicateLedger,
    GatewayError,
    NotFound,
    SettlementError,
    ValidationError,
)
from settlepay.common.events import EventEnvelope
from settlepay.common.logging import ledger_id_ctx, logger
from settlepay.common.metrics import (
    payout_e2e_seconds,
    payouts_cancelled_total,
    payouts_completed_total,
    payouts_failed_total,
    payouts_generated_total,
)
from settlepay.common.outbox import enqueue_event
from settlepay.common.state_machine import CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING
from settlepay.common.weeks import WeekWindow, as_utc
from settlepay.services.gateway.models import GatewayCall
from settlepay.services.gateway.schemas import GatewayAccountLink, PayeeProfile, PayoutStatus
from settlepay.services.gateway.service import Err, PayoutGateway
from settlepay.services.ledger.models import LedgerTimeline, OutboxEvent, PayoutLedger, split_commission
from settlepay.services.ledger.service import LedgerStore
from settlepay.services.marketplace.models import Professional
from settlepay.services.orchestrator.models import WebhookInbox
from settlepay.services.revenue.service import RevenueAggregator, SqlRevenueSource

WEBHOOK_STATUSES = {"payout.processed": "processed", "payout.failed": "failed"}


@dataclass
class GenerateResult:
    ledger: PayoutLedger
    created: bool


@dataclass
class StatusCheck:
    ledger: PayoutLedger
    gateway_status: str | None


@dataclass
class ReconcileReport:
    checked: int = 0
    updated: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class SettlementOrchestrator:
    """Owns the payout state machine, gateway calls and concurrency guards."""

    def __init__(
        self,
        session_factory,
        gateway: PayoutGateway,
        aggregator: RevenueAggregator | None = None,
        store: LedgerStore | None = None,
        service_name: str = "orchestrator",
        commission_rate: Decimal | None = None,
        currency: str | None = None,
        lifecycle_topic: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.aggregator = aggregator or RevenueAggregator(session_factory, SqlRevenueSource(session_factory))
        self.store = store or LedgerStore()
        self.service_name = service_name
        self.commission_rate = settings.commission_rate if commission_rate is None else commission_rate
        self.currency = currency or settings.payout_currency
        self.lifecycle_topic = lifecycle_topic or settings.lifecycle_topic
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------ helpers

    def _professional(self, db, professional_id: str) -> Professional:
        professional = db.get(Professional, professional_id)
        if professional is None:
            raise NotFound(f"professional {professional_id} not found", code="professional_not_found")
        return professional

    def _commit(self, db) -> None:
        """Commit, translating a lost optimistic-concurrency race into `Conflict`."""

        try:
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise Conflict("payout was modified concurrently; reload and retry", code="stale_state") from exc

    def _observe_terminal(self, ledger: PayoutLedger) -> None:
        if ledger.created_at is None:
            return
        elapsed = max(0.0, (self.clock() - as_utc(ledger.created_at)).total_seconds())
        payout_e2e_seconds.labels(service=self.service_name, terminal_state=ledger.status).observe(elapsed)

    def _transition(
        self,
        db,
        ledger: PayoutLedger,
        apply: Callable[[], None],
        reason: str,
        trace_id: str,
        event_id: str | None = None,
    ) -> None:
        """Run one pure ledger transition and stage its audit + lifecycle records.

        The version column guards the row: if another writer moved the ledger
        since it was read, the commit fails with `Conflict`.
        """

        from_status = ledger.status
        apply()
        now = self.clock()
        db.add(
            LedgerTimeline(
                ledger_id=ledger.ledger_id,
                from_state=from_status,
                to_state=ledger.status,
                reason=reason,
                event_id=event_id,
            )
        )
        enqueue_event(
            db,
            OutboxEvent,
            self.lifecycle_topic,
            EventEnvelope(
                event_type=f"payout.{ledger.status}",
                aggregate_id=ledger.ledger_id,
                trace_id=trace_id,
                payload=ledger.lifecycle_payload(now),
            ),
        )
        logger.info(
            "payout_transition ledger_id=%s from=%s to=%s reason=%s",
            ledger.ledger_id,
            from_status,
            ledger.status,
            reason,
        )
        if ledger.status == COMPLETED:
            payouts_completed_total.labels(service=self.service_name).inc()
            self._observe_terminal(ledger)
        elif ledger.status == FAILED:
            kind = reason.split(":", 1)[0]
            payouts_failed_total.labels(service=self.service_name, error_kind=kind).inc()
        elif ledger.status == CANCELLED:
            payouts_cancelled_total.labels(service=self.service_name).inc()
            self._observe_terminal(ledger)

    def _require_payable(self, ledger: PayoutLedger, professional: Professional) -> None:
        if not (ledger.bank_details or professional.bank_details):
            raise ValidationError("professional bank details are missing", code="bank_details_missing")
        if not professional.bank_verified:
            raise ValidationError("Bank details not verified for this professional", code="bank_not_verified")

    def _call(self, ledger_id: str, operation: str, attempt: int, fn):
        """Run one gateway call, record it, and unwrap `Ok` or raise the `GatewayError`."""

        start = time.perf_counter()
        result = fn()
        latency_ms = int((time.perf_counter() - start) * 1000)
        failed = isinstance(result, Err)
        with self.session_factory() as db:
            db.add(
                GatewayCall(
                    ledger_id=ledger_id,
                    operation=operation,
                    attempt_number=attempt,
                    result="ERROR" if failed else "OK",
                    latency_ms=latency_ms,
                    error_code=result.error.kind.value if failed else None,
                )
            )
            db.commit()
        if failed:
            raise result.error
        return result.value

    # --------------------------------------------------------------- read side

    def get(self, ledger_id: str) -> PayoutLedger:
        with self.session_factory() as db:
            return self.store.get(db, ledger_id)

    def timeline(self, ledger_id: str) -> list[LedgerTimeline]:
        with self.session_factory() as db:
            self.store.get(db, ledger_id)
            return self.store.timeline(db, ledger_id)

    def list_pending(self, page: int = 1, limit: int = 50) -> tuple[list[PayoutLedger], int]:
        with self.session_factory() as db:
            return self.store.list_by_status(db, PENDING, page=page, limit=limit)

    def history(self, professional_id: str, page: int = 1, limit: int = 20) -> tuple[list[PayoutLedger], int]:
        with self.session_factory() as db:
            self._professional(db, professional_id)
            return self.store.history(db, professional_id, page=page, limit=limit)

    def summary_preview(self, professional_id: str, window: WeekWindow) -> dict:
        """What the professional would be paid for `window`; creates nothing."""

        summary = self.aggregator.summarize_week(professional_id, window)
        commission, payout = split_commission(summary.total_revenue, self.commission_rate)
        with self.session_factory() as db:
            professional = self._professional(db, professional_id)
            existing = self.store.find_for_week(db, professional_id, window)
        return {
            "professional": {
                "id": professional.id,
                "name": professional.name,
                "email": professional.email,
                "bank_details": professional.bank_details,
                "bank_verified": professional.bank_verified,
                "gateway_linked": bool(professional.gateway_contact_id and professional.gateway_fund_account_id),
            },
            "week": window.as_dict(),
            "financial": {
                "total_revenue": summary.total_revenue,
                "platform_commission": commission,
                "professional_payout": payout,
                "commission_rate": self.commission_rate,
                "payout_rate": Decimal("1") - self.commission_rate,
            },
            "service_items": [line.to_snapshot() for line in summary.lines],
            "total_services": len(summary.lines),
            "existing_payout": existing,
        }

    # ------------------------------------------------------------- write side

    def generate(self, professional_id: str, window: WeekWindow, trace_id: str = "") -> GenerateResult:
        """Create the week's ledger, or return the one that already exists."""

        with self.session_factory() as db:
            professional = self._professional(db, professional_id)
            existing = self.store.find_for_week(db, professional_id, window)
        if existing is not None:
            logger.info("payout already generated ledger_id=%s", existing.ledger_id)
            return GenerateResult(ledger=existing, created=False)

        summary = self.aggregator.summarize_week(professional_id, window)
        if summary.is_empty:
            raise ValidationError("No completed services found for this week", code="no_revenue")

        ledger = PayoutLedger.create(professional, window, summary.lines, self.commission_rate, self.currency)
        ledger_id_ctx.set(ledger.ledger_id)
        with self.session_factory() as db:
            try:
                self.store.add(db, ledger, window)
            except DuplicateLedger as dup:
                return GenerateResult(ledger=dup.existing, created=False)
            db.add(
                LedgerTimeline(ledger_id=ledger.ledger_id, from_state=None, to_state=PENDING, reason="ledger_generated")
            )
            enqueue_event(
                db,
                OutboxEvent,
                self.lifecycle_topic,
                EventEnvelope(
                    event_type="payout.pending",
                    aggregate_id=ledger.ledger_id,
                    trace_id=trace_id,
                    payload=ledger.lifecycle_payload(self.clock()),
                ),
            )
            db.commit()
        payouts_generated_total.labels(service=self.service_name).inc()
        logger.info(
            "payout_generated ledger_id=%s professional_id=%s total=%s payout=%s services=%s",
            ledger.ledger_id,
            professional_id,
            ledger.total_revenue,
            ledger.professional_payout,
            len(summary.lines),
        )
        return GenerateResult(ledger=ledger, created=True)

    def process(self, ledger_id: str, admin_notes: str | None = None, trace_id: str = "") -> PayoutLedger:
        """Move a pending ledger to processing and submit it to the gateway."""

        ledger_id_ctx.set(ledger_id)
        with self.session_factory() as db:
            ledger = self.store.get(db, ledger_id)
            if ledger.status != PENDING:
                raise Conflict(
                    f"Cannot process payout with status: {ledger.status}",
                    code="already_completed" if ledger.status == COMPLETED else "invalid_transition",
                )
            self._require_payable(ledger, self._professional(db, ledger.professional_id))
            self._transition(db, ledger, ledger.mark_processing, "process_requested", trace_id)
            if admin_notes:
                ledger.admin_notes = admin_notes
            self._commit(db)
        return self._submit(ledger_id, trace_id)

    def retry(self, ledger_id: str, trace_id: str = "") -> PayoutLedger:
        """Admin re-submission of a failed ledger; keeps the financial snapshot."""

        ledger_id_ctx.set(ledger_id)
        with self.session_factory() as db:
            ledger = self.store.get(db, ledger_id)
            if ledger.status != FAILED:
                raise Conflict(f"Cannot retry payout with status: {ledger.status}", code="invalid_transition")
            self._require_payable(ledger, self._professional(db, ledger.professional_id))
            self._transition(db, ledger, ledger.mark_processing, "admin_retry", trace_id)
            self._commit(db)
        return self._submit(ledger_id, trace_id)

    def cancel(self, ledger_id: str, reason: str, trace_id: str = "") -> PayoutLedger:
        ledger_id_ctx.set(ledger_id)
        with self.session_factory() as db:
            ledger = self.store.get(db, ledger_id)
            if ledger.status == COMPLETED:
                raise Conflict("Cannot cancel a completed payout: funds already transferred", code="already_completed")
            self._transition(db, ledger, lambda: ledger.mark_cancelled(reason), f"admin_cancel:{reason}", trace_id)
            self._commit(db)
            return ledger

    def _ensure_linked(self, profile: PayeeProfile, ledger_id: str, attempt: int) -> GatewayAccountLink:
        """Cached gateway link for the payee, provisioning and caching it if absent."""

        if profile.cached_link is not None:
            return profile.cached_link
        link = self._call(ledger_id, "provision_account", attempt, lambda: self.gateway.provision_account(profile))
        with self.session_factory() as db:
            professional = self._professional(db, profile.professional_id)
            professional.gateway_contact_id = link.contact_id
            professional.gateway_fund_account_id = link.fund_account_id
            db.commit()
        logger.info(
            "gateway account linked professional_id=%s contact_id=%s fund_account_id=%s",
            profile.professional_id,
            link.contact_id,
            link.fund_account_id,
        )
        return link

    def _submit(self, ledger_id: str, trace_id: str) -> PayoutLedger:
        """Provision + submit for a ledger already committed as `processing`.

        Any failure here lands the ledger in `failed` before returning to the
        caller, so it never stays `processing` because of an adapter error.
        """

        try:
            with self.session_factory() as db:
                ledger = self.store.get(db, ledger_id)
                professional = self._professional(db, ledger.professional_id)
                profile = PayeeProfile(
                    professional_id=professional.id,
                    name=professional.name,
                    email=professional.email,
                    phone=professional.phone,
                    bank_details=ledger.bank_details or professional.bank_details,
                    contact_id=professional.gateway_contact_id,
                    fund_account_id=professional.gateway_fund_account_id,
                )
                amount = ledger.professional_payout
                idempotency_key = ledger.idempotency_key
                attempt = ledger.submit_attempt
            link = self._ensure_linked(profile, ledger_id, attempt)
            submitted: PayoutStatus = self._call(
                ledger_id,
                "submit_payout",
                attempt,
                lambda: self.gateway.submit_payout(
                    link.fund_account_id, amount, ledger_id, profile.name, idempotency_key
                ),
            )
            with self.session_factory() as db:
                ledger = self.store.get(db, ledger_id)
                ledger.gateway_payout_id = submitted.gateway_payout_id
                self._apply_gateway_status(db, ledger, submitted, "submit_response", trace_id)
                self._drain_webhook_inbox(db, ledger, trace_id)
                self._commit(db)
        except Exception as exc:
            self._fail_after_error(ledger_id, exc, trace_id)
            raise
        logger.info(
            "payout submitted ledger_id=%s gateway_payout_id=%s gateway_status=%s status=%s",
            ledger_id,
            submitted.gateway_payout_id,
            submitted.status,
            ledger.status,
        )
        return ledger

    def _fail_after_error(self, ledger_id: str, exc: Exception, trace_id: str) -> None:
        """Record `exc` verbatim as the failure reason of a `processing` ledger."""

        reason = str(exc) or exc.__class__.__name__
        # Only a definitive gateway rejection gets a fresh idempotency key on retry.
        retryable = exc.retryable if isinstance(exc, GatewayError) else True
        kind = exc.kind.value if isinstance(exc, GatewayError) else "internal"
        logger.error("payout submission failed ledger_id=%s kind=%s reason=%s", ledger_id, kind, reason)
        try:
            with self.session_factory() as db:
                ledger = self.store.get(db, ledger_id)
                if ledger.status != PROCESSING:
                    return
                self._transition(
                    db,
                    ledger,
                    lambda: ledger.mark_failed(reason, retryable=retryable),
                    f"{kind}:submit_failed",
                    trace_id,
                )
                self._commit(db)
        except SettlementError as record_exc:
            logger.error("could not record payout failure ledger_id=%s error=%s", ledger_id, record_exc)

    # ---------------------------------------------------------- reconciliation

    def _apply_gateway_status(
        self,
        db,
        ledger: PayoutLedger,
        status: PayoutStatus,
        source: str,
        trace_id: str,
        event_id: str | None = None,
    ) -> bool:
        """Fold one authoritative gateway status into the ledger; idempotent.

        Returns True when the ledger changed state.
        """

        if status.is_processed:
            if ledger.status == COMPLETED:
                logger.info("payout already completed ledger_id=%s source=%s", ledger.ledger_id, source)
                return False
            if ledger.status != PROCESSING:
                logger.warning(
                    "gateway status ignored ledger_id=%s ledger_status=%s gateway_status=%s source=%s",
                    ledger.ledger_id,
                    ledger.status,
                    status.status,
                    source,
                )
                return False
            transaction_id = status.utr or status.gateway_payout_id
            self._transition(
                db,
                ledger,
                lambda: ledger.mark_completed(transaction_id, self.clock()),
                f"gateway_processed:{source}",
                trace_id,
                event_id,
            )
            return True
        if status.is_failed:
            if ledger.status == FAILED:
                return False
            if ledger.status != PROCESSING:
                logger.warning(
                    "gateway status ignored ledger_id=%s ledger_status=%s gateway_status=%s source=%s",
                    ledger.ledger_id,
                    ledger.status,
                    status.status,
                    source,
                )
                return False
            reason = status.failure_reason or "Payment failed"
            self._transition(
                db,
                ledger,
                lambda: ledger.mark_failed(reason, retryable=False),
                f"gateway_{status.status}:{source}",
                trace_id,
                event_id,
            )
            return True
        return False

    def _drain_webhook_inbox(self, db, ledger: PayoutLedger, trace_id: str) -> None:
        """Apply webhooks that arrived before this ledger's payout id was stored."""

        if not ledger.gateway_payout_id:
            return
        buffered = (
            db.execute(
                select(WebhookInbox)
                .where(WebhookInbox.gateway_payout_id == ledger.gateway_payout_id, WebhookInbox.status == "BUFFERED")
                .order_by(WebhookInbox.received_at)
            )
            .scalars()
            .all()
        )
        for row in buffered:
            status = PayoutStatus(
                gateway_payout_id=row.gateway_payout_id,
                status=WEBHOOK_STATUSES[row.event],
                utr=row.payload.get("utr"),
                failure_reason=row.payload.get("failure_reason"),
            )
            changed = self._apply_gateway_status(db, ledger, status, "buffered_webhook", trace_id, event_id=row.id)
            row.status = "APPLIED" if changed else "DISCARDED"
            row.applied_at = self.clock()
            logger.info(
                "buffered webhook drained ledger_id=%s inbox_id=%s outcome=%s", ledger.ledger_id, row.id, row.status
            )

    def apply_webhook(self, event: str, entity: dict, trace_id: str = "") -> str:
        """Apply a verified `payout.processed`/`payout.failed` webhook.

        Returns `applied`, `noop` or `buffered` (no ledger carries the payout
        id yet). One re-read is attempted if a concurrent writer won the race; a
        second lost race is acknowledged as `noop` and left to status polling
        and reconciliation.
        """

        status = PayoutStatus(
            gateway_payout_id=entity["id"],
            status=WEBHOOK_STATUSES[event],
            utr=entity.get("utr"),
            failure_reason=entity.get("failure_reason"),
        )
        for attempt in (1, 2):
            with self.session_factory() as db:
                ledger = self.store.find_by_gateway_payout_id(db, status.gateway_payout_id)
                if ledger is None:
                    db.add(WebhookInbox(gateway_payout_id=status.gateway_payout_id, event=event, payload=entity))
                    db.commit()
                    logger.info("webhook buffered gateway_payout_id=%s event=%s", status.gateway_payout_id, event)
                    return "buffered"
                ledger_id_ctx.set(ledger.ledger_id)
                changed = self._apply_gateway_status(db, ledger, status, "webhook", trace_id)
                try:
                    self._commit(db)
                except Conflict:
                    logger.warning(
                        "webhook lost concurrent update ledger_id=%s attempt=%s", ledger.ledger_id, attempt
                    )
                    continue
                return "applied" if changed else "noop"
        return "noop"

    def check_status(self, ledger_id: str, trace_id: str = "") -> StatusCheck:
        """Poll the gateway for the ledger's payout and reconcile the result.

        Gateway errors are surfaced without touching the ledger: failing to
        read a status says nothing about the payout itself.
        """

        ledger_id_ctx.set(ledger_id)
        with self.session_factory() as db:
            ledger = self.store.get(db, ledger_id)
        if not ledger.gateway_payout_id:
            return StatusCheck(ledger=ledger, gateway_status=None)
        polled: PayoutStatus = self._call(
            ledger_id,
            "fetch_payout_status",
            ledger.submit_attempt,
            lambda: self.gateway.fetch_payout_status(ledger.gateway_payout_id),
        )
        with self.session_factory() as db:
            ledger = self.store.get(db, ledger_id)
            self._apply_gateway_status(db, ledger, polled, "poll", trace_id)
            self._drain_webhook_inbox(db, ledger, trace_id)
            self._commit(db)
        return StatusCheck(ledger=ledger, gateway_status=polled.status)

    def _reconcile_orphan(self, ledger_id: str, trace_id: str) -> bool:
        """Resolve a `processing` ledger that never stored a gateway payout id."""

        with self.session_factory() as db:
            attempt = self.store.get(db, ledger_id).submit_attempt
        found: PayoutStatus | None = self._call(
            ledger_id, "find_payout_by_reference", attempt, lambda: self.gateway.find_payout_by_reference(ledger_id)
        )
        with self.session_factory() as db:
            ledger = self.store.get(db, ledger_id)
            if ledger.status != PROCESSING:
                return False
            if found is None:
                self._transition(
                    db,
                    ledger,
                    lambda: ledger.mark_failed("no gateway payout found for this payout reference", retryable=True),
                    "reconcile:missing_at_gateway",
                    trace_id,
                )
                changed = True
            else:
                ledger.gateway_payout_id = found.gateway_payout_id
                changed = self._apply_gateway_status(db, ledger, found, "reconcile", trace_id)
                self._drain_webhook_inbox(db, ledger, trace_id)
            self._commit(db)
            return changed

    def reconcile_processing(self, older_than_seconds: int | None = None, trace_id: str = "") -> ReconcileReport:
        """Poll every `processing` ledger untouched for `older_than_seconds`."""

        age = settings.reconcile_min_age_seconds if older_than_seconds is None else older_than_seconds
        cutoff = self.clock() - timedelta(seconds=age)
        with self.session_factory() as db:
            candidates = [(row.ledger_id, row.gateway_payout_id) for row in self.store.stale_processing(db, cutoff)]
        report = ReconcileReport()
        for ledger_id, gateway_payout_id in candidates:
            report.checked += 1
            try:
                if gateway_payout_id:
                    changed = self.check_status(ledger_id, trace_id).ledger.status != PROCESSING
                else:
                    changed = self._reconcile_orphan(ledger_id, trace_id)
            except SettlementError as exc:
                logger.warning("reconcile failed ledger_id=%s error=%s", ledger_id, exc)
                report.errors[ledger_id] = str(exc)
                continue
            if changed:
                report.updated.append(ledger_id)
        logger.info(
            "reconcile finished checked=%s updated=%s errors=%s", report.checked, len(report.updated), len(report.errors)
        )
        return report
