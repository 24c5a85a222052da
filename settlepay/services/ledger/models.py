"""Payout ledger database models.

`PayoutLedger` is the source of truth for one professional's one-week
settlement. Its transition methods are pure: they validate against the state
machine and mutate the row in memory, leaving I/O to the orchestrator.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, validates

from settlepay.common.db import Base, JSONType
from settlepay.common.errors import ValidationError
from settlepay.common.state_machine import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    validate_transition,
)

CENT = Decimal("0.01")
FROZEN_FIELDS = ("service_items", "total_revenue", "platform_commission", "professional_payout")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_commission(total_revenue: Decimal, commission_rate: Decimal) -> tuple[Decimal, Decimal]:
    """Return `(platform_commission, professional_payout)`; they always sum to the total."""

    total = Decimal(total_revenue).quantize(CENT, rounding=ROUND_HALF_UP)
    commission = (total * Decimal(commission_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    return commission, total - commission


def bank_snapshot(bank_details: dict | None) -> dict | None:
    if not bank_details:
        return None
    keys = ("accountNumber", "ifscCode", "accountHolderName", "bankName", "branchName")
    return {key: bank_details.get(key) for key in keys}


class PayoutLedger(Base):
    """One professional's settlement record for one week."""

    __tablename__ = "payout_ledgers"
    __table_args__ = (
        UniqueConstraint("professional_id", "week_start", "week_end", name="uq_payout_ledger_week"),
    )

    ledger_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    professional_id: Mapped[str] = mapped_column(String, index=True)
    professional_email: Mapped[str] = mapped_column(String, index=True)
    professional_name: Mapped[str] = mapped_column(String)
    week_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    week_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    total_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    platform_commission: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    professional_payout: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    service_items: Mapped[list] = mapped_column(JSONType)
    bank_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    status: Mapped[str] = mapped_column(String, index=True)
    transfer_method: Mapped[str] = mapped_column(String, default="automated")
    gateway_payout_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_retryable: Mapped[bool] = mapped_column(Boolean, default=False)
    submit_attempt: Mapped[int] = mapped_column(Integer, default=1)
    admin_notes: Mapped[str | None] = mapped_column(String, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    state_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Optimistic concurrency: every UPDATE is guarded by the version read.
    __mapper_args__ = {"version_id_col": state_version}

    @classmethod
    def create(cls, professional, window, lines, commission_rate: Decimal, currency: str) -> "PayoutLedger":
        """Build a `pending` ledger from a revenue snapshot."""

        if not lines:
            raise ValidationError("no completed services found for this week", code="no_revenue")
        total = sum((line.amount for line in lines), Decimal("0"))
        commission, payout = split_commission(total, commission_rate)
        return cls(
            ledger_id=str(uuid4()),
            professional_id=professional.id,
            professional_email=professional.email.lower(),
            professional_name=professional.name,
            week_start=window.start,
            week_end=window.end,
            service_items=[line.to_snapshot() for line in lines],
            total_revenue=total.quantize(CENT, rounding=ROUND_HALF_UP),
            platform_commission=commission,
            professional_payout=payout,
            currency=currency,
            bank_details=bank_snapshot(professional.bank_details),
            status=PENDING,
            transfer_method="automated",
            failure_retryable=False,
            submit_attempt=1,
        )

    @validates(*FROZEN_FIELDS)
    def _guard_frozen(self, key, value):
        if self.status not in (None, PENDING):
            raise ValidationError(f"{key} is frozen once a payout leaves pending", code="ledger_frozen")
        return value

    @property
    def idempotency_key(self) -> str:
        return f"{self.ledger_id}:{self.submit_attempt}"

    def mark_processing(self) -> None:
        """Enter `processing` from `pending`, or from `failed` on admin retry."""

        validate_transition(self.status, PROCESSING)
        if self.status == FAILED and not self.failure_retryable:
            # The previous submission is known dead at the gateway; use a fresh key.
            self.submit_attempt += 1
        self.status = PROCESSING
        self.failure_reason = None
        self.failure_retryable = False

    def mark_completed(self, transaction_id: str, transferred_at: datetime) -> None:
        validate_transition(self.status, COMPLETED)
        self.status = COMPLETED
        self.transaction_id = transaction_id
        self.transferred_at = transferred_at

    def mark_failed(self, reason: str, retryable: bool = False) -> None:
        validate_transition(self.status, FAILED)
        self.status = FAILED
        self.failure_reason = reason
        self.failure_retryable = retryable

    def mark_cancelled(self, reason: str) -> None:
        validate_transition(self.status, CANCELLED)
        self.status = CANCELLED
        self.cancel_reason = reason

    def lifecycle_payload(self, timestamp: datetime) -> dict:
        return {
            "ledger_id": self.ledger_id,
            "professional_id": self.professional_id,
            "professional_email": self.professional_email,
            "amount": str(self.professional_payout),
            "new_status": self.status,
            "timestamp": timestamp.isoformat(),
        }


class LedgerTimeline(Base):
    """Immutable audit trail of every ledger state transition."""

    __tablename__ = "payout_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    ledger_id: Mapped[str] = mapped_column(ForeignKey("payout_ledgers.ledger_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class OutboxEvent(Base):
    """Lifecycle events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
