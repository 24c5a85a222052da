"""Gateway interaction audit rows."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from settlepay.common.db import Base


class GatewayCall(Base):
    """One payout gateway call made on behalf of a ledger."""

    __tablename__ = "gateway_calls"

    call_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    ledger_id: Mapped[str] = mapped_column(String, index=True)
    operation: Mapped[str] = mapped_column(String)
    attempt_number: Mapped[int] = mapped_column(Integer)
    result: Mapped[str] = mapped_column(String)
    latency_ms: Mapped[int] = mapped_column(Integer)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
