"""Orchestrator-owned persistence beyond the ledger itself.

Verified webhooks that arrive before their payout id is stored on a ledger are
buffered here and replayed once the id is known.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from settlepay.common.db import Base, JSONType


class WebhookInbox(Base):
    """Signature-verified payout webhook waiting for a matching ledger."""

    __tablename__ = "webhook_inbox"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    gateway_payout_id: Mapped[str] = mapped_column(String, index=True)
    event: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    # BUFFERED -> APPLIED | DISCARDED (ledger already past the reported state)
    status: Mapped[str] = mapped_column(String, default="BUFFERED", index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
