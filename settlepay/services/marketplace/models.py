"""Read models for tables owned by the order and professional services.

The settlement core only reads these rows. The single exception is the
professional's cached gateway link (`gateway_contact_id`,
`gateway_fund_account_id`), which the orchestrator fills in once.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlepay.common.db import Base, JSONType


class Professional(Base):
    """Service professional profile with payout bank details."""

    __tablename__ = "professionals"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    # accountNumber / ifscCode / accountHolderName / bankName / branchName
    bank_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    bank_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    gateway_contact_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_fund_account_id: Mapped[str | None] = mapped_column(String, nullable=True)


class Order(Base):
    """Customer order; only completion fields matter to settlement."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_number: Mapped[str] = mapped_column(String, unique=True)
    status: Mapped[str] = mapped_column(String, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    client_phone: Mapped[str | None] = mapped_column(String, nullable=True)

    service_items: Mapped[list["OrderServiceItem"]] = relationship(back_populates="order")


class OrderServiceItem(Base):
    """One service line of an order, attributed to a single professional."""

    __tablename__ = "order_service_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    service_id: Mapped[str | None] = mapped_column(String, nullable=True)
    service_name: Mapped[str | None] = mapped_column(String, nullable=True)
    professional_id: Mapped[str] = mapped_column(String, index=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    quantity: Mapped[int] = mapped_column(Integer, default=1)

    order: Mapped[Order] = relationship(back_populates="service_items")
