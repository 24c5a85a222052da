"""Weekly revenue aggregation over completed orders.

Everything here is read-only: `summarize_week` may be called any number of
times for previews without creating a ledger.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy import func, select

from settlepay.common.config import settings
from settlepay.common.errors import NotFound
from settlepay.common.weeks import WeekWindow, as_utc
from settlepay.services.marketplace.models import Order, OrderServiceItem, Professional


@dataclass(frozen=True)
class RevenueLine:
    """Snapshot of one completed service line."""

    order_id: str
    order_ref: str
    service_id: str | None
    service_name: str
    amount: Decimal
    quantity: int
    completed_at: datetime
    client_name: str
    client_phone: str

    def to_snapshot(self) -> dict:
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["completed_at"] = self.completed_at.isoformat()
        return data


@dataclass(frozen=True)
class RevenueSummary:
    lines: list[RevenueLine]
    total_revenue: Decimal

    @property
    def is_empty(self) -> bool:
        return not self.lines


class RevenueSource(Protocol):
    """Query capability supplied by the order/booking collaborators."""

    def find_completed_revenue_for(self, professional_id: str, window: WeekWindow) -> list[RevenueLine]: ...


class SqlRevenueSource:
    """`RevenueSource` backed by the `orders`/`order_service_items` tables."""

    def __init__(self, session_factory, fulfilled_statuses: list[str] | None = None) -> None:
        self.session_factory = session_factory
        self.fulfilled_statuses = list(fulfilled_statuses or settings.fulfilled_order_statuses)

    def find_completed_revenue_for(self, professional_id: str, window: WeekWindow) -> list[RevenueLine]:
        # Services complete, product-style orders deliver; whichever is set counts.
        completed_at = func.coalesce(Order.completed_at, Order.delivered_at)
        with self.session_factory() as db:
            rows = db.execute(
                select(OrderServiceItem, Order)
                .join(Order, OrderServiceItem.order_id == Order.id)
                .where(
                    OrderServiceItem.professional_id == professional_id,
                    Order.status.in_(self.fulfilled_statuses),
                    completed_at >= window.start,
                    completed_at <= window.end,
                )
                .order_by(completed_at, Order.order_number, OrderServiceItem.id)
            ).all()
        return [
            RevenueLine(
                order_id=order.id,
                order_ref=order.order_number,
                service_id=item.service_id,
                service_name=item.service_name or "Service",
                amount=Decimal(item.unit_price) * item.quantity,
                quantity=item.quantity,
                completed_at=as_utc(order.completed_at or order.delivered_at),
                client_name=order.client_name or "N/A",
                client_phone=order.client_phone or "N/A",
            )
            for item, order in rows
        ]


class RevenueAggregator:
    """Turns a professional's completed order lines into a weekly summary."""

    def __init__(self, session_factory, source: RevenueSource) -> None:
        self.session_factory = session_factory
        self.source = source

    def summarize_week(self, professional_id: str, window: WeekWindow) -> RevenueSummary:
        with self.session_factory() as db:
            if db.get(Professional, professional_id) is None:
                raise NotFound(f"professional {professional_id} not found", code="professional_not_found")
        lines = self.source.find_completed_revenue_for(professional_id, window)
        total = sum((line.amount for line in lines), Decimal("0"))
        return RevenueSummary(lines=lines, total_revenue=total)
