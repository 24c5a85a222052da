"""API request/response schemas for the payout admin endpoints."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Optional week anchor; any date inside the week selects that week."""

    week_start: date | None = None


class ProcessRequest(BaseModel):
    admin_notes: str | None = Field(default=None, max_length=1000)


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class LedgerResponse(BaseModel):
    """Ledger as returned to admin clients."""

    model_config = ConfigDict(from_attributes=True)

    ledger_id: str
    professional_id: str
    professional_email: str
    professional_name: str
    week_start: datetime
    week_end: datetime
    total_revenue: Decimal
    platform_commission: Decimal
    professional_payout: Decimal
    currency: str
    service_items: list[dict[str, Any]]
    bank_details: dict[str, Any] | None = None
    status: str
    transfer_method: str
    gateway_payout_id: str | None = None
    transaction_id: str | None = None
    transferred_at: datetime | None = None
    failure_reason: str | None = None
    failure_retryable: bool
    submit_attempt: int
    admin_notes: str | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class TimelineEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_state: str | None
    to_state: str
    reason: str
    created_at: datetime


class LedgerDetailResponse(LedgerResponse):
    timeline: list[TimelineEntry] = Field(default_factory=list)


class GenerateResponse(BaseModel):
    created: bool
    ledger: LedgerResponse


class StatusCheckResponse(BaseModel):
    gateway_status: str | None
    ledger: LedgerResponse


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class LedgerPage(BaseModel):
    items: list[LedgerResponse]
    pagination: Pagination


class SummaryResponse(BaseModel):
    """Preview of a week's payout; nothing is persisted to build it."""

    professional: dict[str, Any]
    week: dict[str, str]
    financial: dict[str, Decimal]
    service_items: list[dict[str, Any]]
    total_services: int
    existing_payout: LedgerResponse | None = None


class ReconcileResponse(BaseModel):
    checked: int
    updated: list[str]
    errors: dict[str, str]


class ErrorResponse(BaseModel):
    detail: str
    code: str
    ledger: LedgerResponse | None = None
