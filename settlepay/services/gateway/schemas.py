"""Typed shapes exchanged with the payout gateway."""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class GatewayAccountLink:
    contact_id: str
    fund_account_id: str


@dataclass(frozen=True)
class PayeeProfile:
    """What the gateway needs to know about a professional to pay them."""

    professional_id: str
    name: str
    email: str
    phone: str | None
    bank_details: dict | None
    contact_id: str | None = None
    fund_account_id: str | None = None

    @property
    def cached_link(self) -> GatewayAccountLink | None:
        if self.contact_id and self.fund_account_id:
            return GatewayAccountLink(self.contact_id, self.fund_account_id)
        return None


class PayoutStatus(BaseModel):
    """Normalized payout entity (RazorpayX `payout` object subset)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    gateway_payout_id: str = Field(alias="id")
    status: str
    utr: str | None = None
    failure_reason: str | None = None
    reference_id: str | None = None

    @property
    def is_processed(self) -> bool:
        return self.status == "processed"

    @property
    def is_failed(self) -> bool:
        return self.status in {"failed", "rejected", "reversed", "cancelled"}


class WebhookPayoutEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str | None = None
    utr: str | None = None
    failure_reason: str | None = None


class WebhookPayout(BaseModel):
    entity: WebhookPayoutEntity


class WebhookPayload(BaseModel):
    payout: WebhookPayout


class PayoutWebhook(BaseModel):
    """`{event, payload: {payout: {entity: {...}}}}` as posted by the gateway."""

    model_config = ConfigDict(extra="ignore")

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def payout_entity(self) -> WebhookPayoutEntity | None:
        if "payout" not in self.payload:
            return None
        return WebhookPayload(**self.payload).payout.entity
