"""Payout gateway adapter (RazorpayX payouts API).

Every call returns `Ok(value)` or `Err(GatewayError)`; transport problems never
escape as raw `httpx` exceptions. One adapter instance is built per process
from settings and injected into the orchestrator.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Generic, Protocol, TypeVar

import httpx

from settlepay.common.config import settings
from settlepay.common.errors import GatewayError, GatewayErrorKind
from settlepay.common.logging import logger
from settlepay.common.metrics import gateway_call_seconds
from settlepay.common.tracing import gateway_span
from settlepay.services.gateway.schemas import GatewayAccountLink, PayeeProfile, PayoutStatus

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: GatewayError


GatewayResult = Ok[T] | Err


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise, rounded half-up."""

    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_signature(secret: str, raw_payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()


class PayoutGateway(Protocol):
    """Capabilities the orchestrator needs from a payout provider."""

    def provision_account(self, profile: PayeeProfile) -> GatewayResult[GatewayAccountLink]: ...

    def submit_payout(
        self,
        fund_account_id: str,
        amount: Decimal,
        ledger_id: str,
        professional_name: str,
        idempotency_key: str,
    ) -> GatewayResult[PayoutStatus]: ...

    def fetch_payout_status(self, gateway_payout_id: str) -> GatewayResult[PayoutStatus]: ...

    def find_payout_by_reference(self, ledger_id: str) -> GatewayResult[PayoutStatus | None]: ...

    def verify_webhook_signature(self, raw_payload: bytes, signature: str | None) -> bool: ...


class RazorpayXGateway:
    """HTTP implementation of `PayoutGateway` against the RazorpayX REST API."""

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        account_number: str,
        webhook_secret: str,
        timeout_seconds: float = 10.0,
        currency: str = "INR",
        mode: str = "IMPS",
        transport: httpx.BaseTransport | None = None,
        service_name: str = "orchestrator",
    ) -> None:
        self.account_number = account_number
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.mode = mode
        self.service_name = service_name
        self.client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, transport: httpx.BaseTransport | None = None) -> "RazorpayXGateway":
        return cls(
            base_url=settings.gateway_base_url,
            key_id=settings.gateway_key_id,
            key_secret=settings.gateway_key_secret,
            account_number=settings.gateway_account_number,
            webhook_secret=settings.gateway_webhook_secret,
            timeout_seconds=settings.gateway_timeout_seconds,
            currency=settings.payout_currency,
            mode=settings.payout_mode,
            transport=transport,
            service_name=settings.service_name,
        )

    def close(self) -> None:
        self.client.close()

    def _request(
        self, operation: str, method: str, path: str, parse: Callable[[Any], T], **kwargs
    ) -> GatewayResult[T]:
        """Perform one HTTP call and classify failures into `GatewayError` kinds.

        `parse` turns the decoded 2xx body into the caller's value. A body that
        is not JSON or does not have the expected shape is an `Err` marked
        retryable, since the gateway may still have acted on the request.
        """

        start = time.perf_counter()
        outcome = "error"
        with gateway_span(operation, http_method=method) as span:
            try:
                resp = self.client.request(method, path, **kwargs)
                outcome = f"http_{resp.status_code // 100}xx"
                span.set_attribute("http.response.status_code", resp.status_code)
            except httpx.TimeoutException as exc:
                outcome = "timeout"
                return Err(GatewayError(GatewayErrorKind.TIMEOUT, f"gateway timeout during {operation}: {exc}"))
            except httpx.TransportError as exc:
                outcome = "transport_error"
                return Err(
                    GatewayError(
                        GatewayErrorKind.REJECTED, f"gateway unreachable during {operation}: {exc}", retryable=True
                    )
                )
            finally:
                span.set_attribute("payout.gateway.outcome", outcome)
                gateway_call_seconds.labels(service=self.service_name, operation=operation, outcome=outcome).observe(
                    time.perf_counter() - start
                )

        if resp.status_code in (401, 403):
            logger.error("gateway_unauthorized operation=%s status=%s", operation, resp.status_code)
            return Err(GatewayError(GatewayErrorKind.UNAUTHORIZED, f"gateway rejected credentials during {operation}"))
        if resp.status_code >= 400:
            description = _error_description(resp)
            logger.warning("gateway_error operation=%s status=%s description=%s", operation, resp.status_code, description)
            return Err(
                GatewayError(
                    GatewayErrorKind.REJECTED,
                    f"Failed to {operation.replace('_', ' ')}: {description}",
                    retryable=resp.status_code >= 500 or resp.status_code == 429,
                )
            )
        try:
            return Ok(parse(resp.json()))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(
                "gateway_malformed_response operation=%s status=%s error=%s", operation, resp.status_code, exc
            )
            return Err(
                GatewayError(
                    GatewayErrorKind.REJECTED, f"malformed gateway response during {operation}", retryable=True
                )
            )

    def provision_account(self, profile: PayeeProfile) -> GatewayResult[GatewayAccountLink]:
        """Return the payee's contact/fund-account pair, creating only what is missing.

        Existing gateway records are looked up first (contact by
        `reference_id`, fund account by bank account number and IFSC) so a
        retry after a lost local write does not create duplicates.
        """

        if profile.cached_link is not None:
            return Ok(profile.cached_link)

        contact_id = profile.contact_id
        if not contact_id:
            found = self._request(
                "find_contact", "GET", "/contacts", parse=_items, params={"reference_id": profile.professional_id}
            )
            if isinstance(found, Err):
                return found
            if found.value:
                contact_id = found.value[0]["id"]
                logger.info("gateway contact reused professional_id=%s contact_id=%s", profile.professional_id, contact_id)
            else:
                created = self._request(
                    "create_contact",
                    "POST",
                    "/contacts",
                    parse=_record_id,
                    json={
                        "name": profile.name,
                        "email": profile.email,
                        "contact": profile.phone or "9999999999",
                        "type": "vendor",
                        "reference_id": profile.professional_id,
                        "notes": {"professional_id": profile.professional_id, "role": "professional"},
                    },
                )
                if isinstance(created, Err):
                    return created
                contact_id = created.value
                logger.info("gateway contact created professional_id=%s contact_id=%s", profile.professional_id, contact_id)

        bank = profile.bank_details or {}
        listed = self._request(
            "find_fund_account", "GET", "/fund_accounts", parse=_items, params={"contact_id": contact_id}
        )
        if isinstance(listed, Err):
            return listed
        for item in listed.value:
            account = item.get("bank_account") or {}
            if (
                item.get("active", True)
                and account.get("account_number") == bank.get("accountNumber")
                and account.get("ifsc") == bank.get("ifscCode")
            ):
                return Ok(GatewayAccountLink(contact_id=contact_id, fund_account_id=item["id"]))

        created = self._request(
            "create_fund_account",
            "POST",
            "/fund_accounts",
            parse=_record_id,
            json={
                "contact_id": contact_id,
                "account_type": "bank_account",
                "bank_account": {
                    "name": bank.get("accountHolderName"),
                    "ifsc": bank.get("ifscCode"),
                    "account_number": bank.get("accountNumber"),
                },
            },
        )
        if isinstance(created, Err):
            return created
        logger.info("gateway fund account created contact_id=%s fund_account_id=%s", contact_id, created.value)
        return Ok(GatewayAccountLink(contact_id=contact_id, fund_account_id=created.value))

    def submit_payout(
        self,
        fund_account_id: str,
        amount: Decimal,
        ledger_id: str,
        professional_name: str,
        idempotency_key: str,
    ) -> GatewayResult[PayoutStatus]:
        """Create one payout; `reference_id` ties it back to exactly one ledger."""

        return self._request(
            "submit_payout",
            "POST",
            "/payouts",
            parse=PayoutStatus.model_validate,
            headers={"X-Payout-Idempotency": idempotency_key},
            json={
                "account_number": self.account_number,
                "fund_account_id": fund_account_id,
                "amount": to_minor_units(amount),
                "currency": self.currency,
                "mode": self.mode,
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": ledger_id,
                "narration": f"Payout for {professional_name}"[:30],
                "notes": {"payout_id": ledger_id, "type": "weekly_payout"},
            },
        )

    def fetch_payout_status(self, gateway_payout_id: str) -> GatewayResult[PayoutStatus]:
        return self._request(
            "fetch_payout_status", "GET", f"/payouts/{gateway_payout_id}", parse=PayoutStatus.model_validate
        )

    def find_payout_by_reference(self, ledger_id: str) -> GatewayResult[PayoutStatus | None]:
        return self._request(
            "find_payout_by_reference",
            "GET",
            "/payouts",
            parse=_first_payout,
            params={"account_number": self.account_number, "reference_id": ledger_id},
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature: str | None) -> bool:
        """HMAC-SHA256 of the exact received bytes, compared in constant time."""

        if not signature or not self.webhook_secret:
            return False
        if not signature.isascii():
            return False
        expected = compute_signature(self.webhook_secret, raw_payload)
        return hmac.compare_digest(expected, signature)


def _error_description(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("description"):
        return str(error["description"])
    return f"HTTP {resp.status_code}"


def _record_id(body: dict) -> str:
    record_id = body["id"]
    if not isinstance(record_id, str) or not record_id:
        raise ValueError("gateway record has no id")
    return record_id


def _items(body: dict) -> list[dict]:
    """`items` of a collection response; every entry must carry an id."""

    items = body.get("items") or []
    for item in items:
        _record_id(item)
    return items


def _first_payout(body: dict) -> PayoutStatus | None:
    items = _items(body)
    return PayoutStatus.model_validate(items[0]) if items else None
