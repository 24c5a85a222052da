"""Shared fixtures: SQLite database, seeded collaborators and a fake gateway."""

import hmac
import os
from datetime import date, datetime, timezone
from decimal import Decimal

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("SERVICE_NAME", "orchestrator-test")

import pytest

from settlepay.common.db import Base, build_engine, make_session_factory
from settlepay.common.errors import GatewayError, GatewayErrorKind
from settlepay.common.weeks import WeekWindow
from settlepay.services.gateway import models as gateway_models  # noqa: F401
from settlepay.services.gateway.schemas import GatewayAccountLink, PayoutStatus
from settlepay.services.gateway.service import Err, Ok, compute_signature
from settlepay.services.ledger import models as ledger_models  # noqa: F401
from settlepay.services.marketplace.models import Order, OrderServiceItem, Professional
from settlepay.services.notification import models as notification_models  # noqa: F401
from settlepay.services.orchestrator import models as orchestrator_models  # noqa: F401
from settlepay.services.orchestrator.service import SettlementOrchestrator

WEBHOOK_SECRET = "whsec_test"
BANK = {
    "accountNumber": "50100012345678",
    "ifscCode": "HDFC0001234",
    "accountHolderName": "Asha Rao",
    "bankName": "HDFC Bank",
    "branchName": "Indiranagar",
}
# Sunday 2026-10-11 .. Saturday 2026-10-17
WEEK = WeekWindow.containing(date(2026, 10, 14))


class FakeGateway:
    """In-memory `PayoutGateway` with scripted results."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.link_result = Ok(GatewayAccountLink(contact_id="cont_1", fund_account_id="fa_1"))
        self.submit_results: list = []
        self.status_results: list = []
        self.reference_result = Ok(None)
        self.payout_seq = 0

    def provision_account(self, profile):
        self.calls.append(("provision_account", profile.professional_id))
        return self.link_result

    def submit_payout(self, fund_account_id, amount, ledger_id, professional_name, idempotency_key):
        self.calls.append(("submit_payout", ledger_id, idempotency_key, amount))
        if self.submit_results:
            return self.submit_results.pop(0)
        self.payout_seq += 1
        return Ok(PayoutStatus(gateway_payout_id=f"pout_{self.payout_seq}", status="processing"))

    def fetch_payout_status(self, gateway_payout_id):
        self.calls.append(("fetch_payout_status", gateway_payout_id))
        return self.status_results.pop(0)

    def find_payout_by_reference(self, ledger_id):
        self.calls.append(("find_payout_by_reference", ledger_id))
        return self.reference_result

    def verify_webhook_signature(self, raw_payload, signature):
        if not signature:
            return False
        return hmac.compare_digest(compute_signature(WEBHOOK_SECRET, raw_payload), signature)

    def submissions(self) -> list[tuple]:
        return [call for call in self.calls if call[0] == "submit_payout"]


def timeout_err() -> Err:
    return Err(GatewayError(GatewayErrorKind.TIMEOUT, "gateway timeout during submit_payout: read timed out"))


def rejected_err(message: str = "Failed to submit payout: Insufficient balance") -> Err:
    return Err(GatewayError(GatewayErrorKind.REJECTED, message))


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'settlepay.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orchestrator(session_factory, gateway):
    return SettlementOrchestrator(session_factory, gateway, commission_rate=Decimal("0.25"), currency="INR")


def seed_professional(session_factory, email="asha@example.com", bank_verified=True, bank_details=BANK, **extra):
    with session_factory() as db:
        professional = Professional(
            email=email,
            name=extra.pop("name", "Asha Rao"),
            phone=extra.pop("phone", "9876543210"),
            bank_details=bank_details,
            bank_verified=bank_verified,
            **extra,
        )
        db.add(professional)
        db.commit()
        return professional.id


def seed_order(
    session_factory,
    professional_id,
    unit_price,
    completed_at=datetime(2026, 10, 13, 10, 0, tzinfo=timezone.utc),
    status="completed",
    quantity=1,
    service_name="Haircut",
    delivered_at=None,
    order_number=None,
    client_name="Client One",
):
    with session_factory() as db:
        count = db.query(Order).count()
        order = Order(
            order_number=order_number or f"ORD-{count + 1:04d}",
            status=status,
            completed_at=completed_at,
            delivered_at=delivered_at,
            client_name=client_name,
            client_phone="9000000000",
        )
        db.add(order)
        db.flush()
        db.add(
            OrderServiceItem(
                order_id=order.id,
                service_id="svc-1",
                service_name=service_name,
                professional_id=professional_id,
                unit_price=Decimal(unit_price),
                quantity=quantity,
            )
        )
        db.commit()
        return order.id


@pytest.fixture
def professional_with_revenue(session_factory):
    """Scenario A fixture: lines of 500 and 300 in `WEEK`."""

    professional_id = seed_professional(session_factory)
    seed_order(session_factory, professional_id, "500.00")
    seed_order(session_factory, professional_id, "300.00", completed_at=datetime(2026, 10, 15, 9, 30, tzinfo=timezone.utc))
    return professional_id
