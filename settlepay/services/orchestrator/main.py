"""Payout admin API, gateway webhook endpoint and outbox publisher lifecycle."""

import asyncio
import math
from contextlib import asynccontextmanager
from datetime import date
from time import perf_counter
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from settlepay.common.config import settings
from settlepay.common.db import SessionLocal
from settlepay.common.errors import (
    Conflict,
    GatewayError,
    NotFound,
    SecurityError,
    SettlementError,
    ValidationError,
)
from settlepay.common.events import KafkaBus
from settlepay.common.logging import configure_logging, logger, trace_id_ctx
from settlepay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from settlepay.common.outbox import OutboxPublisher
from settlepay.common.startup import log_startup_config
from settlepay.common.tracing import instrument_app, setup_tracing
from settlepay.common.weeks import WeekWindow
from settlepay.services.gateway.service import RazorpayXGateway
from settlepay.services.ledger.models import OutboxEvent
from settlepay.services.orchestrator.schemas import (
    CancelRequest,
    GenerateRequest,
    GenerateResponse,
    LedgerDetailResponse,
    LedgerPage,
    LedgerResponse,
    Pagination,
    ProcessRequest,
    ReconcileResponse,
    StatusCheckResponse,
    SummaryResponse,
    TimelineEntry,
)
from settlepay.services.orchestrator.service import SettlementOrchestrator
from settlepay.services.orchestrator.webhooks import WebhookReceiver

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "GATEWAY_BASE_URL",
        "GATEWAY_KEY_SECRET",
        "COMMISSION_RATE",
        "WEEK_START_WEEKDAY",
    ],
)
gateway = RazorpayXGateway.from_settings()
orchestrator = SettlementOrchestrator(SessionLocal, gateway, service_name=settings.service_name)
webhook_receiver = WebhookReceiver(orchestrator, gateway, service_name=settings.service_name)
bus = KafkaBus()
publisher = OutboxPublisher(SessionLocal, OutboxEvent, bus, settings.service_name)

ERROR_STATUS = (
    (NotFound, 404),
    (Conflict, 409),
    (ValidationError, 422),
    (GatewayError, 502),
    (SecurityError, 400),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    await bus.close()
    gateway.close()


app = FastAPI(title="SettlePay Payouts", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            elapsed
        )
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def _error_body(exc: SettlementError) -> dict:
    return {"detail": exc.message, "code": exc.code}


@app.exception_handler(SettlementError)
async def settlement_error_handler(_: Request, exc: SettlementError):
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status_code, content=_error_body(exc))


def get_orchestrator() -> SettlementOrchestrator:
    return orchestrator


def get_webhook_receiver() -> WebhookReceiver:
    return webhook_receiver


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def bind_trace_id(x_trace_id: str | None = Header(default=None)) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


def _page(rows, total: int, page: int, limit: int) -> LedgerPage:
    return LedgerPage(
        items=[LedgerResponse.model_validate(row) for row in rows],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0),
    )


def _gateway_failure(svc: SettlementOrchestrator, ledger_id: str, exc: GatewayError) -> JSONResponse:
    """502 carrying the ledger, which now records the failure."""

    body = _error_body(exc)
    try:
        body["ledger"] = LedgerResponse.model_validate(svc.get(ledger_id)).model_dump(mode="json")
    except NotFound:
        logger.warning("ledger vanished after gateway failure ledger_id=%s", ledger_id)
    return JSONResponse(status_code=502, content=body)


admin = APIRouter(prefix="/payouts", dependencies=[Depends(enforce_api_key)])


@admin.get("/summary/{professional_id}", response_model=SummaryResponse)
def payout_summary(
    professional_id: str,
    week_start: date | None = None,
    svc: SettlementOrchestrator = Depends(get_orchestrator),
):
    """Preview the week's revenue split without creating anything."""

    window = WeekWindow.containing(week_start) if week_start else WeekWindow.current()
    preview = svc.summary_preview(professional_id, window)
    existing = preview.pop("existing_payout")
    return SummaryResponse(**preview, existing_payout=LedgerResponse.model_validate(existing) if existing else None)


@admin.post("/generate/{professional_id}", response_model=GenerateResponse)
def generate_payout(
    professional_id: str,
    response: Response,
    req: GenerateRequest | None = None,
    svc: SettlementOrchestrator = Depends(get_orchestrator),
    trace_id: str = Depends(bind_trace_id),
):
    """Create the week's ledger (201) or return the one already generated (200)."""

    anchor = req.week_start if req else None
    window = WeekWindow.containing(anchor) if anchor else WeekWindow.current()
    result = svc.generate(professional_id, window, trace_id)
    response.status_code = 201 if result.created else 200
    return GenerateResponse(created=result.created, ledger=LedgerResponse.model_validate(result.ledger))


@admin.get("/pending", response_model=LedgerPage)
def pending_payouts(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    svc: SettlementOrchestrator = Depends(get_orchestrator),
):
    rows, total = svc.list_pending(page=page, limit=limit)
    return _page(rows, total, page, limit)


@admin.get("/history/{professional_id}", response_model=LedgerPage)
def payout_history(
    professional_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    svc: SettlementOrchestrator = Depends(get_orchestrator),
):
    rows, total = svc.history(professional_id, page=page, limit=limit)
    return _page(rows, total, page, limit)


@admin.post("/reconcile", response_model=ReconcileResponse)
def reconcile_payouts(
    older_than_seconds: int | None = Query(default=None, ge=0),
    svc: SettlementOrchestrator = Depends(get_orchestrator),
    trace_id: str = Depends(bind_trace_id),
):
    """Poll the gateway for every payout stuck in processing."""

    report = svc.reconcile_processing(older_than_seconds, trace_id)
    return ReconcileResponse(checked=report.checked, updated=report.updated, errors=report.errors)


@admin.post("/{ledger_id}/process", response_model=LedgerResponse)
def process_payout(
    ledger_id: str,
    req: ProcessRequest | None = None,
    svc: SettlementOrchestrator = Depends(get_orchestrator),
    trace_id: str = Depends(bind_trace_id),
):
    """Submit a pending payout to the gateway."""

    try:
        ledger = svc.process(ledger_id, req.admin_notes if req else None, trace_id)
    except GatewayError as exc:
        return _gateway_failure(svc, ledger_id, exc)
    return LedgerResponse.model_validate(ledger)


@admin.post("/{ledger_id}/retry", response_model=LedgerResponse)
def retry_payout(
    ledger_id: str,
    svc: SettlementOrchestrator = Depends(get_orchestrator),
    trace_id: str = Depends(bind_trace_id),
):
    try:
        ledger = svc.retry(ledger_id, trace_id)
    except GatewayError as exc:
        return _gateway_failure(svc, ledger_id, exc)
    return LedgerResponse.model_validate(ledger)


@admin.post("/{ledger_id}/cancel", response_model=LedgerResponse)
def cancel_payout(
    ledger_id: str,
    req: CancelRequest,
    svc: SettlementOrchestrator = Depends(get_orchestrator),
    trace_id: str = Depends(bind_trace_id),
):
    return LedgerResponse.model_validate(svc.cancel(ledger_id, req.reason, trace_id))


@admin.post("/{ledger_id}/status", response_model=StatusCheckResponse)
def check_payout_status(
    ledger_id: str,
    svc: SettlementOrchestrator = Depends(get_orchestrator),
    trace_id: str = Depends(bind_trace_id),
):
    """Poll the gateway and reconcile the ledger with its answer."""

    check = svc.check_status(ledger_id, trace_id)
    return StatusCheckResponse(gateway_status=check.gateway_status, ledger=LedgerResponse.model_validate(check.ledger))


@admin.get("/{ledger_id}", response_model=LedgerDetailResponse)
def get_payout(ledger_id: str, svc: SettlementOrchestrator = Depends(get_orchestrator)):
    ledger = svc.get(ledger_id)
    detail = LedgerDetailResponse.model_validate(ledger)
    detail.timeline = [TimelineEntry.model_validate(row) for row in svc.timeline(ledger_id)]
    return detail


@app.post("/payouts/webhook")
async def payout_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_signature: str | None = Header(default=None),
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
    trace_id: str = Depends(bind_trace_id),
):
    """Gateway callback; acknowledged with 200 once the signature checks out."""

    raw_body = await request.body()
    outcome = await run_in_threadpool(receiver.handle, raw_body, x_razorpay_signature or x_signature, trace_id)
    return {"received": True, "outcome": outcome}


app.include_router(admin)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
