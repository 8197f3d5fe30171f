"""HTTP surface for the reconciliation service.

Hosts the provider webhook, the cron trigger and scheduler controls, admin
status management, and the customer order endpoints. The webhook queue
consumer and (optionally) the payment status sweep run with the app lifecycle.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict
from time import perf_counter

import redis
from fastapi import FastAPI, Header, HTTPException, Request

from docpay.common.config import settings
from docpay.common.db import SessionLocal
from docpay.common.errors import (
    ConcurrencyConflict,
    GatewayError,
    GatewayTimeout,
    InvalidSignature,
    InvalidStatus,
    InvalidTransition,
    MalformedWebhook,
    OrderNotFound,
    OrderNumberExhausted,
    RateLimited,
)
from docpay.common.logging import configure_logging, logger, trace_id_ctx
from docpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from docpay.common.startup import log_startup_config
from docpay.common.tracing import current_trace_id, instrument_app, setup_tracing
from docpay.services.api.schemas import AdminStatusUpdate, OrderListResponse, PaymentCheckResponse
from docpay.services.gateway.client import PaymentGatewayClient
from docpay.services.orders.schemas import (
    OrderCreateRequest,
    OrderHistoryResponse,
    OrderResponse,
    PaymentAttachRequest,
)
from docpay.services.orders.service import OrderService
from docpay.services.orders.store import AuditTrail
from docpay.services.poller.service import PaymentStatusPoller
from docpay.services.reconciliation.admin import AdminTransitionService
from docpay.services.reconciliation.dashboard import DashboardSync
from docpay.services.reconciliation.service import ReconciliationService
from docpay.services.webhook.queue import WebhookQueue, WebhookQueueConsumer
from docpay.services.webhook.rate_limit import TokenBucketLimiter
from docpay.services.webhook.receiver import WebhookReceiver

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings)

ADMIN_ROLES = {"ADMIN", "SUPPORT"}

rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
gateway = PaymentGatewayClient()
reconciler = ReconciliationService(SessionLocal, settings.service_name)
audit_trail = AuditTrail(SessionLocal)
webhook_queue = WebhookQueue(rdb, settings.service_name) if settings.webhook_queue_enabled else None
receiver = WebhookReceiver(
    reconciler,
    audit_trail,
    TokenBucketLimiter(rdb, settings.webhook_rate_limit_per_minute),
    settings.webhook_secret,
    signature_mode=settings.webhook_signature_mode,
    queue=webhook_queue,
    service_name=settings.service_name,
)
queue_consumer = (
    WebhookQueueConsumer(webhook_queue, reconciler, audit_trail) if webhook_queue is not None else None
)
poller = PaymentStatusPoller(SessionLocal, gateway, reconciler)
dashboard_sync = DashboardSync(SessionLocal, gateway, reconciler)
admin_service = AdminTransitionService(SessionLocal)
order_service = OrderService(SessionLocal, gateway)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the webhook queue consumer and the optional sweep with the app."""

    consumer_task = asyncio.create_task(queue_consumer.run_forever()) if queue_consumer else None
    if settings.poller_autostart:
        poller.start()
    yield
    if consumer_task is not None:
        queue_consumer.stop()
        consumer_task.cancel()
    await poller.stop()
    await gateway.close()


app = FastAPI(title="docpay Reconciliation", lifespan=lifespan)
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
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def require_user(x_api_key: str | None, x_user_id: str | None) -> str:
    enforce_api_key(x_api_key)
    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing user identity")
    return x_user_id


def require_admin(x_api_key: str | None, x_admin_id: str | None, x_admin_role: str | None) -> str:
    """Return the acting admin id, or fail with 401/403."""

    enforce_api_key(x_api_key)
    if not x_admin_id or (x_admin_role or "").upper() not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="admin role required")
    return x_admin_id


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def start_trace(x_correlation_id: str | None) -> None:
    trace_id_ctx.set(current_trace_id(x_correlation_id))


@app.post("/webhooks/payments")
async def payment_webhook(request: Request, x_correlation_id: str | None = Header(default=None)):
    """Provider payment notification; 200 once the delivery is accepted."""

    start_trace(x_correlation_id)
    raw_body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    try:
        return await receiver.handle(raw_body, signature, client_ip(request))
    except RateLimited as exc:
        raise HTTPException(status_code=429, detail="rate limit exceeded") from exc
    except InvalidSignature as exc:
        raise HTTPException(status_code=401, detail="invalid webhook signature") from exc
    except MalformedWebhook as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/internal/cron/payment-check", response_model=PaymentCheckResponse)
async def cron_payment_check(x_api_key: str | None = Header(default=None)):
    """Run one sweep; meant for an external scheduler."""

    enforce_api_key(x_api_key)
    start_trace(None)
    return await poller.run_once()


@app.get("/admin/cron/payment-checker")
def payment_checker_status(
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_admin_role: str | None = Header(default=None),
):
    require_admin(x_api_key, x_admin_id, x_admin_role)
    return poller.status()


@app.post("/admin/cron/payment-checker/start")
async def payment_checker_start(
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_admin_role: str | None = Header(default=None),
):
    admin_id = require_admin(x_api_key, x_admin_id, x_admin_role)
    started = poller.start()
    logger.info("payment_checker_start_requested admin=%s started=%s", admin_id, started)
    return {"started": started, **poller.status()}


@app.post("/admin/cron/payment-checker/stop")
async def payment_checker_stop(
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_admin_role: str | None = Header(default=None),
):
    admin_id = require_admin(x_api_key, x_admin_id, x_admin_role)
    stopped = await poller.stop()
    logger.info("payment_checker_stop_requested admin=%s stopped=%s", admin_id, stopped)
    return {"stopped": stopped, **poller.status()}


@app.post("/admin/cron/payment-checker/run-now", response_model=PaymentCheckResponse)
async def payment_checker_run_now(
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_admin_role: str | None = Header(default=None),
):
    require_admin(x_api_key, x_admin_id, x_admin_role)
    start_trace(None)
    return await poller.run_now()


@app.put("/admin/orders/{order_id}/status", response_model=OrderResponse)
async def admin_update_status(
    order_id: str,
    req: AdminStatusUpdate,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_admin_role: str | None = Header(default=None),
):
    """Manual order transition, optionally overriding the payment status."""

    admin_id = require_admin(x_api_key, x_admin_id, x_admin_role)
    try:
        return admin_service.transition(
            order_id, req.status, admin_id, notes=req.notes, payment_status=req.payment_status
        )
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail="order not found") from exc
    except (InvalidStatus, InvalidTransition) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ConcurrencyConflict as exc:
        raise HTTPException(status_code=409, detail="order changed concurrently, retry") from exc


@app.get("/admin/orders/{order_id}/history", response_model=list[OrderHistoryResponse])
def admin_order_history(
    order_id: str,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_admin_role: str | None = Header(default=None),
):
    require_admin(x_api_key, x_admin_id, x_admin_role)
    try:
        return admin_service.history(order_id)
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail="order not found") from exc


@app.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(
    req: OrderCreateRequest,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = require_user(x_api_key, x_user_id)
    try:
        return order_service.create_order(user_id, req)
    except OrderNumberExhausted as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/orders/{order_id}/payment", response_model=OrderResponse)
async def attach_order_payment(
    order_id: str,
    req: PaymentAttachRequest,
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Open the provider charge for an order awaiting payment."""

    user_id = require_user(x_api_key, x_user_id)
    try:
        return await order_service.attach_payment(
            order_id, req.customer_id, due_date=req.due_date, description=req.description, user_id=user_id
        )
    except OrderNotFound as exc:
        raise HTTPException(status_code=404, detail="order not found") from exc
    except InvalidStatus as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except GatewayTimeout as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc
    except GatewayError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.get("/orders", response_model=OrderListResponse)
async def list_orders(
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    """Customer order list, refreshed against the gateway first."""

    user_id = require_user(x_api_key, x_user_id)
    summary = await dashboard_sync.sync_user_orders(user_id)
    return {"orders": order_service.list_orders(user_id), "sync": asdict(summary)}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
