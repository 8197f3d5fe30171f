import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("WEBHOOK_SECRET", "whsec-test")
os.environ.setdefault("GATEWAY_API_KEY", "gw-test")

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docpay.common.db import Base
from docpay.services.gateway.client import PaymentGatewayClient
from docpay.services.orders.models import AuditLog, Order, OrderHistory
from docpay.services.orders.store import AuditTrail
from docpay.services.reconciliation.service import ReconciliationService


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def make_order(session_factory):
    """Insert an order; defaults describe ORD-20250101-0001 awaiting pay_123."""

    def _make(**overrides) -> Order:
        values = {
            "order_number": "ORD-20250101-0001",
            "user_id": "user-1",
            "service_type": "PROTEST_QUERY",
            "document_number": "12345678909",
            "document_type": "CPF",
            "amount": Decimal("89.90"),
            "payment_method": "PIX",
            "provider_payment_id": "pay_123",
            "status": "AWAITING_PAYMENT",
            "payment_status": "PENDING",
            "paid_at": None,
            "meta": {},
            "created_at": datetime.now(timezone.utc),
        }
        values.update(overrides)
        with session_factory() as db:
            order = Order(**values)
            db.add(order)
            db.commit()
        return order

    return _make


@pytest.fixture
def fetch_order(session_factory):
    def _fetch(order_id: str) -> Order:
        with session_factory() as db:
            return db.get(Order, order_id)

    return _fetch


@pytest.fixture
def fetch_history(session_factory):
    def _fetch(order_id: str) -> list[OrderHistory]:
        with session_factory() as db:
            return list(db.execute(select(OrderHistory).where(OrderHistory.order_id == order_id)).scalars())

    return _fetch


@pytest.fixture
def fetch_audit(session_factory):
    def _fetch(action: str | None = None) -> list[AuditLog]:
        query = select(AuditLog)
        if action is not None:
            query = query.where(AuditLog.action == action)
        with session_factory() as db:
            return list(db.execute(query).scalars())

    return _fetch


@pytest.fixture
def reconciler(session_factory):
    return ReconciliationService(session_factory, service_name="test", max_attempts=3)


@pytest.fixture
def audit(session_factory):
    return AuditTrail(session_factory)


class FakeProvider:
    """In-memory stand-in for the provider REST API behind `httpx.MockTransport`."""

    def __init__(self) -> None:
        self.payments: dict[str, dict] = {}
        self.timeouts: set[str] = set()
        self.created: list[dict] = []
        self.requests: list[httpx.Request] = []

    def set_status(self, payment_id: str, status: str) -> None:
        self.payments[payment_id] = {"id": payment_id, "status": status, "value": 89.9, "billingType": "PIX"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/payments"):
            body = json.loads(request.content)
            self.created.append(body)
            payment_id = f"pay_new_{len(self.created)}"
            self.payments[payment_id] = {"id": payment_id, "status": "PENDING", **body}
            return httpx.Response(200, json=self.payments[payment_id])
        payment_id = path.rsplit("/", 1)[-1]
        if payment_id in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if payment_id not in self.payments:
            return httpx.Response(404, json={"errors": [{"code": "not_found", "description": "payment not found"}]})
        return httpx.Response(200, json=self.payments[payment_id])


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def gateway(provider):
    return PaymentGatewayClient(
        base_url="https://gateway.test/api/v3",
        api_key="gw-test",
        transport=httpx.MockTransport(provider.handler),
        service_name="test",
    )
