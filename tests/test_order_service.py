from datetime import date
from decimal import Decimal

import pytest

from docpay.common.errors import InvalidStatus, OrderNotFound, OrderNumberExhausted
from docpay.services.orders.schemas import OrderCreateRequest
from docpay.services.orders.service import OrderService, document_type_for, generate_order_number


def request(document_number="123.456.789-09") -> OrderCreateRequest:
    return OrderCreateRequest(
        service_type="PROTEST_QUERY",
        document_number=document_number,
        amount=Decimal("89.90"),
        payment_method="PIX",
    )


def numbers(*values):
    it = iter(values)
    return lambda: next(it)


def test_order_number_format():
    assert generate_order_number(date(2025, 1, 1)).startswith("ORD-20250101-")
    assert len(generate_order_number(date(2025, 1, 1))) == len("ORD-20250101-0001")


@pytest.mark.parametrize(
    "raw,digits,kind",
    [("123.456.789-09", "12345678909", "CPF"), ("12.345.678/0001-95", "12345678000195", "CNPJ")],
)
def test_document_type_by_digit_count(raw, digits, kind):
    assert document_type_for(raw) == (digits, kind)


def test_document_with_wrong_length_is_rejected():
    with pytest.raises(ValueError):
        document_type_for("1234567890")


def test_create_order_starts_awaiting_payment(session_factory, gateway, fetch_history):
    service = OrderService(session_factory, gateway, number_factory=numbers("ORD-20250101-0001"))

    order = service.create_order("user-1", request())

    assert order.order_number == "ORD-20250101-0001"
    assert (order.status, order.payment_status) == ("AWAITING_PAYMENT", "PENDING")
    assert order.document_type == "CPF"
    assert order.provider_payment_id is None
    history = fetch_history(order.id)
    assert len(history) == 1
    assert history[0].previous_status is None
    assert history[0].new_status == "AWAITING_PAYMENT"


def test_order_number_collision_retries(session_factory, gateway, make_order):
    make_order(order_number="ORD-20250101-0001")
    service = OrderService(
        session_factory, gateway, number_factory=numbers("ORD-20250101-0001", "ORD-20250101-0002")
    )

    assert service.create_order("user-1", request()).order_number == "ORD-20250101-0002"


def test_order_number_exhaustion(session_factory, gateway, make_order):
    make_order(order_number="ORD-20250101-0001")
    service = OrderService(
        session_factory, gateway, number_factory=lambda: "ORD-20250101-0001", max_number_attempts=3
    )

    with pytest.raises(OrderNumberExhausted):
        service.create_order("user-1", request())


async def test_attach_payment_once(session_factory, gateway, provider, fetch_audit):
    service = OrderService(session_factory, gateway, number_factory=numbers("ORD-20250101-0007"))
    order = service.create_order("user-1", request())

    attached = await service.attach_payment(order.id, "cus_1", due_date=date(2025, 1, 4), user_id="user-1")
    again = await service.attach_payment(order.id, "cus_1", user_id="user-1")

    assert attached.provider_payment_id == "pay_new_1"
    assert again.provider_payment_id == "pay_new_1"
    assert len(provider.created) == 1
    assert provider.created[0]["billingType"] == "PIX"
    assert provider.created[0]["value"] == 89.9
    assert provider.created[0]["externalReference"] == "ORD-20250101-0007"
    assert len(fetch_audit("PAYMENT_CREATED")) == 1


async def test_attach_payment_checks_owner_and_status(session_factory, gateway, make_order):
    service = OrderService(session_factory, gateway)
    foreign = make_order(order_number="ORD-1", provider_payment_id=None)
    cancelled = make_order(order_number="ORD-2", provider_payment_id=None, status="CANCELLED", user_id="user-2")

    with pytest.raises(OrderNotFound):
        await service.attach_payment(foreign.id, "cus_1", user_id="user-2")
    with pytest.raises(InvalidStatus):
        await service.attach_payment(cancelled.id, "cus_1", user_id="user-2")
