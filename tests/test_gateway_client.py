import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from docpay.common.errors import GatewayError, GatewayTimeout
from docpay.services.gateway.client import PaymentGatewayClient
from docpay.services.gateway.schemas import CreatePaymentRequest


async def test_get_payment_parses_provider_fields(gateway, provider):
    provider.payments["pay_123"] = {
        "id": "pay_123",
        "status": "RECEIVED",
        "value": 89.9,
        "billingType": "PIX",
        "externalReference": "ORD-20250101-0001",
        "netValue": 88.5,
    }

    payment = await gateway.get_payment("pay_123")

    assert payment.status == "RECEIVED"
    assert payment.billing_type == "PIX"
    assert payment.external_reference == "ORD-20250101-0001"
    assert provider.requests[0].headers["access_token"] == "gw-test"


async def test_error_body_becomes_gateway_error(gateway):
    with pytest.raises(GatewayError) as exc_info:
        await gateway.get_payment("pay_missing")
    assert exc_info.value.status_code == 404
    assert str(exc_info.value) == "payment not found"


async def test_timeout_is_not_retried(gateway, provider):
    provider.timeouts.add("pay_slow")

    with pytest.raises(GatewayTimeout):
        await gateway.get_payment("pay_slow")
    assert len(provider.requests) == 1


async def test_create_payment_body(gateway, provider):
    payment = await gateway.create_payment(
        CreatePaymentRequest(
            customer="cus_1",
            billing_type="PIX",
            value=Decimal("89.90"),
            due_date=date(2025, 1, 4),
            external_reference="ORD-20250101-0001",
        )
    )

    sent = json.loads(provider.requests[0].content)
    assert sent == {
        "customer": "cus_1",
        "billingType": "PIX",
        "value": 89.9,
        "dueDate": "2025-01-04",
        "externalReference": "ORD-20250101-0001",
    }
    assert payment.id == "pay_new_1"


async def test_non_object_body_is_rejected():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["unexpected"]))
    client = PaymentGatewayClient(base_url="https://gateway.test", api_key="k", transport=transport)

    with pytest.raises(GatewayError):
        await client.get_payment("pay_1")


async def test_missing_api_key_fails_before_any_request(provider):
    client = PaymentGatewayClient(
        base_url="https://gateway.test", api_key="", transport=httpx.MockTransport(provider.handler)
    )

    with pytest.raises(GatewayError):
        await client.get_payment("pay_1")
    assert provider.requests == []


async def test_payment_without_status_becomes_gateway_error(gateway, provider):
    provider.payments["pay_bad"] = {"id": "pay_bad"}

    with pytest.raises(GatewayError, match="unexpected payment body"):
        await gateway.get_payment("pay_bad")
