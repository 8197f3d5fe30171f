"""Webhook intake: signature, rate limiting, parsing and success bias."""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from docpay.common.errors import InvalidSignature, MalformedWebhook, RateLimited
from docpay.services.orders.store import AuditTrail
from docpay.services.webhook.queue import QUEUE_KEY, WebhookQueue
from docpay.services.webhook.rate_limit import TokenBucketLimiter
from docpay.services.webhook.receiver import WebhookReceiver

SECRET = "s3cret-token-value"


def body(payment_id="pay_123", status="RECEIVED", event="PAYMENT_RECEIVED") -> bytes:
    return json.dumps({"event": event, "payment": {"id": payment_id, "status": status}}).encode()


@pytest.fixture
def make_receiver(session_factory, reconciler):
    def _make(**overrides) -> WebhookReceiver:
        kwargs = {
            "reconciler": reconciler,
            "audit": AuditTrail(session_factory),
            "limiter": TokenBucketLimiter(None, 60),
            "secret": SECRET,
            "signature_mode": "token",
            "queue": None,
            "service_name": "test",
        }
        kwargs.update(overrides)
        return WebhookReceiver(**kwargs)

    return _make


async def test_valid_delivery_is_applied(make_receiver, make_order, fetch_order):
    order = make_order()

    response = await make_receiver().handle(body(), SECRET, "10.0.0.1")

    assert response == {"received": True, "processed": True, "outcome": "applied"}
    assert fetch_order(order.id).status == "PAYMENT_CONFIRMED"


@pytest.mark.parametrize("signature", [None, "", "wrong-token-value"])
async def test_bad_signature_writes_one_audit_row(signature, make_receiver, make_order, fetch_order, fetch_audit):
    order = make_order()

    with pytest.raises(InvalidSignature):
        await make_receiver().handle(body(), signature, "10.0.0.9")

    rows = fetch_audit("WEBHOOK_SIGNATURE_INVALID")
    assert len(rows) == 1
    assert rows[0].ip_address == "10.0.0.9"
    assert len(fetch_audit()) == 1
    stored = fetch_order(order.id)
    assert (stored.status, stored.state_version) == ("AWAITING_PAYMENT", 0)


async def test_audit_keeps_only_a_signature_prefix(make_receiver, make_order, fetch_audit):
    make_order()

    with pytest.raises(InvalidSignature):
        await make_receiver().handle(body(), "abcdefghijklmnop", "10.0.0.9")

    assert fetch_audit("WEBHOOK_SIGNATURE_INVALID")[0].meta["signature"] == "abcdefgh..."


async def test_missing_secret_rejects_everything(make_receiver, make_order):
    make_order()
    with pytest.raises(InvalidSignature):
        await make_receiver(secret="").handle(body(), "", "10.0.0.1")


async def test_hmac_mode(make_receiver, make_order, fetch_order):
    order = make_order()
    raw = body()
    signature = hmac.new(SECRET.encode(), raw, hashlib.sha256).hexdigest()
    receiver = make_receiver(signature_mode="hmac")

    with pytest.raises(InvalidSignature):
        await receiver.handle(raw, SECRET, "10.0.0.1")
    await receiver.handle(raw, signature, "10.0.0.1")

    assert fetch_order(order.id).payment_status == "COMPLETED"


@pytest.mark.parametrize(
    "raw",
    [b"not json", b"[]", json.dumps({"event": "PAYMENT_RECEIVED"}).encode(), json.dumps({"payment": {}}).encode()],
)
async def test_malformed_payloads(raw, make_receiver):
    with pytest.raises(MalformedWebhook):
        await make_receiver().handle(raw, SECRET, "10.0.0.1")


async def test_rate_limit_per_ip(make_receiver, make_order, fetch_audit):
    make_order()
    receiver = make_receiver(limiter=TokenBucketLimiter(None, 2))

    await receiver.handle(body(), SECRET, "10.0.0.1")
    await receiver.handle(body(), SECRET, "10.0.0.1")
    with pytest.raises(RateLimited):
        await receiver.handle(body(), SECRET, "10.0.0.1")
    await receiver.handle(body(), SECRET, "10.0.0.2")

    rows = fetch_audit("WEBHOOK_RATE_LIMITED")
    assert [row.ip_address for row in rows] == ["10.0.0.1"]


async def test_unknown_payment_still_acknowledged(make_receiver, fetch_audit):
    response = await make_receiver().handle(body(payment_id="pay_unknown"), SECRET, "10.0.0.1")

    assert response == {"received": True, "processed": False}
    rows = fetch_audit("WEBHOOK_ORDER_NOT_FOUND")
    assert len(rows) == 1
    assert rows[0].resource_id == "pay_unknown"


async def test_processing_failure_still_acknowledged(make_receiver, fetch_audit):
    reconciler = MagicMock()
    reconciler.reconcile = AsyncMock(side_effect=RuntimeError("database unavailable"))

    response = await make_receiver(reconciler=reconciler).handle(body(), SECRET, "10.0.0.1")

    assert response["received"] is True
    assert fetch_audit("WEBHOOK_PROCESSING_FAILED")[0].meta["error"] == "database unavailable"


async def test_queued_mode_defers_processing(make_receiver, make_order, fetch_order):
    order = make_order()
    rdb = MagicMock()
    rdb.llen.return_value = 1

    response = await make_receiver(queue=WebhookQueue(rdb)).handle(body(), SECRET, "10.0.0.1")

    assert response == {"received": True, "queued": True}
    key, ttl, payload = rdb.setex.call_args.args
    assert key.startswith("webhook:pay_123:")
    assert ttl == 86400
    assert json.loads(payload)["payment"]["status"] == "RECEIVED"
    rdb.lpush.assert_called_once_with(QUEUE_KEY, key)
    assert fetch_order(order.id).status == "AWAITING_PAYMENT"


async def test_queue_failure_falls_back_to_direct(make_receiver, make_order, fetch_order):
    order = make_order()
    rdb = MagicMock()
    rdb.setex.side_effect = redis.ConnectionError("redis down")

    response = await make_receiver(queue=WebhookQueue(rdb)).handle(body(), SECRET, "10.0.0.1")

    assert response["processed"] is True
    assert fetch_order(order.id).status == "PAYMENT_CONFIRMED"


def test_unknown_signature_mode_is_a_config_error(reconciler, session_factory):
    with pytest.raises(ValueError):
        WebhookReceiver(reconciler, AuditTrail(session_factory), TokenBucketLimiter(None, 1), SECRET, "rsa")
