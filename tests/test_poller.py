import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from docpay.services.poller.service import PaymentStatusPoller


@pytest.fixture
def poller(session_factory, gateway, reconciler):
    return PaymentStatusPoller(
        session_factory,
        gateway,
        reconciler,
        interval_seconds=3600,
        window_days=7,
        request_delay_seconds=0,
        service_name="test",
    )


async def test_sweep_counts_and_continues_past_errors(poller, provider, make_order, fetch_order):
    paid = make_order(order_number="ORD-20250101-0001", provider_payment_id="pay_1")
    make_order(order_number="ORD-20250101-0002", provider_payment_id="pay_2")
    still_pending = make_order(order_number="ORD-20250101-0003", provider_payment_id="pay_3")
    provider.set_status("pay_1", "RECEIVED")
    provider.set_status("pay_3", "PENDING")

    result = await poller.run_once()

    assert (result["checked"], result["updated"], result["errors"]) == (3, 1, 1)
    assert {detail["order_number"] for detail in result["details"]} == {"ORD-20250101-0001", "ORD-20250101-0002"}
    assert fetch_order(paid.id).payment_status == "COMPLETED"
    assert fetch_order(still_pending.id).state_version == 0
    assert poller.status()["last_result"] == result


async def test_sweep_selects_only_recent_unsettled_orders(poller, provider, make_order):
    make_order(order_number="ORD-1", provider_payment_id="pay_old", created_at=datetime.now(timezone.utc) - timedelta(days=10))
    make_order(order_number="ORD-2", provider_payment_id="pay_done", payment_status="COMPLETED", status="PAYMENT_CONFIRMED")
    make_order(order_number="ORD-3", provider_payment_id=None)
    make_order(order_number="ORD-4", provider_payment_id="pay_processing", payment_status="PROCESSING")
    provider.set_status("pay_processing", "CONFIRMED")

    result = await poller.run_once()

    assert result["checked"] == 1
    assert result["updated"] == 1
    assert [request.url.path.rsplit("/", 1)[-1] for request in provider.requests] == ["pay_processing"]


async def test_gateway_timeout_is_recorded(poller, provider, make_order):
    make_order(provider_payment_id="pay_slow")
    provider.timeouts.add("pay_slow")

    result = await poller.run_once()

    assert result["errors"] == 1
    assert "timed out" in result["details"][0]["error"]


async def test_start_and_stop_are_idempotent(poller):
    assert await poller.stop() is False
    assert poller.start() is True
    assert poller.start() is False
    assert poller.status()["running"] is True

    await asyncio.sleep(0)
    assert await poller.stop() is True
    assert poller.status()["running"] is False
    assert await poller.stop() is False


async def test_run_now_works_while_stopped(poller, provider, make_order):
    make_order()
    provider.set_status("pay_123", "RECEIVED")

    result = await poller.run_now()

    assert result["updated"] == 1
    assert poller.status()["last_run_at"] is not None


async def test_unparseable_provider_payment_does_not_stop_the_sweep(poller, provider, make_order, fetch_order):
    make_order(order_number="ORD-20250101-0001", provider_payment_id="pay_bad")
    good = make_order(order_number="ORD-20250101-0002", provider_payment_id="pay_good")
    provider.payments["pay_bad"] = {"id": "pay_bad"}
    provider.set_status("pay_good", "RECEIVED")

    result = await poller.run_once()

    assert (result["checked"], result["updated"], result["errors"]) == (2, 1, 1)
    assert result["details"][0]["order_number"] == "ORD-20250101-0001"
    assert fetch_order(good.id).payment_status == "COMPLETED"


async def test_database_error_on_one_order_does_not_stop_the_sweep(
    poller, provider, reconciler, make_order, fetch_order, monkeypatch
):
    make_order(order_number="ORD-20250101-0001", provider_payment_id="pay_1")
    second = make_order(order_number="ORD-20250101-0002", provider_payment_id="pay_2")
    provider.set_status("pay_1", "RECEIVED")
    provider.set_status("pay_2", "RECEIVED")
    reconcile = reconciler.reconcile

    async def flaky(ref, *args, **kwargs):
        if ref.provider_payment_id == "pay_1":
            raise OperationalError("UPDATE orders", {}, Exception("db blip"))
        return await reconcile(ref, *args, **kwargs)

    monkeypatch.setattr(reconciler, "reconcile", flaky)

    result = await poller.run_once()

    assert (result["checked"], result["updated"], result["errors"]) == (2, 1, 1)
    assert "db blip" in result["details"][0]["error"]
    assert fetch_order(second.id).status == "PAYMENT_CONFIRMED"
