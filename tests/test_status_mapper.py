import pytest

from docpay.common.state_machine import OrderStatus, PaymentStatus
from docpay.common.status_mapper import map_provider_status


@pytest.mark.parametrize(
    "provider_status,payment_status,order_status",
    [
        ("RECEIVED", PaymentStatus.COMPLETED, OrderStatus.PAYMENT_CONFIRMED),
        ("CONFIRMED", PaymentStatus.COMPLETED, OrderStatus.PAYMENT_CONFIRMED),
        ("PENDING", PaymentStatus.PENDING, None),
        ("OVERDUE", PaymentStatus.FAILED, OrderStatus.PAYMENT_REFUSED),
        ("REFUNDED", PaymentStatus.REFUNDED, OrderStatus.CANCELLED),
    ],
)
def test_known_statuses(provider_status, payment_status, order_status):
    mapping = map_provider_status(provider_status)
    assert mapping.payment_status == payment_status
    assert mapping.order_status == order_status


def test_lookup_ignores_case_and_whitespace():
    assert map_provider_status("  received ") == map_provider_status("RECEIVED")


@pytest.mark.parametrize("provider_status", [None, "", "CHARGEBACK_REQUESTED", "AWAITING_RISK_ANALYSIS"])
def test_unknown_statuses_are_unmapped(provider_status):
    assert map_provider_status(provider_status) is None
