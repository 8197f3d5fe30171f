"""Canonical provider-status mapping shared by webhook, cron and dashboard sync."""

from dataclasses import dataclass

from docpay.common.state_machine import OrderStatus, PaymentStatus


@dataclass(frozen=True)
class StatusMapping:
    """Internal statuses implied by one provider status.

    `order_status` is None when the provider status leaves the order lifecycle
    where it is.
    """

    payment_status: PaymentStatus
    order_status: OrderStatus | None


PROVIDER_STATUS_MAP: dict[str, StatusMapping] = {
    "RECEIVED": StatusMapping(PaymentStatus.COMPLETED, OrderStatus.PAYMENT_CONFIRMED),
    "CONFIRMED": StatusMapping(PaymentStatus.COMPLETED, OrderStatus.PAYMENT_CONFIRMED),
    "PENDING": StatusMapping(PaymentStatus.PENDING, None),
    "OVERDUE": StatusMapping(PaymentStatus.FAILED, OrderStatus.PAYMENT_REFUSED),
    "REFUNDED": StatusMapping(PaymentStatus.REFUNDED, OrderStatus.CANCELLED),
}


def map_provider_status(provider_status: str | None) -> StatusMapping | None:
    """Map a provider payment status; returns None for anything unrecognized."""

    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().upper())
