"""Order and payment status state machines enforced on every write."""

from enum import StrEnum

from docpay.common.errors import InvalidStatus, InvalidTransition


class OrderStatus(StrEnum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_REFUSED = "PAYMENT_REFUSED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    AWAITING_QUOTE = "AWAITING_QUOTE"
    DOCUMENT_REQUESTED = "DOCUMENT_REQUESTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.AWAITING_PAYMENT: {
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.PAYMENT_REFUSED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PAYMENT_CONFIRMED: {OrderStatus.ORDER_CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.PAYMENT_REFUSED: {OrderStatus.AWAITING_PAYMENT, OrderStatus.CANCELLED},
    OrderStatus.ORDER_CONFIRMED: {
        OrderStatus.AWAITING_QUOTE,
        OrderStatus.DOCUMENT_REQUESTED,
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.AWAITING_QUOTE: {
        OrderStatus.ORDER_CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.DOCUMENT_REQUESTED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

# Forward-only payment progression; anything else is a stale/out-of-order event.
PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    },
    PaymentStatus.PROCESSING: {
        PaymentStatus.PENDING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    },
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
PAID_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED})
SETTLING_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def parse_order_status(value: str) -> OrderStatus:
    """Coerce a raw string into an `OrderStatus` or raise `InvalidStatus`."""

    try:
        return OrderStatus(value)
    except ValueError as exc:
        raise InvalidStatus(f"unknown order status: {value!r}") from exc


def parse_payment_status(value: str) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError as exc:
        raise InvalidStatus(f"unknown payment status: {value!r}") from exc


def validate_transition(current: str, new: str) -> None:
    """Raise when an order status transition is not allowed."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, new)


def validate_payment_transition(current: str, new: str) -> None:
    """Raise when a payment status move would regress or skip the lifecycle."""

    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, new, kind="payment")
