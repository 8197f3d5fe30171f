"""Error taxonomy shared by the reconciliation triggers."""


class ReconciliationError(Exception):
    """Base class for errors raised while reconciling orders."""


class OrderNotFound(ReconciliationError):
    """No order matches the payment id / order id being reconciled."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"order not found for {reference}")
        self.reference = reference


class InvalidTransition(ReconciliationError, ValueError):
    """Requested status change is not in the transition table."""

    def __init__(self, current: str, new: str, kind: str = "order") -> None:
        super().__init__(f"Invalid {kind} transition: {current} -> {new}")
        self.current = current
        self.new = new
        self.kind = kind


class InvalidStatus(ReconciliationError, ValueError):
    """Status value is not a member of the expected enum."""


class ConcurrencyConflict(ReconciliationError):
    """Compare-and-swap update lost against a concurrent writer."""


class OrderNumberExhausted(ReconciliationError):
    """Could not generate a free order number within the retry budget."""


class InvalidSignature(Exception):
    """Webhook signature header missing or not matching the shared secret."""


class RateLimited(Exception):
    """Caller exceeded the webhook rate limit."""


class MalformedWebhook(ValueError):
    """Webhook body could not be decoded or lacks a payment id."""


class GatewayError(Exception):
    """Payment provider returned an error or an unusable response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayTimeout(GatewayError):
    """Payment provider did not answer within the configured timeout."""
