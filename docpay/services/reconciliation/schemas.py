"""Value types passed in and out of the reconciliation writer."""

from dataclasses import dataclass
from enum import StrEnum

from docpay.services.orders.models import Order


class ReconcileSource(StrEnum):
    """Trigger that produced a status observation."""

    WEBHOOK = "webhook"
    CRON = "cron"
    DASHBOARD_SYNC = "dashboard-sync"
    ADMIN = "admin"


class ReconcileOutcome(StrEnum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    UNMAPPED = "unmapped"
    TERMINAL = "terminal"
    REJECTED = "rejected"
    STALE = "stale"


# Order.metadata key holding the last trace written by each source.
METADATA_KEYS: dict[str, str] = {
    ReconcileSource.WEBHOOK: "last_webhook",
    ReconcileSource.CRON: "last_cron_check",
    ReconcileSource.DASHBOARD_SYNC: "last_dashboard_sync",
    ReconcileSource.ADMIN: "last_admin_change",
}


@dataclass(frozen=True)
class OrderRef:
    """How to find the order: by provider payment id or by internal id."""

    provider_payment_id: str | None = None
    order_id: str | None = None

    @classmethod
    def by_payment_id(cls, provider_payment_id: str) -> "OrderRef":
        return cls(provider_payment_id=provider_payment_id)

    @classmethod
    def by_order_id(cls, order_id: str) -> "OrderRef":
        return cls(order_id=order_id)

    def describe(self) -> str:
        if self.provider_payment_id is not None:
            return f"provider_payment_id={self.provider_payment_id}"
        return f"order_id={self.order_id}"


@dataclass
class ReconcileResult:
    applied: bool
    order: Order
    outcome: ReconcileOutcome
    detail: str | None = None
