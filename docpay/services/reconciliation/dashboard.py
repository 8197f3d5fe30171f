"""On-demand reconciliation run from the customer's order list.

Shortens perceived latency when a webhook is late: before returning the
dashboard, each of the user's still-settling orders is checked with the
gateway and fed through the same writer the webhook and cron use.
"""

from dataclasses import dataclass, field

from docpay.common.errors import GatewayError, ReconciliationError
from docpay.common.logging import logger
from docpay.common.state_machine import SETTLING_PAYMENT_STATUSES
from docpay.services.gateway.client import PaymentGatewayClient
from docpay.services.orders.store import list_for_user
from docpay.services.reconciliation.schemas import OrderRef, ReconcileSource
from docpay.services.reconciliation.service import ReconciliationService


@dataclass
class SyncSummary:
    checked: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)


class DashboardSync:
    """Refreshes one user's pending orders before they are displayed."""

    def __init__(
        self,
        session_factory,
        gateway: PaymentGatewayClient,
        reconciler: ReconciliationService,
        limit: int = 50,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.reconciler = reconciler
        self.limit = limit

    async def sync_user_orders(self, user_id: str) -> SyncSummary:
        summary = SyncSummary()
        with self.session_factory() as db:
            pending = [
                (order.id, order.order_number, order.provider_payment_id)
                for order in list_for_user(db, user_id, limit=self.limit)
                if order.provider_payment_id and order.payment_status in SETTLING_PAYMENT_STATUSES
            ]

        for order_id, order_number, provider_payment_id in pending:
            summary.checked += 1
            try:
                payment = await self.gateway.get_payment(provider_payment_id)
                result = await self.reconciler.reconcile(
                    OrderRef.by_order_id(order_id),
                    payment.status,
                    ReconcileSource.DASHBOARD_SYNC,
                    {"provider_payment": payment.model_dump(mode="json", by_alias=True)},
                )
            except (GatewayError, ReconciliationError) as exc:
                # The read path never fails because of a sync problem.
                logger.warning("dashboard_sync_failed order=%s error=%s", order_number, exc)
                summary.errors.append(order_number)
                continue
            except Exception:
                logger.exception("dashboard_sync_crashed order=%s", order_number)
                summary.errors.append(order_number)
                continue
            if result.applied:
                summary.updated += 1
        return summary
