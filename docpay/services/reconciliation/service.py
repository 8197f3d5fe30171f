"""Reconciliation writer.

The single place where a provider payment status becomes an order change.
Webhook, cron and dashboard-sync all call `reconcile`; it maps the status,
guards terminal orders and the transition tables, then applies the update,
history row and audit row in one compare-and-swap transaction.
"""

from datetime import datetime, timezone
from typing import Any

from docpay.common.config import settings
from docpay.common.errors import ConcurrencyConflict, InvalidTransition, OrderNotFound
from docpay.common.logging import log_context, logger
from docpay.common.metadata import merge_metadata
from docpay.common.metrics import (
    reconciliation_conflicts_total,
    reconciliations_total,
    terminal_anomalies_total,
)
from docpay.common.state_machine import (
    PAID_PAYMENT_STATUSES,
    is_terminal,
    validate_payment_transition,
    validate_transition,
)
from docpay.common.status_mapper import map_provider_status
from docpay.common.tracing import reconcile_span
from docpay.services.orders.models import Order
from docpay.services.orders.store import (
    add_audit,
    add_history,
    compare_and_swap,
    find_by_id,
    find_by_payment_id,
)
from docpay.services.reconciliation.schemas import (
    METADATA_KEYS,
    OrderRef,
    ReconcileOutcome,
    ReconcileResult,
    ReconcileSource,
)


class ReconciliationService:
    """Applies provider payment statuses to orders idempotently."""

    def __init__(self, session_factory, service_name: str = "docpay", max_attempts: int | None = None) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.max_attempts = max_attempts or settings.reconcile_max_attempts

    def _resolve(self, db, ref: OrderRef) -> Order | None:
        if ref.provider_payment_id is not None:
            return find_by_payment_id(db, ref.provider_payment_id)
        if ref.order_id is not None:
            return find_by_id(db, ref.order_id)
        return None

    async def reconcile(
        self,
        ref: OrderRef,
        provider_status: str | None,
        source: ReconcileSource,
        event_metadata: dict[str, Any] | None = None,
    ) -> ReconcileResult:
        """Reconcile one order against an observed provider status.

        Raises `OrderNotFound` when the reference matches nothing. A lost
        compare-and-swap re-runs the whole evaluation from a fresh read, so a
        concurrent duplicate ends up as `unchanged` instead of a second write.
        """

        with reconcile_span(source, ref.describe(), provider_status) as span:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    result = self._reconcile_once(ref, provider_status, source, event_metadata or {})
                except ConcurrencyConflict as exc:
                    reconciliation_conflicts_total.labels(service=self.service_name, source=source).inc()
                    logger.warning(
                        "reconcile_conflict ref=%s source=%s attempt=%s error=%s",
                        ref.describe(),
                        source,
                        attempt,
                        exc,
                    )
                    if attempt == self.max_attempts:
                        raise
                    continue
                span.set_attribute("docpay.outcome", str(result.outcome))
                span.set_attribute("docpay.attempts", attempt)
                reconciliations_total.labels(
                    service=self.service_name, source=source, outcome=result.outcome
                ).inc()
                return result
            raise ConcurrencyConflict(f"reconcile gave up for {ref.describe()}")

    def _reconcile_once(
        self,
        ref: OrderRef,
        provider_status: str | None,
        source: ReconcileSource,
        event_metadata: dict[str, Any],
    ) -> ReconcileResult:
        with self.session_factory() as db:
            order = self._resolve(db, ref)
            if order is None:
                logger.warning("order_not_found ref=%s source=%s", ref.describe(), source)
                raise OrderNotFound(ref.describe())
            with log_context(order_id=order.id, payment_id=order.provider_payment_id, source=source):
                return self._evaluate(db, order, provider_status, source, event_metadata)

    def _evaluate(
        self,
        db,
        order: Order,
        provider_status: str | None,
        source: ReconcileSource,
        event_metadata: dict[str, Any],
    ) -> ReconcileResult:
        mapping = map_provider_status(provider_status)
        if mapping is None:
            logger.warning(
                "unmapped_provider_status order=%s provider_status=%s source=%s",
                order.order_number,
                provider_status,
                source,
            )
            return ReconcileResult(False, order, ReconcileOutcome.UNMAPPED, detail=str(provider_status))

        target_payment = mapping.payment_status
        target_status = mapping.order_status or order.status
        unchanged = target_payment == order.payment_status and target_status == order.status

        if is_terminal(order.status):
            if unchanged:
                return ReconcileResult(False, order, ReconcileOutcome.UNCHANGED)
            terminal_anomalies_total.labels(service=self.service_name, source=source).inc()
            logger.warning(
                "terminal_order_anomaly order=%s status=%s payment_status=%s provider_status=%s source=%s",
                order.order_number,
                order.status,
                order.payment_status,
                provider_status,
                source,
            )
            return ReconcileResult(False, order, ReconcileOutcome.TERMINAL, detail=order.status)

        if unchanged:
            logger.info("reconcile_no_change order=%s source=%s", order.order_number, source)
            return ReconcileResult(False, order, ReconcileOutcome.UNCHANGED)

        if target_payment != order.payment_status:
            try:
                validate_payment_transition(order.payment_status, target_payment)
            except InvalidTransition as exc:
                logger.info(
                    "stale_provider_status order=%s source=%s error=%s", order.order_number, source, exc
                )
                return ReconcileResult(False, order, ReconcileOutcome.STALE, detail=str(exc))

        if target_status != order.status:
            try:
                validate_transition(order.status, target_status)
            except InvalidTransition as exc:
                logger.warning(
                    "transition_rejected order=%s source=%s error=%s", order.order_number, source, exc
                )
                return ReconcileResult(False, order, ReconcileOutcome.REJECTED, detail=str(exc))

        now = datetime.now(timezone.utc)
        paid_at = order.paid_at
        if target_payment in PAID_PAYMENT_STATUSES and paid_at is None:
            paid_at = now
        previous_status = order.status
        previous_payment = order.payment_status
        trace = {
            "provider_status": provider_status,
            "previous_payment_status": previous_payment,
            "payment_status": str(target_payment),
            "processed_at": now.isoformat(),
            "event": event_metadata,
        }
        meta = merge_metadata(order.meta, {METADATA_KEYS[source]: trace})

        compare_and_swap(
            db,
            order,
            status=target_status,
            payment_status=target_payment,
            paid_at=paid_at,
            meta=meta,
        )
        add_history(
            db,
            order.id,
            previous_status,
            target_status,
            notes=f"{source}: payment {previous_payment} -> {target_payment} (provider {provider_status})",
            meta={
                "source": str(source),
                "provider_status": provider_status,
                "previous_payment_status": previous_payment,
                "payment_status": str(target_payment),
                "event": event_metadata,
            },
        )
        add_audit(
            db,
            "PAYMENT_STATUS_RECONCILED",
            "ORDER",
            resource_id=order.id,
            meta={
                "source": str(source),
                "order_number": order.order_number,
                "provider_payment_id": order.provider_payment_id,
                "provider_status": provider_status,
                "previous_status": previous_status,
                "new_status": str(target_status),
                "previous_payment_status": previous_payment,
                "new_payment_status": str(target_payment),
            },
        )
        db.commit()
        logger.info(
            "reconcile_applied order=%s source=%s status=%s->%s payment_status=%s->%s",
            order.order_number,
            source,
            previous_status,
            target_status,
            previous_payment,
            target_payment,
        )
        return ReconcileResult(True, order, ReconcileOutcome.APPLIED)
