"""Manual status transitions performed by an administrator."""

from datetime import datetime, timezone

from docpay.common.errors import InvalidTransition, OrderNotFound
from docpay.common.logging import log_context, logger
from docpay.common.metadata import merge_metadata
from docpay.common.state_machine import (
    PAID_PAYMENT_STATUSES,
    parse_order_status,
    parse_payment_status,
    validate_payment_transition,
    validate_transition,
)
from docpay.services.orders.models import Order, OrderHistory
from docpay.services.orders.store import add_audit, add_history, compare_and_swap, find_by_id, list_history
from docpay.services.reconciliation.schemas import METADATA_KEYS, ReconcileSource


class AdminTransitionService:
    """Validates and writes admin-requested order status changes."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def transition(
        self,
        order_id: str,
        new_status: str,
        admin_id: str,
        notes: str | None = None,
        payment_status: str | None = None,
    ) -> Order:
        """Move an order to `new_status` on behalf of `admin_id`.

        `payment_status` is a deliberate human override (for example marking a
        manual refund); when given it must follow the payment progression and is
        audited separately from the order status change.
        """

        target = parse_order_status(new_status)
        override = parse_payment_status(payment_status) if payment_status else None

        with self.session_factory() as db:
            order = find_by_id(db, order_id)
            if order is None:
                raise OrderNotFound(f"order_id={order_id}")
            with log_context(
                order_id=order.id, payment_id=order.provider_payment_id, source=ReconcileSource.ADMIN
            ):
                return self._apply(db, order, target, override, admin_id, notes)

    def _apply(self, db, order: Order, target, override, admin_id: str, notes: str | None) -> Order:
        if order.status == target:
            raise InvalidTransition(order.status, target)
        validate_transition(order.status, target)

        previous_status = order.status
        previous_payment = order.payment_status
        new_payment = order.payment_status
        paid_at = order.paid_at
        now = datetime.now(timezone.utc)
        overridden = override is not None and override != order.payment_status
        if overridden:
            validate_payment_transition(order.payment_status, override)
            new_payment = override
            if override in PAID_PAYMENT_STATUSES and paid_at is None:
                paid_at = now

        trace = {
            "admin_id": admin_id,
            "previous_status": previous_status,
            "new_status": str(target),
            "manual_override": overridden,
            "changed_at": now.isoformat(),
        }
        compare_and_swap(
            db,
            order,
            status=target,
            payment_status=new_payment,
            paid_at=paid_at,
            meta=merge_metadata(order.meta, {METADATA_KEYS[ReconcileSource.ADMIN]: trace}),
        )
        add_history(
            db,
            order.id,
            previous_status,
            target,
            notes=notes or f"Status changed to {target}",
            meta={
                "source": str(ReconcileSource.ADMIN),
                "manual_override": overridden,
                "previous_payment_status": previous_payment,
                "payment_status": str(new_payment),
            },
            changed_by_id=admin_id,
        )
        add_audit(
            db,
            "ORDER_STATUS_CHANGED",
            "ORDER",
            resource_id=order.id,
            user_id=admin_id,
            meta={
                "order_number": order.order_number,
                "previous_status": previous_status,
                "new_status": str(target),
                "notes": notes,
            },
        )
        if overridden:
            add_audit(
                db,
                "PAYMENT_STATUS_MANUAL_OVERRIDE",
                "PAYMENT",
                resource_id=order.id,
                user_id=admin_id,
                meta={
                    "order_number": order.order_number,
                    "provider_payment_id": order.provider_payment_id,
                    "previous_payment_status": previous_payment,
                    "new_payment_status": str(new_payment),
                    "notes": notes,
                },
            )
        db.commit()
        logger.info(
            "admin_transition order=%s status=%s->%s admin=%s override=%s",
            order.order_number,
            previous_status,
            target,
            admin_id,
            overridden,
        )
        return order

    def history(self, order_id: str) -> list[OrderHistory]:
        with self.session_factory() as db:
            if find_by_id(db, order_id) is None:
                raise OrderNotFound(f"order_id={order_id}")
            return list_history(db, order_id)
