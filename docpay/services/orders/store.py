"""Order Store access helpers.

Model-level functions operating on a caller-owned session, so that the writer,
the admin path and order creation can compose them inside one transaction.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from docpay.common.errors import ConcurrencyConflict
from docpay.common.state_machine import SETTLING_PAYMENT_STATUSES
from docpay.services.orders.models import AuditLog, Order, OrderHistory


def find_by_id(db, order_id: str) -> Order | None:
    return db.get(Order, order_id)


def find_by_payment_id(db, provider_payment_id: str) -> Order | None:
    return db.execute(
        select(Order).where(Order.provider_payment_id == provider_payment_id)
    ).scalar_one_or_none()


def order_number_taken(db, order_number: str) -> bool:
    return (
        db.execute(select(Order.id).where(Order.order_number == order_number)).scalar_one_or_none()
        is not None
    )


def list_unsettled(db, created_since: datetime, limit: int | None = None) -> list[Order]:
    """Orders with a provider payment still settling, oldest first."""

    query = (
        select(Order)
        .where(
            Order.provider_payment_id.is_not(None),
            Order.payment_status.in_([str(s) for s in SETTLING_PAYMENT_STATUSES]),
            Order.created_at >= created_since,
        )
        .order_by(Order.created_at.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return list(db.execute(query).scalars().all())


def list_for_user(db, user_id: str, limit: int = 50) -> list[Order]:
    return list(
        db.execute(
            select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc()).limit(limit)
        )
        .scalars()
        .all()
    )


def list_history(db, order_id: str) -> list[OrderHistory]:
    return list(
        db.execute(
            select(OrderHistory).where(OrderHistory.order_id == order_id).order_by(OrderHistory.changed_at.asc())
        )
        .scalars()
        .all()
    )


def compare_and_swap(
    db,
    order: Order,
    *,
    status: str,
    payment_status: str,
    paid_at: datetime | None,
    meta: dict[str, Any],
) -> None:
    """Write new state only if the row still holds what `order` was read with.

    The guard covers `(id, status, payment_status, state_version)`; a concurrent
    writer that committed first makes this raise `ConcurrencyConflict`.
    """

    current_version = order.state_version
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == order.status,
            Order.payment_status == order.payment_status,
            Order.state_version == current_version,
        )
        .values(
            {
                Order.status: str(status),
                Order.payment_status: str(payment_status),
                Order.paid_at: paid_at,
                Order.meta: meta,
                Order.state_version: current_version + 1,
                Order.updated_at: now,
            }
        )
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(
            f"optimistic concurrency conflict for order {order.id} (expected version {current_version})"
        )

    # Mirror the written row without marking the instance dirty.
    for key, value in (
        ("status", str(status)),
        ("payment_status", str(payment_status)),
        ("paid_at", paid_at),
        ("meta", meta),
        ("state_version", current_version + 1),
        ("updated_at", now),
    ):
        set_committed_value(order, key, value)


def add_history(
    db,
    order_id: str,
    previous_status: str | None,
    new_status: str,
    notes: str,
    meta: dict[str, Any],
    changed_by_id: str | None = None,
) -> OrderHistory:
    row = OrderHistory(
        order_id=order_id,
        previous_status=str(previous_status) if previous_status is not None else None,
        new_status=str(new_status),
        changed_by_id=changed_by_id,
        notes=notes,
        meta=meta,
    )
    db.add(row)
    return row


def add_audit(
    db,
    action: str,
    resource: str,
    resource_id: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    meta: dict[str, Any] | None = None,
) -> AuditLog:
    row = AuditLog(
        action=action,
        resource=resource,
        resource_id=resource_id,
        user_id=user_id,
        ip_address=ip_address,
        meta=meta or {},
    )
    db.add(row)
    return row


class AuditTrail:
    """Writes standalone audit rows in their own transaction.

    Used by callers that have no order transaction open, such as the webhook
    receiver recording a rejected delivery.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def record(
        self,
        action: str,
        resource: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        with self.session_factory() as db:
            add_audit(db, action, resource, resource_id, user_id, ip_address, meta)
            db.commit()
