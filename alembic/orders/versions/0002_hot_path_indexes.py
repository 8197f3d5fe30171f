"""add hot-path indexes for the payment sweep and order history

Revision ID: 0002_hot_path_indexes
Revises: 0001_orders
Create Date: 2026-10-14
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_orders"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Sweep query: payment_status IN (...) AND created_at >= :since.
    op.create_index(
        "ix_orders_payment_status_created_at",
        "orders",
        ["payment_status", "created_at"],
    )
    op.create_index(
        "ix_order_history_order_id_changed_at",
        "order_history",
        ["order_id", "changed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_order_history_order_id_changed_at", table_name="order_history")
    op.drop_index("ix_orders_payment_status_created_at", table_name="orders")
