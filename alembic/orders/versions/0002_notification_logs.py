"""add notification delivery logs and ops listing index

Revision ID: 0002_notification_logs
Revises: 0001_orders
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_notification_logs"
down_revision = "0001_orders"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("template", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_logs_order_id", "notification_logs", ["order_id"])
    # Operator listing filters by status and sorts by recency.
    op.create_index("ix_orders_status_created_at", "orders", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_orders_status_created_at", table_name="orders")
    op.drop_index("ix_notification_logs_order_id", table_name="notification_logs")
    op.drop_table("notification_logs")
