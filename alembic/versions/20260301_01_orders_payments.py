"""orders and payments

Revision ID: 20260301_01
Revises:
Create Date: 2026-03-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20260301_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _column_exists(inspector: sa.Inspector, table_name: str, column_name: str) -> bool:
    return any(column["name"] == column_name for column in inspector.get_columns(table_name))


def _ensure_orders(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_number", sa.String(length=64), nullable=False),
            sa.Column("lane_id", sa.String(length=32), nullable=False),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="OPEN"),
            sa.Column("created_by", sa.String(length=255), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index("ix_orders_id", "orders", ["id"], unique=False)
        op.create_index("ix_orders_invoice_number", "orders", ["invoice_number"], unique=True)
        op.create_index("ix_orders_lane_id", "orders", ["lane_id"], unique=False)
        op.create_index("ix_orders_status", "orders", ["status"], unique=False)
        op.create_index("ix_orders_created_at", "orders", ["created_at"], unique=False)
        return

    # Orders created before notes/updated_at existed.
    if not _column_exists(inspector, "orders", "notes"):
        op.add_column("orders", sa.Column("notes", sa.Text(), nullable=True))
    if not _column_exists(inspector, "orders", "updated_at"):
        op.add_column(
            "orders",
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )


def _ensure_payments(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "payments"):
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("provider", sa.String(length=64), nullable=False, server_default="AUTHORIZE_NET"),
            sa.Column("transaction_id", sa.String(length=255), nullable=False),
            sa.Column("auth_code", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="AUTHORIZED"),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False),
            sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("raw_response", sa.JSON(), nullable=True),
            sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("provider", "transaction_id", name="uq_payments_provider_transaction"),
        )
        op.create_index("ix_payments_id", "payments", ["id"], unique=False)
        op.create_index("ix_payments_order_id", "payments", ["order_id"], unique=False)
        op.create_index("ix_payments_transaction_id", "payments", ["transaction_id"], unique=False)
        op.create_index("ix_payments_status", "payments", ["status"], unique=False)
        return

    if not _column_exists(inspector, "payments", "refunded_amount"):
        op.add_column(
            "payments",
            sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        )


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    _ensure_orders(inspector)
    _ensure_payments(sa.inspect(bind))


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("orders")
