"""Initial tables for rental order sync"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _logistics_columns() -> list[sa.Column]:
    return [
        sa.Column("logistics_company", sa.String(), nullable=True),
        sa.Column("tracking_number", sa.String(), nullable=True),
        sa.Column("latest_logistics_info", sa.Text(), nullable=True),
        sa.Column("return_logistics_company", sa.String(), nullable=True),
        sa.Column("return_tracking_number", sa.String(), nullable=True),
        sa.Column("return_latest_logistics_info", sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "app_config",
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_table(
        "online_orders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_no", sa.String(length=64), nullable=False),
        sa.Column("site_id", sa.String(length=64), nullable=True),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(length=32), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("product_id", sa.String(length=64), nullable=True),
        sa.Column("product_name", sa.String(), nullable=True),
        sa.Column("variant_name", sa.String(), nullable=True),
        sa.Column("item_title", sa.String(), nullable=True),
        sa.Column("item_sku", sa.String(), nullable=True),
        sa.Column("merchant_name", sa.String(), nullable=True),
        sa.Column("promotion_channel", sa.String(), nullable=True),
        sa.Column("rent_start_date", sa.Date(), nullable=True),
        sa.Column("return_deadline", sa.Date(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("rent_price", sa.Float(), nullable=False),
        sa.Column("insurance_price", sa.Float(), nullable=False),
        sa.Column("deposit", sa.Float(), nullable=False),
        sa.Column("total_amount", sa.Float(), nullable=False),
        *_logistics_columns(),
        sa.Column("creator_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_no", name="uq_online_orders_order_no"),
    )
    op.create_index("ix_online_orders_site_id", "online_orders", ["site_id"])
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("order_no", sa.String(length=64), nullable=False),
        sa.Column("creator_id", sa.String(length=64), nullable=True),
        sa.Column("mini_program_order_no", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        *_logistics_columns(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_no"),
    )
    op.create_index("ix_orders_mini_program_order_no", "orders", ["mini_program_order_no"])
    op.create_table(
        "products",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("variants", sa.JSON(), nullable=True),
        sa.Column("match_keywords", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("products")
    op.drop_index("ix_orders_mini_program_order_no", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_online_orders_site_id", table_name="online_orders")
    op.drop_table("online_orders")
    op.drop_table("app_config")
