"""create payment attempt, order, user and product tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


ORDER_STATUSES = ("pending", "paid", "confirmed", "shipped", "delivered", "cancelled", "rto_initiated", "rto_delivered")
ATTEMPT_STATUSES = ("pending", "processing", "completed")
PAYMENT_TYPES = ("advance", "full")


def _money(name, **kw):
    return sa.Column(name, sa.Numeric(12, 2), **kw)


def upgrade() -> None:
    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("gateway_order_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("cart_payload", sa.JSON(), nullable=False),
        sa.Column("payment_breakdown", sa.JSON(), nullable=False),
        sa.Column("shipping_address", sa.JSON(), nullable=False),
        sa.Column("status", sa.Enum(*ATTEMPT_STATUSES, name="attemptstatus", native_enum=False, length=32), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_attempts_gateway_order_id", "payment_attempts", ["gateway_order_id"], unique=True)
    op.create_index("ix_payment_attempts_user_id", "payment_attempts", ["user_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("retailer_id", sa.String(), nullable=False),
        sa.Column("manufacturer_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        _money("unit_price", nullable=False),
        _money("total_amount", nullable=False),
        _money("tax_amount", nullable=False),
        sa.Column("tax_rate_snapshot", sa.Float(), nullable=True),
        _money("manufacturer_payout", nullable=False),
        _money("platform_profit", nullable=False),
        _money("shipping_cost", nullable=False),
        sa.Column("shipping_address", sa.String(), nullable=True),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("payment_type", sa.Enum(*PAYMENT_TYPES, name="paymenttype", native_enum=False, length=32), nullable=False),
        _money("paid_amount", nullable=False),
        _money("pending_amount", nullable=False),
        sa.Column("recovered", sa.Boolean(), nullable=False),
        sa.Column("attribution", sa.JSON(), nullable=True),
        sa.Column("status", sa.Enum(*ORDER_STATUSES, name="orderstatus", native_enum=False, length=32), nullable=False),
        sa.Column("shipment_id", sa.String(), nullable=True),
        sa.Column("awb_code", sa.String(), nullable=True),
        sa.Column("courier_name", sa.String(), nullable=True),
        sa.Column("courier_company_id", sa.Integer(), nullable=True),
        sa.Column("shipping_label_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    for column in ("order_number", "retailer_id", "manufacturer_id", "payment_id", "shipment_id", "awb_code"):
        op.create_index(f"ix_orders_{column}", "orders", [column])

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("business_name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=True),
        sa.Column("pincode", sa.String(), nullable=True),
        sa.Column("shiprocket_pickup_code", sa.String(), nullable=True),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("moq", sa.Integer(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=True),
        sa.Column("length", sa.Float(), nullable=True),
        sa.Column("breadth", sa.Float(), nullable=True),
        sa.Column("height", sa.Float(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("products")
    op.drop_table("users")
    for column in ("order_number", "retailer_id", "manufacturer_id", "payment_id", "shipment_id", "awb_code"):
        op.drop_index(f"ix_orders_{column}", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_payment_attempts_user_id", table_name="payment_attempts")
    op.drop_index("ix_payment_attempts_gateway_order_id", table_name="payment_attempts")
    op.drop_table("payment_attempts")
