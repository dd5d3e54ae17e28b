"""Initial escrow marketplace schema

Revision ID: escrow_initial_20261016
Revises:
Create Date: 2026-10-16

Creates users, sellers and their verification documents, the product
catalog, orders with their embedded payment/shipping/escrow/dispute/refund
columns, order items and notes, and the background worker heartbeat table.
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "escrow_initial_20261016"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

user_role = sa.Enum("customer", "seller", "admin", name="userrole")
order_status = sa.Enum(
    "pending_payment", "payment_confirmed", "processing", "shipped",
    "out_for_delivery", "delivered", "cancelled", "refunded",
    name="orderstatus",
)
escrow_status = sa.Enum(
    "pending", "held", "released_to_seller", "refunded_to_customer", name="escrowstatus"
)
payment_method = sa.Enum(
    "stripe", "sslcommerz", "bkash", "nagad", "rocket", "bank_transfer", name="paymentmethod"
)
payment_status = sa.Enum("pending", "completed", "failed", "refunded", name="paymentstatus")
dispute_status = sa.Enum("open", "under_review", "resolved", "closed", name="disputestatus")
note_author = sa.Enum("customer", "seller", "admin", "system", name="noteauthor")
verification_status = sa.Enum(
    "pending", "under_review", "verified", "rejected", name="verificationstatus"
)
business_type = sa.Enum(
    "brand", "celebrity", "established_business", "verified_retailer", name="businesstype"
)
document_type = sa.Enum(
    "trade_license", "tax_certificate", "identity_proof",
    "celebrity_verification", "brand_authorization",
    name="documenttype",
)
document_status = sa.Enum("pending", "approved", "rejected", name="documentstatus")
product_status = sa.Enum("active", "inactive", "out_of_stock", "discontinued", name="productstatus")
product_category = sa.Enum(
    "electronics", "fashion", "beauty", "home_garden", "sports", "books",
    "health", "jewelry", "automotive", "celebrity_merchandise",
    name="productcategory",
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("role", user_role, nullable=False, server_default="customer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trust_score", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("idx_user_role", "users", ["role"])

    op.create_table(
        "sellers",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("business_name", sa.String(length=200), nullable=False),
        sa.Column("business_type", business_type, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("business_info", JSONType, nullable=True),
        sa.Column("verification_status", verification_status, nullable=False, server_default="pending"),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by", sa.String(length=36), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("admin_notes", JSONType, nullable=True),
        sa.Column("trust_badges", JSONType, nullable=True),
        sa.Column("rating_average", sa.Numeric(3, 2), nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_sales", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("idx_seller_verification_active", "sellers", ["verification_status", "is_active"])
    op.create_index("idx_seller_business_type", "sellers", ["business_type", "verification_status"])

    op.create_table(
        "seller_documents",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "seller_id",
            sa.String(length=36),
            sa.ForeignKey("sellers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("doc_type", document_type, nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("status", document_status, nullable=False, server_default="pending"),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(length=36), nullable=True),
    )
    op.create_index("ix_seller_documents_seller_id", "seller_documents", ["seller_id"])

    op.create_table(
        "products",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("seller_id", sa.String(length=36), sa.ForeignKey("sellers.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", product_category, nullable=False),
        sa.Column("subcategory", sa.String(length=100), nullable=True),
        sa.Column("sku", sa.String(length=100), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.CHAR(length=3), nullable=False, server_default="BDT"),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", product_status, nullable=False, server_default="active"),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_sales", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
        sa.CheckConstraint("price >= 0", name="ck_product_price_non_negative"),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])
    op.create_index("ix_products_sku", "products", ["sku"], unique=True)
    op.create_index("idx_product_seller_status", "products", ["seller_id", "status"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("order_number", sa.String(length=20), nullable=False),
        sa.Column("customer_id", sa.String(length=36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.String(length=36), sa.ForeignKey("sellers.id"), nullable=False),
        sa.Column("status", order_status, nullable=False, server_default="pending_payment"),
        sa.Column("subtotal", sa.Numeric(14, 2), nullable=False),
        sa.Column("shipping_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("tax", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("discount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.CHAR(length=3), nullable=False, server_default="BDT"),
        sa.Column("shipping_address", JSONType, nullable=False),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("payment_status", payment_status, nullable=False, server_default="pending"),
        sa.Column("payment_transaction_id", sa.String(length=100), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_refund_id", sa.String(length=100), nullable=True),
        sa.Column("payment_refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tracking_number", sa.String(length=100), nullable=True),
        sa.Column("carrier", sa.String(length=100), nullable=True),
        sa.Column("shipped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_notes", sa.Text(), nullable=True),
        sa.Column("escrow_status", escrow_status, nullable=False, server_default="pending"),
        sa.Column("escrow_hold_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_release_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escrow_release_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_customer_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escrow_customer_approval_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_auto_release_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_released_by", sa.String(length=36), nullable=True),
        sa.Column("dispute_is_disputed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("dispute_reason", sa.String(length=200), nullable=True),
        sa.Column("dispute_description", sa.Text(), nullable=True),
        sa.Column("dispute_evidence", JSONType, nullable=True),
        sa.Column("dispute_status", dispute_status, nullable=True),
        sa.Column("dispute_opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispute_resolved_by", sa.String(length=36), nullable=True),
        sa.Column("dispute_resolution", sa.Text(), nullable=True),
        sa.Column("dispute_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_is_refunded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refund_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("refund_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_method", sa.String(length=50), nullable=True),
        sa.Column("refund_admin_notes", sa.Text(), nullable=True),
        sa.Column("feedback_rating", sa.Integer(), nullable=True),
        sa.Column("feedback_review", sa.Text(), nullable=True),
        sa.Column("feedback_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders_seller_id", "orders", ["seller_id"])
    op.create_index("idx_order_customer_created", "orders", ["customer_id", "created_at"])
    op.create_index("idx_order_seller_created", "orders", ["seller_id", "created_at"])
    op.create_index("idx_order_status", "orders", ["status"])
    op.create_index("idx_order_escrow_status", "orders", ["escrow_status"])
    op.create_index("idx_order_escrow_auto_release", "orders", ["escrow_status", "escrow_auto_release_at"])
    op.create_index("idx_order_payment_status", "orders", ["payment_status"])
    op.create_index("idx_order_dispute_status", "orders", ["dispute_status"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.String(length=36),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("product_name", sa.String(length=200), nullable=False),
        sa.Column("product_image", sa.Text(), nullable=True),
        sa.Column("product_sku", sa.String(length=100), nullable=True),
        sa.CheckConstraint("quantity >= 1", name="ck_order_item_quantity_positive"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_product_id", "order_items", ["product_id"])

    op.create_table(
        "order_notes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.String(length=36),
            sa.ForeignKey("orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("author_role", note_author, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_order_notes_order_id", "order_notes", ["order_id"])

    op.create_table(
        "background_workers",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("worker_name", sa.String(length=128), nullable=False),
        sa.Column("interval_seconds", sa.Integer(), nullable=True),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(length=32), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("last_processed", sa.Integer(), nullable=True),
        sa.Column("runs_ok_in_row", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("runs_error_in_row", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_background_workers_worker_name", "background_workers", ["worker_name"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_background_workers_worker_name", table_name="background_workers")
    op.drop_table("background_workers")
    op.drop_index("ix_order_notes_order_id", table_name="order_notes")
    op.drop_table("order_notes")
    op.drop_index("ix_order_items_product_id", table_name="order_items")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    for index_name in (
        "idx_order_dispute_status",
        "idx_order_payment_status",
        "idx_order_escrow_auto_release",
        "idx_order_escrow_status",
        "idx_order_status",
        "idx_order_seller_created",
        "idx_order_customer_created",
        "ix_orders_seller_id",
        "ix_orders_customer_id",
        "ix_orders_order_number",
    ):
        op.drop_index(index_name, table_name="orders")
    op.drop_table("orders")
    op.drop_index("idx_product_seller_status", table_name="products")
    op.drop_index("ix_products_sku", table_name="products")
    op.drop_index("ix_products_seller_id", table_name="products")
    op.drop_table("products")
    op.drop_index("ix_seller_documents_seller_id", table_name="seller_documents")
    op.drop_table("seller_documents")
    op.drop_index("idx_seller_business_type", table_name="sellers")
    op.drop_index("idx_seller_verification_active", table_name="sellers")
    op.drop_table("sellers")
    op.drop_index("idx_user_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (
        product_category, product_status, document_status, document_type,
        business_type, verification_status, note_author, dispute_status,
        payment_status, payment_method, escrow_status, order_status, user_role,
    ):
        enum_type.drop(bind, checkfirst=True)
