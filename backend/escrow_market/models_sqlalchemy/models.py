from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, Enum, Boolean, Index,
    Numeric, CHAR, JSON, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
import enum
import uuid

from . import Base


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests / local dev).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, enum.Enum):
    customer = "customer"
    seller = "seller"
    admin = "admin"


class OrderStatus(str, enum.Enum):
    pending_payment = "pending_payment"
    payment_confirmed = "payment_confirmed"
    processing = "processing"
    shipped = "shipped"
    out_for_delivery = "out_for_delivery"
    delivered = "delivered"
    cancelled = "cancelled"
    refunded = "refunded"


class EscrowStatus(str, enum.Enum):
    pending = "pending"
    held = "held"
    released_to_seller = "released_to_seller"
    refunded_to_customer = "refunded_to_customer"


class PaymentMethod(str, enum.Enum):
    stripe = "stripe"
    sslcommerz = "sslcommerz"
    bkash = "bkash"
    nagad = "nagad"
    rocket = "rocket"
    bank_transfer = "bank_transfer"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


class DisputeStatus(str, enum.Enum):
    open = "open"
    under_review = "under_review"
    resolved = "resolved"
    closed = "closed"


class NoteAuthor(str, enum.Enum):
    customer = "customer"
    seller = "seller"
    admin = "admin"
    system = "system"


class VerificationStatus(str, enum.Enum):
    pending = "pending"
    under_review = "under_review"
    verified = "verified"
    rejected = "rejected"


class BusinessType(str, enum.Enum):
    brand = "brand"
    celebrity = "celebrity"
    established_business = "established_business"
    verified_retailer = "verified_retailer"


class DocumentType(str, enum.Enum):
    trade_license = "trade_license"
    tax_certificate = "tax_certificate"
    identity_proof = "identity_proof"
    celebrity_verification = "celebrity_verification"
    brand_authorization = "brand_authorization"


class DocumentStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class TrustBadge(str, enum.Enum):
    verified_brand = "verified_brand"
    celebrity_endorsed = "celebrity_endorsed"
    top_rated = "top_rated"
    fast_shipping = "fast_shipping"
    authentic_guarantee = "authentic_guarantee"


class ProductStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    out_of_stock = "out_of_stock"
    discontinued = "discontinued"


class ProductCategory(str, enum.Enum):
    electronics = "electronics"
    fashion = "fashion"
    beauty = "beauty"
    home_garden = "home_garden"
    sports = "sports"
    books = "books"
    health = "health"
    jewelry = "jewelry"
    automotive = "automotive"
    celebrity_merchandise = "celebrity_merchandise"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.customer)
    # Soft-activation flag; inactive users cannot access the application.
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    trust_score = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    seller_profile = relationship("Seller", back_populates="user", uselist=False)

    __table_args__ = (
        Index('idx_user_role', 'role'),
    )


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, unique=True)

    business_name = Column(String(200), nullable=False)
    business_type = Column(Enum(BusinessType), nullable=False)
    description = Column(Text, nullable=False)
    # Address, website, social links, established year ... as submitted.
    business_info = Column(JSONType, nullable=True)

    verification_status = Column(Enum(VerificationStatus), nullable=False, default=VerificationStatus.pending)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(String(36), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    admin_notes = Column(JSONType, nullable=True)

    trust_badges = Column(JSONType, nullable=True)
    rating_average = Column(Numeric(3, 2), nullable=False, default=0)
    rating_count = Column(Integer, nullable=False, default=0)
    total_sales = Column(Numeric(14, 2), nullable=False, default=0)
    total_orders = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="seller_profile")
    documents = relationship(
        "SellerDocument",
        back_populates="seller",
        cascade="all, delete-orphan",
        order_by="SellerDocument.uploaded_at",
    )
    products = relationship("Product", back_populates="seller")

    __table_args__ = (
        Index('idx_seller_verification_active', 'verification_status', 'is_active'),
        Index('idx_seller_business_type', 'business_type', 'verification_status'),
    )

    @property
    def can_transact(self) -> bool:
        return self.verification_status == VerificationStatus.verified and bool(self.is_active)


class SellerDocument(Base):
    __tablename__ = "seller_documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    seller_id = Column(String(36), ForeignKey('sellers.id', ondelete='CASCADE'), nullable=False, index=True)
    doc_type = Column(Enum(DocumentType), nullable=False)
    url = Column(Text, nullable=False)
    status = Column(Enum(DocumentStatus), nullable=False, default=DocumentStatus.pending)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_by = Column(String(36), nullable=True)

    seller = relationship("Seller", back_populates="documents")


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    seller_id = Column(String(36), ForeignKey('sellers.id'), nullable=False, index=True)

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(Enum(ProductCategory), nullable=False)
    subcategory = Column(String(100), nullable=True)
    sku = Column(String(100), unique=True, nullable=False, index=True)
    image_url = Column(Text, nullable=True)

    price = Column(Numeric(14, 2), nullable=False)
    currency = Column(CHAR(3), nullable=False, default="BDT")
    # Only mutated through the inventory ledger's guarded updates.
    stock = Column(Integer, nullable=False, default=0)

    status = Column(Enum(ProductStatus), nullable=False, default=ProductStatus.active)
    is_verified = Column(Boolean, nullable=False, default=False)
    total_sales = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    seller = relationship("Seller", back_populates="products")

    __table_args__ = (
        CheckConstraint('stock >= 0', name='ck_product_stock_non_negative'),
        CheckConstraint('price >= 0', name='ck_product_price_non_negative'),
        Index('idx_product_seller_status', 'seller_id', 'status'),
    )


class Order(Base):
    """An order plus its embedded payment, shipping, escrow, dispute and refund records.

    The embedded groups live as prefixed columns on the same row so that a
    single guarded UPDATE can move escrow and its companion fields together.
    """

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(20), unique=True, nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey('sellers.id'), nullable=False, index=True)

    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.pending_payment)

    # Pricing snapshot; total is always subtotal + shipping + tax - discount.
    subtotal = Column(Numeric(14, 2), nullable=False)
    shipping_cost = Column(Numeric(14, 2), nullable=False, default=0)
    tax = Column(Numeric(14, 2), nullable=False, default=0)
    discount = Column(Numeric(14, 2), nullable=False, default=0)
    total = Column(Numeric(14, 2), nullable=False)
    currency = Column(CHAR(3), nullable=False, default="BDT")

    shipping_address = Column(JSONType, nullable=False)

    # Payment
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.pending)
    payment_transaction_id = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_refund_id = Column(String(100), nullable=True)
    payment_refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Shipping / tracking
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(100), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    delivery_notes = Column(Text, nullable=True)

    # Escrow
    escrow_status = Column(Enum(EscrowStatus), nullable=False, default=EscrowStatus.pending)
    escrow_hold_until = Column(DateTime(timezone=True), nullable=True)
    escrow_release_requested = Column(Boolean, nullable=False, default=False)
    escrow_release_requested_at = Column(DateTime(timezone=True), nullable=True)
    escrow_customer_approval = Column(Boolean, nullable=False, default=False)
    escrow_customer_approval_at = Column(DateTime(timezone=True), nullable=True)
    escrow_auto_release_at = Column(DateTime(timezone=True), nullable=True)
    escrow_released_at = Column(DateTime(timezone=True), nullable=True)
    # User id of the releasing actor, or "system" for the auto-release sweep.
    escrow_released_by = Column(String(36), nullable=True)

    # Dispute
    dispute_is_disputed = Column(Boolean, nullable=False, default=False)
    dispute_reason = Column(String(200), nullable=True)
    dispute_description = Column(Text, nullable=True)
    dispute_evidence = Column(JSONType, nullable=True)
    dispute_status = Column(Enum(DisputeStatus), nullable=True)
    dispute_opened_at = Column(DateTime(timezone=True), nullable=True)
    dispute_resolved_by = Column(String(36), nullable=True)
    dispute_resolution = Column(Text, nullable=True)
    dispute_resolved_at = Column(DateTime(timezone=True), nullable=True)

    # Refund
    refund_is_refunded = Column(Boolean, nullable=False, default=False)
    refund_reason = Column(Text, nullable=True)
    refund_amount = Column(Numeric(14, 2), nullable=True)
    refund_requested_at = Column(DateTime(timezone=True), nullable=True)
    refund_approved_at = Column(DateTime(timezone=True), nullable=True)
    refund_processed_at = Column(DateTime(timezone=True), nullable=True)
    refund_method = Column(String(50), nullable=True)
    refund_admin_notes = Column(Text, nullable=True)

    # Customer feedback
    feedback_rating = Column(Integer, nullable=True)
    feedback_review = Column(Text, nullable=True)
    feedback_reviewed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )
    notes = relationship(
        "OrderNote",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderNote.id",
    )
    seller = relationship("Seller")
    customer = relationship("User")

    __table_args__ = (
        Index('idx_order_customer_created', 'customer_id', 'created_at'),
        Index('idx_order_seller_created', 'seller_id', 'created_at'),
        Index('idx_order_status', 'status'),
        Index('idx_order_escrow_status', 'escrow_status'),
        Index('idx_order_escrow_auto_release', 'escrow_status', 'escrow_auto_release_at'),
        Index('idx_order_payment_status', 'payment_status'),
        Index('idx_order_dispute_status', 'dispute_status'),
    )

    @property
    def dispute_in_progress(self) -> bool:
        return self.dispute_status in (DisputeStatus.open, DisputeStatus.under_review)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), ForeignKey('products.id'), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(14, 2), nullable=False)

    # Display snapshot captured at order time; later catalog edits do not
    # touch historical orders.
    product_name = Column(String(200), nullable=False)
    product_image = Column(Text, nullable=True)
    product_sku = Column(String(100), nullable=True)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='ck_order_item_quantity_positive'),
    )


class OrderNote(Base):
    """Append-only order log; each entry is tagged with the author's role."""

    __tablename__ = "order_notes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    author_role = Column(Enum(NoteAuthor), nullable=False)
    message = Column(Text, nullable=False)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    order = relationship("Order", back_populates="notes")


class BackgroundWorker(Base):
    """Heartbeat + status row for long-running background workers."""

    __tablename__ = "background_workers"

    id = Column(String(36), primary_key=True, default=_uuid)

    worker_name = Column(String(128), nullable=False, unique=True, index=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_processed = Column(Integer, nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, server_default="0", default=0)
    runs_error_in_row = Column(Integer, nullable=False, server_default="0", default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
