import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Must be set before escrow_market.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["START_BACKGROUND_WORKERS"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from escrow_market.models_sqlalchemy import Base
from escrow_market.models_sqlalchemy.models import (
    BusinessType,
    OrderStatus,
    PaymentMethod,
    Product,
    ProductCategory,
    ProductStatus,
    Seller,
    User,
    UserRole,
    VerificationStatus,
)
from escrow_market.services import escrow, order_ledger


START = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

ADDRESS = {
    "name": "Rahim Uddin",
    "phone": "+8801700000000",
    "street": "12 Lake Road",
    "city": "Dhaka",
    "division": "Dhaka",
    "postalCode": "1205",
}


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


class Marketplace:
    """Builds users, sellers, products and orders in a given lifecycle state."""

    def __init__(self, db, clock):
        self.db = db
        self.clock = clock

    def user(self, role=UserRole.customer, name="Test User"):
        user = User(
            email=f"{uuid.uuid4().hex[:10]}@example.com",
            name=name,
            role=role,
            is_active=True,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def customer(self, name="Customer"):
        return self.user(UserRole.customer, name)

    def admin(self):
        return self.user(UserRole.admin, "Admin")

    def seller(self, status=VerificationStatus.verified, business_type=BusinessType.brand, is_active=True):
        user = self.user(UserRole.seller, "Seller")
        seller = Seller(
            user_id=user.id,
            business_name="Acme Originals",
            business_type=business_type,
            description="Authentic branded goods",
            business_info={},
            verification_status=status,
            is_active=is_active,
            trust_badges=[],
            admin_notes=[],
            rating_average=0,
            rating_count=0,
            total_sales=0,
            total_orders=0,
            created_at=self.clock(),
        )
        self.db.add(seller)
        self.db.commit()
        self.db.refresh(seller)
        return user, seller

    def product(self, seller, stock=5, price="500.00", status=ProductStatus.active):
        product = Product(
            seller_id=seller.id,
            name="Leather Wallet",
            description="Hand-stitched wallet",
            category=ProductCategory.fashion,
            sku=f"SKU-{uuid.uuid4().hex[:8]}",
            price=Decimal(price),
            currency="BDT",
            stock=stock,
            status=status,
        )
        self.db.add(product)
        self.db.commit()
        self.db.refresh(product)
        return product

    def order(self, buyer, product, quantity=1, payment_method=PaymentMethod.bkash):
        return order_ledger.create_order(
            self.db,
            buyer,
            [{"productId": product.id, "quantity": quantity}],
            ADDRESS,
            payment_method,
            clock=self.clock,
        )

    def paid_order(self, buyer, product, quantity=1):
        order = self.order(buyer, product, quantity)
        return escrow.confirm_payment(self.db, order.id, transaction_id="TXN-1", clock=self.clock)

    def shipped_order(self, buyer, product, seller_user, quantity=1):
        order = self.paid_order(buyer, product, quantity)
        return order_ledger.update_fulfillment(
            self.db,
            order.id,
            seller_user,
            OrderStatus.shipped,
            tracking_number="TRK123",
            carrier="Pathao",
            clock=self.clock,
        )

    def delivered_order(self, buyer, product, seller_user, quantity=1):
        order = self.shipped_order(buyer, product, seller_user, quantity)
        return escrow.confirm_delivery(self.db, order.id, seller_user, clock=self.clock)


@pytest.fixture()
def market(db, clock):
    return Marketplace(db, clock)


@pytest.fixture()
def setup(market):
    """A customer, an admin and one verified seller with a product in stock."""
    seller_user, seller = market.seller()
    product = market.product(seller)
    return {
        "customer": market.customer(),
        "admin": market.admin(),
        "seller_user": seller_user,
        "seller": seller,
        "product": product,
    }
