"""Platform statistics for the admin dashboard.

Counts are read straight from the order, escrow and verification state the
services maintain; nothing here is cached.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from escrow_market.config import settings
from escrow_market.models_sqlalchemy.models import (
    BusinessType,
    EscrowStatus,
    Order,
    OrderStatus,
    Product,
    ProductStatus,
    Seller,
    User,
    UserRole,
    VerificationStatus,
)
from escrow_market.services import order_records
from escrow_market.utils.clock import utc_now


RECENT_DAYS = 30


def _rate(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def _amount(value: Optional[Any]) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"))) if value is not None else 0.0


def platform_statistics(db: Session, admin: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    order_records.require_admin(admin)
    now = now or utc_now()
    since = now - timedelta(days=RECENT_DAYS)

    def count(model, *criteria) -> int:
        return db.query(func.count(model.id)).filter(*criteria).scalar() or 0

    verified_sellers = count(Seller, Seller.verification_status == VerificationStatus.verified, Seller.is_active.is_(True))
    pending_sellers = count(Seller, Seller.verification_status == VerificationStatus.pending)
    total_orders = count(Order)
    refunded_orders = count(Order, Order.refund_is_refunded.is_(True))

    average_price = (
        db.query(func.avg(Product.price)).filter(Product.status == ProductStatus.active).scalar()
    )
    revenue_total, revenue_average = (
        db.query(func.sum(Order.total), func.avg(Order.total))
        .filter(Order.status == OrderStatus.delivered)
        .one()
    )

    return {
        "users": {
            "totalCustomers": count(User, User.role == UserRole.customer, User.is_active.is_(True)),
            "totalSellers": count(User, User.role == UserRole.seller, User.is_active.is_(True)),
            "totalAdmins": count(User, User.role == UserRole.admin),
            "newUsersThisMonth": count(User, User.created_at >= since),
        },
        "sellers": {
            "totalVerified": verified_sellers,
            "pendingVerification": pending_sellers,
            "verifiedBrands": count(
                Seller,
                Seller.business_type == BusinessType.brand,
                Seller.verification_status == VerificationStatus.verified,
            ),
            "celebrities": count(
                Seller,
                Seller.business_type == BusinessType.celebrity,
                Seller.verification_status == VerificationStatus.verified,
            ),
        },
        "products": {
            "totalActive": count(Product, Product.status == ProductStatus.active),
            "totalVerified": count(Product, Product.is_verified.is_(True), Product.status == ProductStatus.active),
            "newThisMonth": count(Product, Product.created_at >= since),
            "averagePrice": _amount(average_price),
        },
        "orders": {
            "total": total_orders,
            "delivered": count(Order, Order.status == OrderStatus.delivered),
            "escrowHeld": count(Order, Order.escrow_status == EscrowStatus.held),
            "refunded": refunded_orders,
        },
        "revenue": {
            "total": _amount(revenue_total),
            "averageOrderValue": _amount(revenue_average),
            "currency": settings.DEFAULT_CURRENCY,
        },
        "trustMetrics": {
            "verificationRate": _rate(verified_sellers, verified_sellers + pending_sellers),
            # Every order is created with an escrow record.
            "escrowProtectionRate": 100,
            "refundRate": _rate(refunded_orders, total_orders),
        },
    }
