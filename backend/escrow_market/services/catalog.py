"""Product creation gate and status changes.

Products are never deleted; historical orders reference them by id.
Stock changes after creation go through ``inventory_ledger`` only.
"""
from __future__ import annotations

import random
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_market.config import settings
from escrow_market.models.product import ProductCreate
from escrow_market.models_sqlalchemy.models import Product, ProductStatus
from escrow_market.services import order_records
from escrow_market.services.errors import AccessDenied, NotFound, ValidationFailed
from escrow_market.services.verification_gate import require_verified_seller
from escrow_market.utils.clock import Clock, utc_now
from escrow_market.utils.logger import logger


def generate_sku(business_type: Any, clock: Clock = utc_now) -> str:
    millis = int(clock().timestamp() * 1000)
    prefix = getattr(business_type, "value", business_type).upper()
    return f"{prefix}-{str(millis)[-6:]}{random.randint(0, 999):03d}"


def _duplicate_sku(sku: str) -> ValidationFailed:
    return ValidationFailed(
        "Product with this SKU already exists",
        errors=[{"field": "sku", "message": "Product with this SKU already exists"}],
        code="DUPLICATE_SKU",
    )


def create_product(db: Session, seller_user: Any, data: Any, *, clock: Clock = utc_now) -> Product:
    seller = require_verified_seller(db, seller_user)

    if not isinstance(data, ProductCreate):
        try:
            data = ProductCreate.model_validate(data)
        except ValidationError as exc:
            raise ValidationFailed.from_pydantic(exc)

    sku = data.sku or generate_sku(seller.business_type, clock)
    if db.query(Product.id).filter(Product.sku == sku).first() is not None:
        raise _duplicate_sku(sku)

    try:
        product = Product(
            seller_id=seller.id,
            name=data.name,
            description=data.description,
            category=data.category,
            subcategory=data.subcategory,
            sku=sku,
            image_url=data.image_url,
            price=data.price,
            currency=settings.DEFAULT_CURRENCY,
            stock=data.stock,
            status=ProductStatus.active if data.stock > 0 else ProductStatus.out_of_stock,
            created_at=clock(),
        )
        db.add(product)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise _duplicate_sku(sku)
    except Exception:
        db.rollback()
        raise

    db.refresh(product)
    logger.info("Product %s (%s) created by seller=%s", product.id, product.sku, seller.id)
    return product


def set_product_status(db: Session, actor: Any, product_id: str, status: Any) -> Product:
    """Deactivate, discontinue or reactivate a product (its seller or an admin)."""
    try:
        target = ProductStatus(getattr(status, "value", status))
    except ValueError:
        raise ValidationFailed.for_field("status", "Invalid product status")

    product: Optional[Product] = db.get(Product, product_id)
    if product is None:
        raise NotFound("Product not found", code="PRODUCT_NOT_FOUND")

    if not order_records.is_admin(actor):
        seller = require_verified_seller(db, actor)
        if product.seller_id != seller.id:
            raise AccessDenied("Only the product's seller may change its status")

    if target == ProductStatus.active and product.stock == 0:
        target = ProductStatus.out_of_stock

    previous = product.status
    try:
        product.status = target
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(product)
    logger.info("Product %s status: %s -> %s", product.id, previous.value, product.status.value)
    return product
