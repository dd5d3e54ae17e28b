"""Per-product stock reservation.

Both operations are single conditional UPDATE statements so concurrent
reservations for the same product serialize in the database: two orders that
together exceed the available stock cannot both succeed.

Neither function commits; they join the caller's transaction so order
creation can reserve several products all-or-nothing.
"""
from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from escrow_market.models_sqlalchemy.models import Product, ProductStatus
from escrow_market.services.errors import InsufficientStock, NotFound, ValidationFailed
from escrow_market.utils.logger import logger


def _current_stock(db: Session, product_id: str) -> int | None:
    return db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one_or_none()


def reserve(db: Session, product_id: str, quantity: int) -> int:
    """Atomically take ``quantity`` units of ``product_id`` out of stock.

    Returns the remaining stock. Raises ``InsufficientStock`` when the guarded
    decrement matches no row because stock is too low, ``NotFound`` when the
    product does not exist.
    """
    if quantity < 1:
        raise ValidationFailed.for_field("quantity", "Quantity must be at least 1")

    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        available = _current_stock(db, product_id)
        if available is None:
            raise NotFound(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
        logger.warning(
            "Stock reservation rejected: product=%s requested=%s available=%s",
            product_id, quantity, available,
        )
        raise InsufficientStock(
            f"Insufficient stock for product {product_id}. Available: {available}",
            product_id=product_id,
            available=available,
        )

    remaining = _current_stock(db, product_id)
    if remaining == 0:
        db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock == 0, Product.status == ProductStatus.active)
            .values(status=ProductStatus.out_of_stock)
            .execution_options(synchronize_session=False)
        )
    logger.info("Reserved %s unit(s) of product=%s, remaining=%s", quantity, product_id, remaining)
    return remaining


def release(db: Session, product_id: str, quantity: int) -> int:
    """Return ``quantity`` units to stock (order cancellation). Returns the new stock."""
    if quantity < 1:
        raise ValidationFailed.for_field("quantity", "Quantity must be at least 1")

    result = db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")

    # A product that ran dry is sellable again; deactivated ones stay as they are.
    db.execute(
        update(Product)
        .where(Product.id == product_id, Product.status == ProductStatus.out_of_stock)
        .values(status=ProductStatus.active)
        .execution_options(synchronize_session=False)
    )
    stock = _current_stock(db, product_id)
    logger.info("Released %s unit(s) of product=%s, stock=%s", quantity, product_id, stock)
    return stock
