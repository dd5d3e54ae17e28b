"""Order ledger: creation with inventory reservation, refunds, fulfillment,
cancellation and feedback.

Order creation and every later mutation run in one DB transaction each;
status moves are guarded updates (see ``order_records.guarded_update``).
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_market.config import REFUND_WINDOW_DAYS, settings
from escrow_market.models.order import (
    CHECKOUT_PAYMENT_METHODS,
    OrderItemIn,
    ShippingAddress,
)
from escrow_market.models_sqlalchemy.models import (
    EscrowStatus,
    NoteAuthor,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductStatus,
    Seller,
    UserRole,
)
from escrow_market.services import inventory_ledger, order_records
from escrow_market.services.errors import (
    AccessDenied,
    Conflict,
    InsufficientStock,
    InvalidStatus,
    ProductUnavailable,
    RefundNotAllowed,
    ValidationFailed,
)
from escrow_market.services.escrow import refund_escrow
from escrow_market.services.state_machines import (
    FULFILLMENT_STATUSES,
    PRE_DELIVERY_STATUSES,
    check_order_transition,
)
from escrow_market.utils.clock import Clock, ensure_utc, utc_now
from escrow_market.utils.logger import logger


CENT = Decimal("0.01")
ORDER_NUMBER_ATTEMPTS = 5

# Customers may withdraw an order only before it is handed to the carrier.
CUSTOMER_CANCELLABLE_STATUSES = frozenset({
    OrderStatus.pending_payment,
    OrderStatus.payment_confirmed,
    OrderStatus.processing,
})

# (subtotal, shipping address) -> tax
TaxCalculator = Callable[[Decimal, ShippingAddress], Decimal]


@dataclass(frozen=True)
class OrderPricing:
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    currency: str


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_pricing(
    subtotal: Decimal,
    shipping_address: ShippingAddress,
    *,
    tax_calculator: Optional[TaxCalculator] = None,
    discount: Decimal = Decimal("0"),
) -> OrderPricing:
    """Shipping is a flat fee waived strictly above the free-shipping threshold."""
    subtotal = _money(subtotal)
    if subtotal > _money(settings.FREE_SHIPPING_THRESHOLD):
        shipping_cost = _money(0)
    else:
        shipping_cost = _money(settings.FLAT_SHIPPING_FEE)
    tax = _money(tax_calculator(subtotal, shipping_address)) if tax_calculator else _money(0)
    discount = _money(discount)
    total = subtotal + shipping_cost + tax - discount
    return OrderPricing(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        tax=tax,
        discount=discount,
        total=total,
        currency=settings.DEFAULT_CURRENCY,
    )


def generate_order_number(db: Session, clock: Clock = utc_now) -> str:
    """``BD`` + last 6 digits of the epoch-ms timestamp + 3 random digits."""
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        millis = int(clock().timestamp() * 1000)
        candidate = f"BD{str(millis)[-6:]}{random.randint(0, 999):03d}"
        exists = db.query(Order.id).filter(Order.order_number == candidate).first()
        if exists is None:
            return candidate
        logger.warning("Order number collision on %s, retrying", candidate)
    raise Conflict("Could not allocate a unique order number", code="ORDER_NUMBER_CONFLICT")


def _is_sellable(product: Product) -> bool:
    # A product drained to zero by reservations is reported as out of stock
    # rather than unavailable; one marked out_of_stock by hand is unavailable.
    if product.status == ProductStatus.active:
        return True
    return product.status == ProductStatus.out_of_stock and product.stock == 0


def _parse_items(items: Iterable[Any]) -> List[OrderItemIn]:
    parsed: List[OrderItemIn] = []
    for index, item in enumerate(items or []):
        if isinstance(item, OrderItemIn):
            parsed.append(item)
            continue
        try:
            parsed.append(OrderItemIn.model_validate(item))
        except ValidationError as exc:
            raise ValidationFailed.from_pydantic(exc, prefix=f"items.{index}")
    if not parsed:
        raise ValidationFailed.for_field("items", "Order must contain at least one item")
    return parsed


def _parse_address(address: Any) -> ShippingAddress:
    if isinstance(address, ShippingAddress):
        return address
    try:
        return ShippingAddress.model_validate(address or {})
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc, prefix="shippingAddress")


def _parse_payment_method(value: Any) -> PaymentMethod:
    try:
        method = PaymentMethod(getattr(value, "value", value))
    except ValueError:
        method = None
    if method not in CHECKOUT_PAYMENT_METHODS:
        raise ValidationFailed.for_field("paymentMethod", "Invalid payment method")
    return method


def create_order(
    db: Session,
    buyer: Any,
    items: Iterable[Any],
    shipping_address: Any,
    payment_method: Any,
    *,
    clock: Clock = utc_now,
    tax_calculator: Optional[TaxCalculator] = None,
) -> Order:
    """Validate, price and persist an order, reserving stock for every line.

    All-or-nothing: if any line fails (unavailable product, unverified
    seller, insufficient stock at reservation time) the transaction is
    rolled back and neither the order nor any stock change survives.
    """
    if order_records.role_of(buyer) != UserRole.customer:
        raise AccessDenied("Only customers can place orders", code="INSUFFICIENT_PERMISSIONS")

    lines = _parse_items(items)
    address = _parse_address(shipping_address)
    method = _parse_payment_method(payment_method)

    products: List[Product] = []
    seller_id: Optional[str] = None
    subtotal = Decimal("0")
    for line in lines:
        product = db.get(Product, line.product_id)
        seller = product.seller if product is not None else None
        if product is None or not _is_sellable(product) or seller is None or not seller.can_transact:
            raise ProductUnavailable(f"Product {line.product_id} is not available from verified sellers")
        if product.stock < line.quantity:
            raise InsufficientStock(
                f"Insufficient stock for {product.name}. Available: {product.stock}",
                product_id=product.id,
                available=product.stock,
            )
        if seller_id is not None and seller.id != seller_id:
            raise ValidationFailed.for_field("items", "All items in an order must come from the same seller")
        seller_id = seller.id
        products.append(product)
        subtotal += Decimal(str(product.price)) * line.quantity

    pricing = compute_pricing(subtotal, address, tax_calculator=tax_calculator)

    for _ in range(ORDER_NUMBER_ATTEMPTS):
        order_number = generate_order_number(db, clock)
        try:
            order = Order(
                order_number=order_number,
                customer_id=buyer.id,
                seller_id=seller_id,
                status=OrderStatus.pending_payment,
                subtotal=pricing.subtotal,
                shipping_cost=pricing.shipping_cost,
                tax=pricing.tax,
                discount=pricing.discount,
                total=pricing.total,
                currency=pricing.currency,
                shipping_address=address.model_dump(by_alias=True),
                payment_method=method,
                payment_status=PaymentStatus.pending,
                escrow_status=EscrowStatus.pending,
                created_at=clock(),
            )
            for position, (line, product) in enumerate(zip(lines, products)):
                order.items.append(
                    OrderItem(
                        position=position,
                        product_id=product.id,
                        quantity=line.quantity,
                        unit_price=_money(product.price),
                        product_name=product.name,
                        product_image=product.image_url,
                        product_sku=product.sku,
                    )
                )
            db.add(order)
            db.flush()
        except IntegrityError:
            db.rollback()
            # A concurrent checkout took the number between the check and the insert.
            if db.query(Order.id).filter(Order.order_number == order_number).first() is None:
                raise
            logger.warning("Order number %s taken concurrently, retrying", order_number)
            continue
        except Exception:
            db.rollback()
            raise

        try:
            for line in lines:
                inventory_ledger.reserve(db, line.product_id, line.quantity)

            order_records.add_note(db, order, NoteAuthor.system, "Order placed; awaiting payment")
            db.commit()
        except Exception:
            db.rollback()
            raise
        break
    else:
        raise Conflict("Could not allocate a unique order number", code="ORDER_NUMBER_CONFLICT")

    db.refresh(order)
    logger.info(
        "Order %s created: customer=%s seller=%s lines=%s total=%s %s",
        order.order_number, buyer.id, seller_id, len(lines), order.total, order.currency,
    )
    return order


def can_request_refund(order: Order, now: Optional[datetime] = None) -> bool:
    delivered_at = ensure_utc(order.delivered_at)
    if delivered_at is None:
        return False
    now = now or utc_now()
    return (now - delivered_at) <= timedelta(days=REFUND_WINDOW_DAYS) and order.escrow_status == EscrowStatus.held


def get_return_window(order: Order, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    delivered_at = ensure_utc(order.delivered_at)
    if delivered_at is None:
        return None
    now = now or utc_now()
    days_since = (now - delivered_at) // timedelta(days=1)
    remaining = max(0, REFUND_WINDOW_DAYS - days_since)
    return {"totalDays": REFUND_WINDOW_DAYS, "remainingDays": remaining, "expired": remaining == 0}


def request_refund(
    db: Session,
    order_id: str,
    buyer: Any,
    reason: str,
    description: Optional[str] = None,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Record a pending refund request; escrow is untouched until an admin acts."""
    order = order_records.load_order(db, order_id)
    order_records.require_buyer(order, buyer)
    if not reason or not reason.strip():
        raise ValidationFailed.for_field("reason", "Refund reason is required")

    now = clock()
    if not can_request_refund(order, now):
        logger.warning("Refund request rejected for order=%s (escrow=%s)", order.order_number, order.escrow_status.value)
        raise RefundNotAllowed("Refund cannot be requested for this order")
    if order.refund_requested_at is not None:
        raise RefundNotAllowed("A refund has already been requested for this order")

    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.escrow_status == EscrowStatus.held,
            Order.refund_requested_at.is_(None),
            refund_is_refunded=False,
            refund_reason=reason,
            refund_amount=order.total,
            refund_requested_at=now,
        )
        if not ok:
            raise RefundNotAllowed("Refund cannot be requested for this order")
        order_records.add_note(
            db,
            order,
            NoteAuthor.customer,
            f"Refund requested: {reason}. {description or ''}".strip(),
            created_by=buyer.id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Refund requested for order=%s amount=%s", order.order_number, order.refund_amount)
    return order


def update_fulfillment(
    db: Session,
    order_id: str,
    seller_actor: Any,
    status: Any,
    *,
    tracking_number: Optional[str] = None,
    carrier: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
    clock: Clock = utc_now,
) -> Order:
    order = order_records.load_order(db, order_id)
    order_records.require_order_seller(db, order, seller_actor)

    try:
        target = OrderStatus(getattr(status, "value", status))
    except ValueError:
        raise ValidationFailed.for_field("status", "Invalid order status")
    if target not in FULFILLMENT_STATUSES:
        raise InvalidStatus(f"Sellers cannot set status {target.value} through fulfillment updates")
    current = order.status
    check_order_transition(current, target)

    now = clock()
    values: Dict[str, Any] = {"status": target}
    if tracking_number is not None:
        values["tracking_number"] = tracking_number
    if carrier is not None:
        values["carrier"] = carrier
    if estimated_delivery is not None:
        values["estimated_delivery"] = estimated_delivery
    if target == OrderStatus.shipped:
        values["shipped_at"] = now

    try:
        if not order_records.guarded_update(db, order.id, Order.status == current, **values):
            raise InvalidStatus("Order status changed concurrently")
        message = f"Order status updated to {target.value}"
        if tracking_number:
            message += f" (tracking {tracking_number})"
        order_records.add_note(db, order, NoteAuthor.seller, message, created_by=seller_actor.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Order %s: %s -> %s", order.order_number, current.value, target.value)
    return order


def cancel_order(
    db: Session,
    order_id: str,
    actor: Any,
    reason: str,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Cancel a pre-delivery order and put its stock back.

    Held escrow is refunded in full and the order ends ``refunded``;
    otherwise it ends ``cancelled`` with escrow still ``pending``.
    """
    order = order_records.load_order(db, order_id)
    if order_records.is_admin(actor):
        allowed = PRE_DELIVERY_STATUSES
    else:
        order_records.require_buyer(order, actor)
        allowed = CUSTOMER_CANCELLABLE_STATUSES
    if order.status not in allowed:
        raise InvalidStatus(f"Order cannot be cancelled in status {order.status.value}")
    if order.dispute_in_progress:
        raise InvalidStatus("Order is under dispute and awaits admin resolution")
    if not reason or not reason.strip():
        raise ValidationFailed.for_field("reason", "Cancellation reason is required")

    now = clock()
    current = order.status
    escrow_held = order.escrow_status == EscrowStatus.held
    try:
        if escrow_held:
            check_order_transition(current, OrderStatus.refunded)
            ok = refund_escrow(
                db,
                order,
                amount=_money(order.total),
                reason=reason,
                now=now,
                conditions=(Order.status == current,),
                values={"status": OrderStatus.refunded},
            )
        else:
            check_order_transition(current, OrderStatus.cancelled)
            ok = order_records.guarded_update(
                db,
                order.id,
                Order.status == current,
                Order.escrow_status == EscrowStatus.pending,
                status=OrderStatus.cancelled,
            )
        if not ok:
            raise InvalidStatus("Order status changed concurrently")

        for item in order.items:
            inventory_ledger.release(db, item.product_id, item.quantity)

        order_records.add_note(
            db, order, order_records.note_role_for(actor), f"Order cancelled: {reason}", created_by=actor.id
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(
        "Order %s cancelled by %s: %s -> %s (escrow=%s)",
        order.order_number, actor.id, current.value, order.status.value, order.escrow_status.value,
    )
    return order


def leave_feedback(
    db: Session,
    order_id: str,
    buyer: Any,
    rating: int,
    review: Optional[str] = None,
    *,
    clock: Clock = utc_now,
) -> Order:
    """One rating per delivered order, folded into the seller's average."""
    order = order_records.load_order(db, order_id)
    order_records.require_buyer(order, buyer)
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationFailed.for_field("rating", "Rating must be between 1 and 5")
    if order.status != OrderStatus.delivered:
        raise InvalidStatus("Feedback can only be left for delivered orders")
    if order.feedback_rating is not None:
        raise InvalidStatus("Feedback has already been left for this order")

    now = clock()
    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.feedback_rating.is_(None),
            feedback_rating=rating,
            feedback_review=review,
            feedback_reviewed_at=now,
        )
        if not ok:
            raise InvalidStatus("Feedback has already been left for this order")

        seller = db.query(Seller).filter(Seller.id == order.seller_id).with_for_update().one()
        count = seller.rating_count or 0
        average = Decimal(str(seller.rating_average or 0))
        seller.rating_average = ((average * count + rating) / (count + 1)).quantize(CENT, rounding=ROUND_HALF_UP)
        seller.rating_count = count + 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Feedback %s/5 recorded for order=%s", rating, order.order_number)
    return order
