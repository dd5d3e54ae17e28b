"""Escrow state machine attached 1:1 to every order.

    pending ──payment──▶ held ──approval | auto-release | dispute──▶ released_to_seller
                          └────dispute refund | gateway refund─────▶ refunded_to_customer

Every edge is committed as a guarded UPDATE on ``escrow_status`` so buyer
approval, the auto-release sweep and admin dispute resolution can race
freely: exactly one of them moves a given order out of ``held``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from escrow_market.config import settings
from escrow_market.models_sqlalchemy.models import (
    DisputeStatus,
    EscrowStatus,
    NoteAuthor,
    Order,
    OrderStatus,
    PaymentStatus,
    Seller,
)
from escrow_market.services import order_records
from escrow_market.services.errors import InvalidEscrowTransition, InvalidStatus, ValidationFailed
from escrow_market.services.order_records import SYSTEM_ACTOR
from escrow_market.services.state_machines import (
    DISPUTE_IN_PROGRESS,
    PRE_DELIVERY_STATUSES,
    check_escrow_transition,
)
from escrow_market.utils.clock import Clock, ensure_utc, utc_now
from escrow_market.utils.logger import logger


DELIVERABLE_STATUSES = (OrderStatus.shipped, OrderStatus.out_for_delivery)


def no_dispute_in_progress():
    return (Order.dispute_status.is_(None)) | (Order.dispute_status.notin_(list(DISPUTE_IN_PROGRESS)))


def release_escrow(
    db: Session,
    order: Order,
    *,
    released_by: str,
    now: datetime,
    conditions: Iterable[Any] = (),
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """Move ``held`` escrow to ``released_to_seller`` if nobody beat us to it.

    Does not commit. On success the seller's cumulative sales are bumped in
    the same transaction. Returns False when the guarded update matched
    nothing, i.e. the order left ``held`` (or a condition stopped holding)
    since it was read.
    """
    check_escrow_transition(EscrowStatus.held, EscrowStatus.released_to_seller)
    payload = dict(values or {})
    payload.update(
        escrow_status=EscrowStatus.released_to_seller,
        escrow_released_at=now,
        escrow_released_by=released_by,
    )
    ok = order_records.guarded_update(
        db, order.id, Order.escrow_status == EscrowStatus.held, *conditions, **payload
    )
    if ok:
        db.execute(
            update(Seller)
            .where(Seller.id == order.seller_id)
            .values(total_sales=Seller.total_sales + order.total, total_orders=Seller.total_orders + 1)
            .execution_options(synchronize_session=False)
        )
    return ok


def refund_escrow(
    db: Session,
    order: Order,
    *,
    amount: Decimal,
    reason: str,
    now: datetime,
    conditions: Iterable[Any] = (),
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """Move ``held`` escrow to ``refunded_to_customer`` with a completed refund record.

    Does not commit. Same compare-and-set contract as :func:`release_escrow`.
    """
    check_escrow_transition(EscrowStatus.held, EscrowStatus.refunded_to_customer)
    payload = dict(values or {})
    payload.update(
        escrow_status=EscrowStatus.refunded_to_customer,
        refund_is_refunded=True,
        refund_reason=reason,
        refund_amount=amount,
        refund_requested_at=order.refund_requested_at or now,
        refund_approved_at=now,
        refund_processed_at=now,
        payment_status=PaymentStatus.refunded,
        payment_refunded_at=now,
    )
    return order_records.guarded_update(
        db, order.id, Order.escrow_status == EscrowStatus.held, *conditions, **payload
    )


def validate_refund_amount(order: Order, amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except Exception:
        raise ValidationFailed.for_field("refundAmount", "Refund amount must be a number")
    if value < 0:
        raise ValidationFailed.for_field("refundAmount", "Refund amount cannot be negative")
    if value > Decimal(order.total):
        raise ValidationFailed.for_field("refundAmount", "Refund amount cannot exceed the order total")
    return value.quantize(Decimal("0.01"))


def confirm_payment(
    db: Session,
    order_id: str,
    *,
    transaction_id: Optional[str] = None,
    clock: Clock = utc_now,
) -> Order:
    """Payment gateway reported success: ``pending_payment`` order, escrow ``pending → held``."""
    order = order_records.load_order(db, order_id)
    if order.status != OrderStatus.pending_payment:
        raise InvalidStatus("Order is not awaiting payment")
    check_escrow_transition(order.escrow_status, EscrowStatus.held)

    now = clock()
    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.status == OrderStatus.pending_payment,
            Order.escrow_status == EscrowStatus.pending,
            status=OrderStatus.payment_confirmed,
            payment_status=PaymentStatus.completed,
            payment_transaction_id=transaction_id,
            paid_at=now,
            escrow_status=EscrowStatus.held,
        )
        if not ok:
            raise InvalidEscrowTransition("Order payment state changed concurrently")
        order_records.add_note(db, order, NoteAuthor.system, "Payment confirmed; funds held in escrow")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Escrow held for order=%s (payment confirmed, txn=%s)", order.order_number, transaction_id)
    return order


def record_payment_failure(
    db: Session,
    order_id: str,
    *,
    reason: Optional[str] = None,
    clock: Clock = utc_now,
) -> Order:
    """Payment gateway reported failure; the order stays awaiting payment."""
    order = order_records.load_order(db, order_id)
    if order.status != OrderStatus.pending_payment:
        raise InvalidStatus("Order is not awaiting payment")
    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.status == OrderStatus.pending_payment,
            payment_status=PaymentStatus.failed,
        )
        if not ok:
            raise InvalidStatus("Order payment state changed concurrently")
        order_records.add_note(db, order, NoteAuthor.system, f"Payment failed: {reason or 'no reason given'}")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.warning("Payment failed for order=%s: %s", order.order_number, reason)
    return order


def confirm_delivery(
    db: Session,
    order_id: str,
    seller_actor: Any,
    *,
    delivery_notes: Optional[str] = None,
    clock: Clock = utc_now,
    hold_days: Optional[int] = None,
) -> Order:
    """Seller confirms delivery; arms the auto-release deadline exactly once.

    Calling it again on an already delivered order is a no-op that returns
    the order untouched, so the deadline is never pushed back.
    """
    order = order_records.load_order(db, order_id)
    order_records.require_order_seller(db, order, seller_actor)

    if order.status == OrderStatus.delivered:
        logger.info("Delivery already confirmed for order=%s; deadline unchanged", order.order_number)
        return order
    if order.status not in DELIVERABLE_STATUSES:
        raise InvalidStatus("Order must be in shipped status to confirm delivery")
    if order.escrow_status not in (EscrowStatus.pending, EscrowStatus.held):
        raise InvalidEscrowTransition(f"Escrow already closed ({order.escrow_status.value})")

    now = clock()
    days = settings.ESCROW_HOLD_DAYS if hold_days is None else hold_days
    auto_release_at = now + timedelta(days=days)

    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.status == order.status,
            Order.escrow_status.in_([EscrowStatus.pending, EscrowStatus.held]),
            Order.escrow_auto_release_at.is_(None),
            status=OrderStatus.delivered,
            delivered_at=now,
            delivery_notes=delivery_notes,
            # First transition to held stays authoritative; pending orders
            # (payment never confirmed through the gateway) are held here.
            escrow_status=EscrowStatus.held,
            escrow_hold_until=auto_release_at,
            escrow_auto_release_at=auto_release_at,
        )
        if not ok:
            raise InvalidEscrowTransition("Order delivery state changed concurrently")
        order_records.add_note(
            db,
            order,
            NoteAuthor.seller,
            f"Delivery confirmed. Escrow auto-release scheduled for {auto_release_at.isoformat()}",
            created_by=getattr(seller_actor, "id", None),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(
        "Order %s delivered; escrow held until %s (%s days)",
        order.order_number, auto_release_at.isoformat(), days,
    )
    return order


def approve_delivery(
    db: Session,
    order_id: str,
    buyer: Any,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Buyer approves the delivery and releases escrow to the seller."""
    order = order_records.load_order(db, order_id)
    order_records.require_buyer(order, buyer)

    if order.status != OrderStatus.delivered:
        raise InvalidStatus("Order cannot be approved at this time")
    check_escrow_transition(order.escrow_status, EscrowStatus.released_to_seller)
    if order.dispute_in_progress:
        raise InvalidStatus("Order is under dispute and awaits admin resolution")

    now = clock()
    try:
        ok = release_escrow(
            db,
            order,
            released_by=buyer.id,
            now=now,
            conditions=(Order.status == OrderStatus.delivered, no_dispute_in_progress()),
            values={"escrow_customer_approval": True, "escrow_customer_approval_at": now},
        )
        if not ok:
            raise InvalidEscrowTransition("Escrow is no longer held for this order")
        order_records.add_note(
            db, order, NoteAuthor.customer, "Delivery approved; payment released to seller", created_by=buyer.id
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Escrow released to seller for order=%s by customer approval", order.order_number)
    return order


def request_release(
    db: Session,
    order_id: str,
    seller_actor: Any,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Seller nudges the buyer for approval; informational only."""
    order = order_records.load_order(db, order_id)
    order_records.require_order_seller(db, order, seller_actor)

    if order.status != OrderStatus.delivered or order.escrow_status != EscrowStatus.held:
        raise InvalidStatus("Release can only be requested for delivered orders with held escrow")
    if order.escrow_release_requested:
        return order

    now = clock()
    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.escrow_status == EscrowStatus.held,
            escrow_release_requested=True,
            escrow_release_requested_at=now,
        )
        if not ok:
            raise InvalidEscrowTransition("Escrow is no longer held for this order")
        order_records.add_note(
            db, order, NoteAuthor.seller, "Seller requested escrow release", created_by=seller_actor.id
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    return order


def record_gateway_refund(
    db: Session,
    order_id: str,
    *,
    amount: Any,
    refund_id: Optional[str] = None,
    reason: str = "Payment gateway refund",
    clock: Clock = utc_now,
) -> Order:
    """The payment gateway refunded the buyer outside the dispute flow.

    Pre-delivery orders end ``refunded``; delivered ones keep their status
    and only the escrow closes. A dispute still in progress is closed in the
    same update.
    """
    order = order_records.load_order(db, order_id)
    check_escrow_transition(order.escrow_status, EscrowStatus.refunded_to_customer)
    value = validate_refund_amount(order, amount)
    if value <= 0:
        raise ValidationFailed.for_field("amount", "Refund amount must be positive")

    now = clock()
    values: Dict[str, Any] = {"payment_refund_id": refund_id}
    conditions = [Order.status == order.status]
    if order.status in PRE_DELIVERY_STATUSES:
        values["status"] = OrderStatus.refunded
    closes_dispute = order.dispute_in_progress
    if closes_dispute:
        conditions.append(Order.dispute_status == order.dispute_status)
        values.update(
            dispute_status=DisputeStatus.closed,
            dispute_resolution="Closed by payment gateway refund",
            dispute_resolved_by=SYSTEM_ACTOR,
            dispute_resolved_at=now,
        )
    else:
        conditions.append(no_dispute_in_progress())

    try:
        ok = refund_escrow(db, order, amount=value, reason=reason, now=now, conditions=conditions, values=values)
        if not ok:
            raise InvalidEscrowTransition("Escrow is no longer held for this order")
        order_records.add_note(db, order, NoteAuthor.system, f"Refund of {value} processed by payment gateway")
        if closes_dispute:
            order_records.add_note(db, order, NoteAuthor.system, "Dispute closed: buyer refunded by payment gateway")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Escrow refunded to customer for order=%s via gateway (amount=%s)", order.order_number, value)
    return order


def escrow_view(order: Order) -> Dict[str, Any]:
    return {
        "status": order.escrow_status.value,
        "holdUntil": _iso(order.escrow_hold_until),
        "autoReleaseAt": _iso(order.escrow_auto_release_at),
        "releaseRequested": bool(order.escrow_release_requested),
        "releaseRequestedAt": _iso(order.escrow_release_requested_at),
        "customerApproval": bool(order.escrow_customer_approval),
        "customerApprovalAt": _iso(order.escrow_customer_approval_at),
        "releasedAt": _iso(order.escrow_released_at),
        "releasedBy": order.escrow_released_by,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


__all__ = [
    "SYSTEM_ACTOR",
    "approve_delivery",
    "confirm_delivery",
    "confirm_payment",
    "escrow_view",
    "no_dispute_in_progress",
    "record_gateway_refund",
    "record_payment_failure",
    "refund_escrow",
    "release_escrow",
    "request_release",
    "validate_refund_amount",
]
