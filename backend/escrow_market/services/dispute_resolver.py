"""Admin-mediated disputes.

While a dispute is open or under review, buyer approval and the auto-release
sweep both skip the order. Resolution is the only path that forces escrow
into a terminal state bypassing them: a positive refund amount refunds the
buyer, anything else releases to the seller. Closing a dispute without a
resolution leaves escrow ``held`` so the normal paths resume.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from escrow_market.models_sqlalchemy.models import (
    DisputeStatus,
    EscrowStatus,
    NoteAuthor,
    Order,
    OrderStatus,
)
from escrow_market.services import order_records
from escrow_market.services.errors import (
    InvalidEscrowTransition,
    InvalidStatus,
    NotFound,
    ValidationFailed,
)
from escrow_market.services.escrow import (
    no_dispute_in_progress,
    refund_escrow,
    release_escrow,
    validate_refund_amount,
)
from escrow_market.services.order_queries import serialize_order
from escrow_market.services.state_machines import (
    DISPUTE_IN_PROGRESS,
    PRE_DELIVERY_STATUSES,
    check_dispute_transition,
    check_escrow_transition,
)
from escrow_market.utils.clock import Clock, utc_now
from escrow_market.utils.logger import logger


DISPUTE_REFUND_REASON = "Admin dispute resolution"


def _load_disputed_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None or not order.dispute_is_disputed:
        raise NotFound("Disputed order not found", code="DISPUTE_NOT_FOUND")
    return order


def _in_progress():
    return Order.dispute_status.in_(list(DISPUTE_IN_PROGRESS))


def open_dispute(
    db: Session,
    order_id: str,
    actor: Any,
    reason: str,
    description: Optional[str] = None,
    evidence: Optional[Iterable[str]] = None,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Buyer (or admin) opens a dispute; escrow must still be held."""
    order = order_records.load_order(db, order_id)
    if not order_records.is_admin(actor):
        order_records.require_buyer(order, actor)
    if not reason or not reason.strip():
        raise ValidationFailed.for_field("reason", "Dispute reason is required")
    if order.escrow_status != EscrowStatus.held:
        raise InvalidStatus("Disputes can only be opened while payment is held in escrow")
    if order.dispute_in_progress:
        raise InvalidStatus("A dispute is already in progress for this order")

    now = clock()
    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.escrow_status == EscrowStatus.held,
            no_dispute_in_progress(),
            dispute_is_disputed=True,
            dispute_reason=reason,
            dispute_description=description,
            dispute_evidence=list(evidence or []),
            dispute_status=DisputeStatus.open,
            dispute_opened_at=now,
            dispute_resolved_by=None,
            dispute_resolution=None,
            dispute_resolved_at=None,
        )
        if not ok:
            raise InvalidEscrowTransition("Escrow is no longer held or a dispute is already open")
        order_records.add_note(
            db,
            order,
            order_records.note_role_for(actor),
            f"Dispute opened: {reason}",
            created_by=actor.id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Dispute opened on order=%s by %s", order.order_number, actor.id)
    return order


def start_dispute_review(db: Session, admin: Any, order_id: str, *, clock: Clock = utc_now) -> Order:
    order_records.require_admin(admin)
    order = _load_disputed_order(db, order_id)
    check_dispute_transition(order.dispute_status, DisputeStatus.under_review)

    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            Order.dispute_status == DisputeStatus.open,
            dispute_status=DisputeStatus.under_review,
        )
        if not ok:
            raise InvalidStatus("Dispute status changed concurrently")
        order_records.add_note(db, order, NoteAuthor.admin, "Dispute under review", created_by=admin.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Dispute on order=%s: open -> under_review", order.order_number)
    return order


def resolve_dispute(
    db: Session,
    admin: Any,
    order_id: str,
    resolution: str,
    refund_amount: Optional[Any] = None,
    admin_notes: Optional[str] = None,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Resolve an open dispute, refunding the buyer or releasing to the seller."""
    order_records.require_admin(admin)
    if not resolution or not resolution.strip():
        raise ValidationFailed.for_field("resolution", "Resolution is required")

    order = _load_disputed_order(db, order_id)
    check_dispute_transition(order.dispute_status, DisputeStatus.resolved)
    amount = validate_refund_amount(order, refund_amount or 0)
    refunding = amount > 0
    check_escrow_transition(
        order.escrow_status,
        EscrowStatus.refunded_to_customer if refunding else EscrowStatus.released_to_seller,
    )

    now = clock()
    values: Dict[str, Any] = {
        "dispute_status": DisputeStatus.resolved,
        "dispute_resolution": resolution,
        "dispute_resolved_by": admin.id,
        "dispute_resolved_at": now,
    }
    conditions = (_in_progress(),)

    try:
        if refunding:
            values["refund_admin_notes"] = admin_notes
            if order.status in PRE_DELIVERY_STATUSES:
                values["status"] = OrderStatus.refunded
                conditions = conditions + (Order.status == order.status,)
            ok = refund_escrow(
                db, order, amount=amount, reason=DISPUTE_REFUND_REASON, now=now,
                conditions=conditions, values=values,
            )
        else:
            ok = release_escrow(
                db, order, released_by=admin.id, now=now, conditions=conditions, values=values,
            )
        if not ok:
            raise InvalidEscrowTransition("Escrow is no longer held for this order")

        message = f"Dispute resolved: {resolution}"
        if admin_notes:
            message += f" Notes: {admin_notes}"
        order_records.add_note(db, order, NoteAuthor.admin, message, created_by=admin.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(
        "Dispute on order=%s resolved by admin=%s: escrow -> %s (refund=%s)",
        order.order_number, admin.id, order.escrow_status.value, amount if refunding else 0,
    )
    return order


def close_dispute(
    db: Session,
    admin: Any,
    order_id: str,
    admin_notes: Optional[str] = None,
    *,
    clock: Clock = utc_now,
) -> Order:
    """Close a dispute without touching escrow; auto-release applies again."""
    order_records.require_admin(admin)
    order = _load_disputed_order(db, order_id)
    check_dispute_transition(order.dispute_status, DisputeStatus.closed)

    now = clock()
    try:
        ok = order_records.guarded_update(
            db,
            order.id,
            _in_progress(),
            dispute_status=DisputeStatus.closed,
            dispute_resolved_by=admin.id,
            dispute_resolved_at=now,
        )
        if not ok:
            raise InvalidStatus("Dispute status changed concurrently")
        message = "Dispute closed"
        if admin_notes:
            message += f": {admin_notes}"
        order_records.add_note(db, order, NoteAuthor.admin, message, created_by=admin.id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Dispute on order=%s closed by admin=%s", order.order_number, admin.id)
    return order


def list_disputes(db: Session, admin: Any, status: Optional[Any] = None) -> Dict[str, Any]:
    order_records.require_admin(admin)

    query = db.query(Order).filter(Order.dispute_is_disputed.is_(True))
    if status is not None:
        try:
            wanted = DisputeStatus(getattr(status, "value", status))
        except ValueError:
            raise ValidationFailed.for_field("status", "Invalid dispute status")
        query = query.filter(Order.dispute_status == wanted)
    orders = query.order_by(Order.dispute_opened_at.asc()).all()

    counts = dict(
        db.query(Order.dispute_status, func.count(Order.id))
        .filter(Order.dispute_status.isnot(None))
        .group_by(Order.dispute_status)
        .all()
    )
    summary = {
        "open": int(counts.get(DisputeStatus.open, 0)),
        "underReview": int(counts.get(DisputeStatus.under_review, 0)),
        "resolved": int(counts.get(DisputeStatus.resolved, 0)),
        "closed": int(counts.get(DisputeStatus.closed, 0)),
    }
    return {"disputes": [serialize_order(order, include_notes=False) for order in orders], "summary": summary}
