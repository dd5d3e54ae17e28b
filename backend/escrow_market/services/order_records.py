from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from escrow_market.models_sqlalchemy.models import (
    NoteAuthor,
    Order,
    OrderNote,
    Seller,
    UserRole,
)
from escrow_market.services.errors import AccessDenied, NotFound


SYSTEM_ACTOR = "system"


def load_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="ORDER_NOT_FOUND")
    return order


def guarded_update(db: Session, order_id: str, *conditions: Any, **values: Any) -> bool:
    """Compare-and-set on one order row.

    Applies ``values`` only if the row still satisfies every condition at
    statement time and reports whether it did. Callers put the expected
    pre-state (``Order.escrow_status == EscrowStatus.held`` ...) in the
    conditions, never just read it from a loaded object.
    """
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def add_note(
    db: Session,
    order: Order,
    author_role: NoteAuthor,
    message: str,
    created_by: Optional[str] = None,
) -> OrderNote:
    note = OrderNote(order_id=order.id, author_role=author_role, message=message, created_by=created_by)
    db.add(note)
    return note


def role_of(actor: Any) -> Optional[UserRole]:
    role = getattr(actor, "role", None)
    if role is None:
        return None
    try:
        return UserRole(getattr(role, "value", role))
    except ValueError:
        return None


def is_admin(actor: Any) -> bool:
    return role_of(actor) == UserRole.admin


def require_admin(actor: Any) -> None:
    if not is_admin(actor):
        raise AccessDenied("Admin access required", code="INSUFFICIENT_PERMISSIONS")


def require_buyer(order: Order, actor: Any) -> None:
    if getattr(actor, "id", None) != order.customer_id:
        raise AccessDenied("Only the customer who placed this order may do this")


def seller_for_user(db: Session, user_id: str) -> Optional[Seller]:
    return db.query(Seller).filter(Seller.user_id == user_id).first()


def require_order_seller(db: Session, order: Order, actor: Any) -> Seller:
    seller = seller_for_user(db, getattr(actor, "id", None))
    if seller is None or seller.id != order.seller_id:
        raise AccessDenied("Only the seller of this order may do this")
    return seller


def note_role_for(actor: Any) -> NoteAuthor:
    role = role_of(actor)
    if role == UserRole.admin:
        return NoteAuthor.admin
    if role == UserRole.seller:
        return NoteAuthor.seller
    return NoteAuthor.customer
