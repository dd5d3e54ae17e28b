"""Read accessors for orders and their escrow/dispute/refund state."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from escrow_market.models_sqlalchemy.models import EscrowStatus, Order, OrderStatus
from escrow_market.services import order_records
from escrow_market.services.errors import AccessDenied, NotFound, ValidationFailed
from escrow_market.services.escrow import escrow_view
from escrow_market.services.order_ledger import can_request_refund, get_return_window
from escrow_market.services.state_machines import DISPUTE_IN_PROGRESS
from escrow_market.utils.clock import ensure_utc, utc_now


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _money(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def trust_status(order: Order, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    return {
        "escrowProtection": order.escrow_status.value,
        "canRequestRefund": can_request_refund(order, now),
        "returnWindow": get_return_window(order, now),
        "disputeAvailable": (
            order.escrow_status == EscrowStatus.held and order.dispute_status not in DISPUTE_IN_PROGRESS
        ),
    }


def serialize_order(order: Order, now: Optional[datetime] = None, *, include_notes: bool = True) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": order.id,
        "orderNumber": order.order_number,
        "customerId": order.customer_id,
        "sellerId": order.seller_id,
        "status": order.status.value,
        "items": [
            {
                "productId": item.product_id,
                "quantity": item.quantity,
                "price": _money(item.unit_price),
                "productSnapshot": {
                    "name": item.product_name,
                    "image": item.product_image,
                    "sku": item.product_sku,
                },
            }
            for item in order.items
        ],
        "pricing": {
            "subtotal": _money(order.subtotal),
            "shippingCost": _money(order.shipping_cost),
            "tax": _money(order.tax),
            "discount": _money(order.discount),
            "total": _money(order.total),
            "currency": order.currency,
        },
        "shippingAddress": order.shipping_address,
        "payment": {
            "method": order.payment_method.value,
            "status": order.payment_status.value,
            "transactionId": order.payment_transaction_id,
            "paidAt": _iso(order.paid_at),
            "refundId": order.payment_refund_id,
            "refundedAt": _iso(order.payment_refunded_at),
        },
        "shipping": {
            "trackingNumber": order.tracking_number,
            "carrier": order.carrier,
            "shippedAt": _iso(order.shipped_at),
            "estimatedDelivery": _iso(order.estimated_delivery),
            "deliveredAt": _iso(order.delivered_at),
            "deliveryNotes": order.delivery_notes,
        },
        "escrow": escrow_view(order),
        "dispute": {
            "isDisputed": bool(order.dispute_is_disputed),
            "reason": order.dispute_reason,
            "description": order.dispute_description,
            "evidence": list(order.dispute_evidence or []),
            "status": order.dispute_status.value if order.dispute_status else None,
            "openedAt": _iso(order.dispute_opened_at),
            "resolvedBy": order.dispute_resolved_by,
            "resolution": order.dispute_resolution,
            "resolvedAt": _iso(order.dispute_resolved_at),
        },
        "refund": {
            "isRefunded": bool(order.refund_is_refunded),
            "reason": order.refund_reason,
            "amount": _money(order.refund_amount),
            "requestedAt": _iso(order.refund_requested_at),
            "approvedAt": _iso(order.refund_approved_at),
            "processedAt": _iso(order.refund_processed_at),
            "adminNotes": order.refund_admin_notes,
        },
        "feedback": {
            "rating": order.feedback_rating,
            "review": order.feedback_review,
            "reviewedAt": _iso(order.feedback_reviewed_at),
        },
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
        "trustStatus": trust_status(order, now),
    }
    if include_notes:
        data["notes"] = [
            {
                "type": note.author_role.value,
                "message": note.message,
                "createdBy": note.created_by,
                "createdAt": _iso(note.created_at),
            }
            for note in order.notes
        ]
    return data


def get_order_for_actor(db: Session, order_id: str, actor: Any) -> Order:
    """The order, if the actor is its buyer, its seller or an admin."""
    order = order_records.load_order(db, order_id)
    if order_records.is_admin(actor) or getattr(actor, "id", None) == order.customer_id:
        return order
    seller = order_records.seller_for_user(db, getattr(actor, "id", None))
    if seller is not None and seller.id == order.seller_id:
        return order
    raise AccessDenied("You do not have access to this order")


def _status_filter(status: Optional[Any]) -> Optional[OrderStatus]:
    if status is None:
        return None
    try:
        return OrderStatus(getattr(status, "value", status))
    except ValueError:
        raise ValidationFailed.for_field("status", "Invalid order status")


def list_customer_orders(db: Session, buyer: Any, status: Optional[Any] = None) -> List[Order]:
    query = db.query(Order).filter(Order.customer_id == buyer.id)
    wanted = _status_filter(status)
    if wanted is not None:
        query = query.filter(Order.status == wanted)
    return query.order_by(Order.created_at.desc()).all()


def list_seller_orders(db: Session, seller_actor: Any, status: Optional[Any] = None) -> List[Order]:
    seller = order_records.seller_for_user(db, getattr(seller_actor, "id", None))
    if seller is None:
        raise NotFound("Seller profile not found", code="SELLER_NOT_FOUND")
    query = db.query(Order).filter(Order.seller_id == seller.id)
    wanted = _status_filter(status)
    if wanted is not None:
        query = query.filter(Order.status == wanted)
    return query.order_by(Order.created_at.desc()).all()
