from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from escrow_market.models.order import (
    CancelRequest,
    DeliveryConfirmationRequest,
    DisputeOpenRequest,
    FeedbackRequest,
    FulfillmentUpdateRequest,
    OrderCreateRequest,
    PaymentConfirmationRequest,
    RefundRequest,
)
from escrow_market.models.user import CurrentUser
from escrow_market.models_sqlalchemy import get_db
from escrow_market.models_sqlalchemy.models import OrderStatus
from escrow_market.services import dispute_resolver, escrow, order_ledger, order_queries
from escrow_market.services.admin_auth import require_admin_user
from escrow_market.services.auth import get_current_active_user, require_customer, require_seller
from escrow_market.utils.clock import Clock, get_clock


router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreateRequest,
    current_user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = order_ledger.create_order(
        db,
        current_user,
        payload.items,
        payload.shipping_address,
        payload.payment_method,
        clock=clock,
    )
    return {
        "message": "Order created successfully with escrow protection",
        "order": {
            "id": order.id,
            "orderNumber": order.order_number,
            "total": float(order.total),
            "currency": order.currency,
            "status": order.status.value,
            "escrowProtection": True,
        },
        "nextStep": "Complete payment to confirm your order",
    }


@router.get("/my-orders")
async def my_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    now = clock()
    orders = order_queries.list_customer_orders(db, current_user, status_filter)
    return {"orders": [order_queries.serialize_order(o, now, include_notes=False) for o in orders]}


@router.get("/seller-orders")
async def seller_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user: CurrentUser = Depends(require_seller),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    now = clock()
    orders = order_queries.list_seller_orders(db, current_user, status_filter)
    return {"orders": [order_queries.serialize_order(o, now, include_notes=False) for o in orders]}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    current_user: CurrentUser = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = order_queries.get_order_for_actor(db, order_id, current_user)
    return {"order": order_queries.serialize_order(order, clock())}


@router.post("/{order_id}/confirm-payment")
async def confirm_payment(
    order_id: str,
    payload: PaymentConfirmationRequest,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    if payload.success:
        order = escrow.confirm_payment(db, order_id, transaction_id=payload.transaction_id, clock=clock)
        message = "Payment confirmed; funds are held in escrow"
    else:
        order = escrow.record_payment_failure(db, order_id, reason=payload.failure_reason, clock=clock)
        message = "Payment failure recorded"
    return {"message": message, "order": order_queries.serialize_order(order, clock())}


@router.patch("/{order_id}/fulfillment")
async def update_fulfillment(
    order_id: str,
    payload: FulfillmentUpdateRequest,
    current_user: CurrentUser = Depends(require_seller),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = order_ledger.update_fulfillment(
        db,
        order_id,
        current_user,
        payload.status,
        tracking_number=payload.tracking_number,
        carrier=payload.carrier,
        estimated_delivery=payload.estimated_delivery,
        clock=clock,
    )
    return {"message": f"Order status updated to {order.status.value}", "order": order_queries.serialize_order(order, clock())}


@router.patch("/{order_id}/confirm-delivery")
async def confirm_delivery(
    order_id: str,
    payload: Optional[DeliveryConfirmationRequest] = None,
    current_user: CurrentUser = Depends(require_seller),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    notes = payload.delivery_notes if payload else None
    order = escrow.confirm_delivery(db, order_id, current_user, delivery_notes=notes, clock=clock)
    return {"message": "Delivery confirmed successfully", "order": order_queries.serialize_order(order, clock())}


@router.patch("/{order_id}/approve-delivery")
async def approve_delivery(
    order_id: str,
    current_user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = escrow.approve_delivery(db, order_id, current_user, clock=clock)
    return {
        "message": "Delivery approved and payment released to seller",
        "order": {"id": order.id, "escrow": escrow.escrow_view(order)},
    }


@router.post("/{order_id}/request-release")
async def request_release(
    order_id: str,
    current_user: CurrentUser = Depends(require_seller),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = escrow.request_release(db, order_id, current_user, clock=clock)
    return {"message": "Release requested", "escrow": escrow.escrow_view(order)}


@router.post("/{order_id}/request-refund")
async def request_refund(
    order_id: str,
    payload: RefundRequest,
    current_user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = order_ledger.request_refund(
        db, order_id, current_user, payload.reason, payload.description, clock=clock
    )
    refund = order_queries.serialize_order(order, clock())["refund"]
    return {
        "message": "Refund requested successfully. Our team will review and process it within 24 hours.",
        "refund": {"orderId": order.id, **refund},
    }


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    payload: CancelRequest,
    current_user: CurrentUser = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = order_ledger.cancel_order(db, order_id, current_user, payload.reason, clock=clock)
    return {"message": f"Order {order.status.value}", "order": order_queries.serialize_order(order, clock())}


@router.post("/{order_id}/feedback")
async def leave_feedback(
    order_id: str,
    payload: FeedbackRequest,
    current_user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = order_ledger.leave_feedback(db, order_id, current_user, payload.rating, payload.review, clock=clock)
    return {"message": "Thank you for your feedback", "feedback": order_queries.serialize_order(order, clock())["feedback"]}


@router.post("/{order_id}/dispute", status_code=status.HTTP_201_CREATED)
async def open_dispute(
    order_id: str,
    payload: DisputeOpenRequest,
    current_user: CurrentUser = Depends(require_customer),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = dispute_resolver.open_dispute(
        db,
        order_id,
        current_user,
        payload.reason,
        payload.description,
        payload.evidence,
        clock=clock,
    )
    return {"message": "Dispute opened", "dispute": order_queries.serialize_order(order, clock())["dispute"]}
