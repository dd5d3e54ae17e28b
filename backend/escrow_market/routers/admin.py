from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from escrow_market.models.order import DisputeCloseRequest, DisputeResolveRequest
from escrow_market.models.seller import DocumentReview, VerificationUpdate
from escrow_market.models.user import CurrentUser
from escrow_market.models_sqlalchemy import get_db
from escrow_market.models_sqlalchemy.models import DisputeStatus, VerificationStatus
from escrow_market.services import dispute_resolver, order_queries, statistics, verification_gate
from escrow_market.services.admin_auth import require_admin_user
from escrow_market.utils.clock import Clock, get_clock
from escrow_market.utils.logger import logger
from escrow_market.workers.auto_release_worker import get_worker_status, run_auto_release_once


router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---- Seller verification ----


@router.get("/seller-verifications")
async def list_seller_verifications(
    status_filter: Optional[VerificationStatus] = Query(None, alias="status"),
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return verification_gate.list_seller_verifications(db, current_user, status_filter)


@router.get("/seller-verifications/{seller_id}")
async def get_seller_verification(
    seller_id: str,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    return verification_gate.seller_verification_details(db, current_user, seller_id, clock=clock)


@router.patch("/seller-verifications/{seller_id}")
async def update_seller_verification(
    seller_id: str,
    payload: VerificationUpdate,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    seller = verification_gate.update_verification(
        db,
        current_user,
        seller_id,
        payload.status,
        notes=payload.notes,
        trust_badges=payload.trust_badges,
        rejection_reason=payload.rejection_reason,
        clock=clock,
    )
    return {
        "message": f"Seller verification {seller.verification_status.value} successfully",
        "seller": verification_gate.serialize_seller(seller),
    }


@router.patch("/seller-verifications/{seller_id}/documents/{document_id}")
async def review_seller_document(
    seller_id: str,
    document_id: str,
    payload: DocumentReview,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    document = verification_gate.review_document(
        db, current_user, seller_id, document_id, payload.status, clock=clock
    )
    return {"message": "Document reviewed", "document": {"id": document.id, "status": document.status.value}}


# ---- Disputes ----


@router.get("/disputes")
async def list_disputes(
    status_filter: Optional[DisputeStatus] = Query(None, alias="status"),
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return dispute_resolver.list_disputes(db, current_user, status_filter)


@router.patch("/disputes/{order_id}/review")
async def review_dispute(
    order_id: str,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = dispute_resolver.start_dispute_review(db, current_user, order_id, clock=clock)
    return {"message": "Dispute under review", "dispute": order_queries.serialize_order(order, clock())["dispute"]}


@router.patch("/disputes/{order_id}/resolve")
async def resolve_dispute(
    order_id: str,
    payload: DisputeResolveRequest,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = dispute_resolver.resolve_dispute(
        db,
        current_user,
        order_id,
        payload.resolution,
        payload.refund_amount,
        payload.admin_notes,
        clock=clock,
    )
    return {
        "message": "Dispute resolved successfully",
        "resolution": {
            "orderId": order.id,
            "resolution": order.dispute_resolution,
            "refundAmount": float(order.refund_amount) if order.refund_is_refunded else 0,
            "escrowStatus": order.escrow_status.value,
            "resolvedAt": order_queries.serialize_order(order, clock())["dispute"]["resolvedAt"],
        },
    }


@router.patch("/disputes/{order_id}/close")
async def close_dispute(
    order_id: str,
    payload: DisputeCloseRequest,
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    order = dispute_resolver.close_dispute(db, current_user, order_id, payload.admin_notes, clock=clock)
    return {"message": "Dispute closed", "dispute": order_queries.serialize_order(order, clock())["dispute"]}


# ---- Platform statistics ----


@router.get("/statistics")
async def platform_statistics(
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    return statistics.platform_statistics(db, current_user, clock())


# ---- Escrow auto-release worker ----


@router.post("/escrow/auto-release/run")
async def run_auto_release(
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    logger.info(f"Manual escrow auto-release run triggered by {current_user.email}")
    return run_auto_release_once(db, clock=clock)


@router.get("/workers/auto-release")
async def auto_release_worker_status(
    current_user: CurrentUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return {"worker": get_worker_status(db)}
