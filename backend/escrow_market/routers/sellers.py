from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from escrow_market.models.seller import DocumentUpload, SellerApplication
from escrow_market.models.user import CurrentUser
from escrow_market.models_sqlalchemy import get_db
from escrow_market.services import verification_gate
from escrow_market.services.auth import get_current_active_user, require_seller
from escrow_market.utils.clock import Clock, get_clock


router = APIRouter(prefix="/api/sellers", tags=["sellers"])


@router.post("/apply", status_code=status.HTTP_201_CREATED)
async def apply(
    payload: SellerApplication,
    current_user: CurrentUser = Depends(get_current_active_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    seller = verification_gate.apply_as_seller(
        db,
        current_user,
        payload.business_name,
        payload.business_type,
        payload.description,
        payload.business_info,
        clock=clock,
    )
    return {
        "message": "Seller application submitted successfully. Please upload required documents for verification.",
        "application": {
            "id": seller.id,
            "businessName": seller.business_name,
            "businessType": seller.business_type.value,
            "verificationStatus": seller.verification_status.value,
            "requiredDocuments": [doc.value for doc in verification_gate.required_documents(seller.business_type)],
        },
    }


@router.post("/me/documents", status_code=status.HTTP_201_CREATED)
async def upload_document(
    payload: DocumentUpload,
    current_user: CurrentUser = Depends(require_seller),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> Dict[str, Any]:
    document = verification_gate.add_document(db, current_user, payload.doc_type, payload.url, clock=clock)
    return {
        "message": "Document uploaded",
        "document": {
            "id": document.id,
            "type": document.doc_type.value,
            "status": document.status.value,
        },
    }
