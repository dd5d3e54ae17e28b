"""Seller verification gate.

A seller may list products and receive orders only while
``verification_status == verified`` and ``is_active``. Only admins move the
verification machine; sellers apply and upload documents.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from escrow_market.config import settings
from escrow_market.models.seller import SellerApplication
from escrow_market.models_sqlalchemy.models import (
    BusinessType,
    DocumentStatus,
    DocumentType,
    Seller,
    SellerDocument,
    TrustBadge,
    User,
    UserRole,
    VerificationStatus,
)
from escrow_market.services import order_records
from escrow_market.services.errors import AccessDenied, InvalidStatus, NotFound, ValidationFailed
from escrow_market.services.state_machines import check_verification_transition
from escrow_market.utils.clock import Clock, ensure_utc, utc_now
from escrow_market.utils.logger import logger


NEW_SELLER_DAYS = 30

REQUIRED_DOCUMENTS: Dict[BusinessType, List[DocumentType]] = {
    BusinessType.brand: [
        DocumentType.trade_license,
        DocumentType.tax_certificate,
        DocumentType.brand_authorization,
        DocumentType.identity_proof,
    ],
    BusinessType.celebrity: [
        DocumentType.identity_proof,
        DocumentType.celebrity_verification,
        DocumentType.tax_certificate,
    ],
    BusinessType.established_business: [
        DocumentType.trade_license,
        DocumentType.tax_certificate,
        DocumentType.identity_proof,
    ],
    BusinessType.verified_retailer: [
        DocumentType.trade_license,
        DocumentType.tax_certificate,
        DocumentType.identity_proof,
    ],
}

DEFAULT_REQUIRED_DOCUMENTS = [
    DocumentType.trade_license,
    DocumentType.tax_certificate,
    DocumentType.identity_proof,
]


def required_documents(business_type: Any) -> List[DocumentType]:
    try:
        key = BusinessType(getattr(business_type, "value", business_type))
    except ValueError:
        return list(DEFAULT_REQUIRED_DOCUMENTS)
    return list(REQUIRED_DOCUMENTS.get(key, DEFAULT_REQUIRED_DOCUMENTS))


def load_seller(db: Session, seller_id: str) -> Seller:
    seller = db.get(Seller, seller_id)
    if seller is None:
        raise NotFound("Seller not found", code="SELLER_NOT_FOUND")
    return seller


def require_verified_seller(db: Session, actor: Any) -> Seller:
    """The actor's seller profile, provided it may transact."""
    seller = order_records.seller_for_user(db, getattr(actor, "id", None))
    if seller is None or not seller.can_transact:
        raise AccessDenied("Verified seller account required", code="SELLER_NOT_VERIFIED")
    return seller


def apply_as_seller(
    db: Session,
    user: Any,
    business_name: str,
    business_type: Any,
    description: str,
    business_info: Optional[Dict[str, Any]] = None,
    *,
    clock: Clock = utc_now,
) -> Seller:
    """Create a pending seller profile and switch the user to the seller role."""
    try:
        application = SellerApplication.model_validate({
            "businessName": business_name,
            "businessType": getattr(business_type, "value", business_type),
            "description": description,
            "businessInfo": business_info,
        })
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc)

    existing = order_records.seller_for_user(db, user.id)
    if existing is not None:
        raise ValidationFailed(
            f"Seller application already exists ({existing.verification_status.value})",
            errors=[{"field": "user", "message": "Seller application already exists"}],
        )

    now = clock()
    try:
        seller = Seller(
            user_id=user.id,
            business_name=application.business_name,
            business_type=application.business_type,
            description=application.description,
            business_info=application.business_info or {},
            verification_status=VerificationStatus.pending,
            is_active=True,
            trust_badges=[],
            admin_notes=[],
            created_at=now,
        )
        db.add(seller)
        db.execute(
            update(User)
            .where(User.id == user.id)
            .values(role=UserRole.seller)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(seller)
    logger.info("Seller application %s submitted by user=%s (%s)", seller.id, user.id, seller.business_type.value)
    return seller


def add_document(
    db: Session,
    user: Any,
    doc_type: Any,
    url: str,
    *,
    clock: Clock = utc_now,
) -> SellerDocument:
    seller = order_records.seller_for_user(db, user.id)
    if seller is None:
        raise NotFound("Seller profile not found", code="SELLER_NOT_FOUND")
    try:
        kind = DocumentType(getattr(doc_type, "value", doc_type))
    except ValueError:
        raise ValidationFailed.for_field("type", "Invalid document type")
    if not url:
        raise ValidationFailed.for_field("url", "Document URL is required")

    try:
        document = SellerDocument(
            seller_id=seller.id,
            doc_type=kind,
            url=url,
            status=DocumentStatus.pending,
            uploaded_at=clock(),
        )
        db.add(document)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(document)
    logger.info("Document %s (%s) uploaded for seller=%s", document.id, kind.value, seller.id)
    return document


def review_document(
    db: Session,
    admin: Any,
    seller_id: str,
    document_id: str,
    status: Any,
    *,
    clock: Clock = utc_now,
) -> SellerDocument:
    order_records.require_admin(admin)
    try:
        target = DocumentStatus(getattr(status, "value", status))
    except ValueError:
        raise ValidationFailed.for_field("status", "Invalid document status")
    if target == DocumentStatus.pending:
        raise ValidationFailed.for_field("status", "Documents can only be approved or rejected")

    document = db.get(SellerDocument, document_id)
    if document is None or document.seller_id != seller_id:
        raise NotFound("Document not found", code="DOCUMENT_NOT_FOUND")

    try:
        document.status = target
        document.reviewed_at = clock()
        document.reviewed_by = admin.id
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(document)
    logger.info("Document %s of seller=%s marked %s", document_id, seller_id, target.value)
    return document


def update_verification(
    db: Session,
    admin: Any,
    seller_id: str,
    status: Any,
    *,
    notes: Optional[str] = None,
    trust_badges: Optional[Iterable[Any]] = None,
    rejection_reason: Optional[str] = None,
    clock: Clock = utc_now,
) -> Seller:
    """Advance a seller through the verification machine (admin only).

    ``verified`` stamps verifier and time, activates the seller, assigns the
    optional trust badges and raises the linked user's trust score.
    ``rejected`` requires a reason and deactivates the seller.
    """
    order_records.require_admin(admin)
    try:
        target = VerificationStatus(getattr(status, "value", status))
    except ValueError:
        raise ValidationFailed.for_field("status", "Invalid verification status")

    seller = load_seller(db, seller_id)
    current = seller.verification_status
    check_verification_transition(current, target)

    if target == VerificationStatus.rejected and not (rejection_reason or "").strip():
        raise ValidationFailed.for_field("rejectionReason", "Rejection reason required")

    badges: List[str] = []
    if trust_badges:
        if target != VerificationStatus.verified:
            raise InvalidStatus("Trust badges can only be assigned to verified sellers")
        try:
            badges = [TrustBadge(getattr(badge, "value", badge)).value for badge in trust_badges]
        except ValueError:
            raise ValidationFailed.for_field("trustBadges", "Invalid trust badge")

    now = clock()
    values: Dict[str, Any] = {"verification_status": target}
    if target == VerificationStatus.verified:
        values.update(verified_at=now, verified_by=admin.id, is_active=True, rejection_reason=None)
        if badges:
            values["trust_badges"] = badges
    elif target == VerificationStatus.rejected:
        values.update(rejection_reason=rejection_reason, is_active=False)
    if notes:
        values["admin_notes"] = list(seller.admin_notes or []) + [
            {"note": notes, "addedBy": admin.id, "addedAt": now.isoformat()}
        ]

    try:
        result = db.execute(
            update(Seller)
            .where(Seller.id == seller.id, Seller.verification_status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStatus("Seller verification changed concurrently")
        if target == VerificationStatus.verified:
            db.execute(
                update(User)
                .where(User.id == seller.user_id)
                .values(
                    trust_score=User.trust_score + settings.VERIFICATION_TRUST_BONUS,
                    is_verified=True,
                )
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(seller)
    logger.info("Seller %s verification: %s -> %s (by admin=%s)", seller.id, current.value, target.value, admin.id)
    return seller


def verification_checklist(seller: Seller) -> Dict[str, Any]:
    documents = seller.documents or []
    info = seller.business_info or {}
    address = info.get("businessAddress") or {}
    return {
        "businessInfo": {
            "complete": bool(seller.business_name and seller.business_type and seller.description),
            "required": ["businessName", "businessType", "description"],
        },
        "documents": {
            "submitted": len(documents),
            "required": len(required_documents(seller.business_type)),
            "approved": len([doc for doc in documents if doc.status == DocumentStatus.approved]),
        },
        "businessAddress": {
            "complete": bool(address.get("street") and address.get("city") and address.get("division")),
        },
    }


def risk_assessment(seller: Seller, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    info = seller.business_info or {}
    social = info.get("socialMedia") or {}
    created_at = ensure_utc(seller.created_at) or now

    factors = {
        "newSeller": (now - created_at) < timedelta(days=NEW_SELLER_DAYS),
        "incompleteProfile": not info.get("establishedYear"),
        "missingWebsite": not info.get("website"),
        "noSocialMedia": not (social.get("facebook") or social.get("instagram")),
    }
    score = sum(1 for flagged in factors.values() if flagged)
    if score >= 3:
        level = "high"
    elif score >= 2:
        level = "medium"
    else:
        level = "low"

    recommendations = []
    if factors["newSeller"]:
        recommendations.append("Monitor closely for first 3 months")
    if factors["incompleteProfile"]:
        recommendations.append("Request additional business information")
    if factors["missingWebsite"]:
        recommendations.append("Verify business through alternative channels")
    if seller.business_type == BusinessType.celebrity:
        recommendations.append("Require additional identity verification for celebrity status")

    return {
        "score": score,
        "level": level,
        "factors": [name for name, flagged in factors.items() if flagged],
        "recommendations": recommendations,
    }


def serialize_seller(seller: Seller) -> Dict[str, Any]:
    return {
        "id": seller.id,
        "userId": seller.user_id,
        "businessName": seller.business_name,
        "businessType": seller.business_type.value,
        "description": seller.description,
        "businessInfo": seller.business_info or {},
        "verificationStatus": seller.verification_status.value,
        "verifiedAt": seller.verified_at.isoformat() if seller.verified_at else None,
        "verifiedBy": seller.verified_by,
        "rejectionReason": seller.rejection_reason,
        "trustBadges": list(seller.trust_badges or []),
        "isActive": bool(seller.is_active),
        "rating": {"average": float(seller.rating_average or 0), "count": seller.rating_count or 0},
        "totalSales": float(seller.total_sales or 0),
        "totalOrders": seller.total_orders or 0,
        "documents": [
            {
                "id": doc.id,
                "type": doc.doc_type.value,
                "url": doc.url,
                "status": doc.status.value,
                "uploadedAt": doc.uploaded_at.isoformat() if doc.uploaded_at else None,
            }
            for doc in seller.documents or []
        ],
    }


def seller_verification_details(db: Session, admin: Any, seller_id: str, *, clock: Clock = utc_now) -> Dict[str, Any]:
    order_records.require_admin(admin)
    seller = load_seller(db, seller_id)
    return {
        "seller": serialize_seller(seller),
        "requiredDocuments": [doc.value for doc in required_documents(seller.business_type)],
        "verificationChecklist": verification_checklist(seller),
        "riskAssessment": risk_assessment(seller, clock()),
    }


def list_seller_verifications(
    db: Session,
    admin: Any,
    status: Optional[Any] = None,
) -> Dict[str, Any]:
    order_records.require_admin(admin)
    query = db.query(Seller)
    if status is not None:
        try:
            wanted = VerificationStatus(getattr(status, "value", status))
        except ValueError:
            raise ValidationFailed.for_field("status", "Invalid verification status")
        query = query.filter(Seller.verification_status == wanted)
    sellers = query.order_by(Seller.created_at.asc()).all()

    counts = dict(
        db.query(Seller.verification_status, func.count(Seller.id))
        .group_by(Seller.verification_status)
        .all()
    )
    summary = {state.value: int(counts.get(state, 0)) for state in VerificationStatus}
    return {"sellers": [serialize_seller(seller) for seller in sellers], "summary": summary}
