import pytest
from sqlalchemy import update

from escrow_market.models_sqlalchemy.models import (
    BusinessType,
    DocumentStatus,
    DocumentType,
    Seller,
    User,
    UserRole,
    VerificationStatus,
)
from escrow_market.services import verification_gate
from escrow_market.services.errors import AccessDenied, InvalidStatus, NotFound, ValidationFailed


@pytest.fixture()
def applicant(db, market, clock):
    user = market.customer("Applicant")
    seller = verification_gate.apply_as_seller(
        db,
        user,
        "Shine Cosmetics",
        "brand",
        "Official cosmetics brand store",
        {"website": "https://shine.example.com"},
        clock=clock,
    )
    return user, seller


def test_apply_creates_pending_seller(db, applicant):
    user, seller = applicant

    assert seller.verification_status == VerificationStatus.pending
    assert seller.business_type == BusinessType.brand
    db.refresh(user)
    assert user.role == UserRole.seller


def test_apply_twice_rejected(db, applicant, clock):
    user, _ = applicant
    with pytest.raises(ValidationFailed):
        verification_gate.apply_as_seller(db, user, "Again", "brand", "Second try", clock=clock)


def test_apply_validates_business_type(db, market, clock):
    with pytest.raises(ValidationFailed):
        verification_gate.apply_as_seller(db, market.customer(), "X", "pop_star", "desc", clock=clock)


def test_required_documents_per_business_type():
    assert DocumentType.brand_authorization in verification_gate.required_documents(BusinessType.brand)
    assert DocumentType.celebrity_verification in verification_gate.required_documents("celebrity")
    assert verification_gate.required_documents("unknown") == verification_gate.DEFAULT_REQUIRED_DOCUMENTS


def test_full_verification_path(db, market, applicant, clock):
    user, seller = applicant
    admin = market.admin()

    seller = verification_gate.update_verification(
        db, admin, seller.id, VerificationStatus.under_review, notes="Docs received", clock=clock
    )
    assert seller.verification_status == VerificationStatus.under_review
    assert seller.can_transact is False

    seller = verification_gate.update_verification(
        db, admin, seller.id, "verified", trust_badges=["verified_brand"], clock=clock
    )
    assert seller.verification_status == VerificationStatus.verified
    assert seller.verified_by == admin.id
    assert seller.trust_badges == ["verified_brand"]
    assert seller.can_transact is True
    assert seller.admin_notes[0]["note"] == "Docs received"

    refreshed = db.get(User, user.id)
    db.refresh(refreshed)
    assert refreshed.is_verified is True
    assert refreshed.trust_score == 50


def test_pending_cannot_jump_to_verified(db, market, applicant, clock):
    _, seller = applicant
    with pytest.raises(InvalidStatus):
        verification_gate.update_verification(db, market.admin(), seller.id, "verified", clock=clock)


def test_rejection_needs_reason_and_deactivates(db, market, applicant, clock):
    _, seller = applicant
    admin = market.admin()

    with pytest.raises(ValidationFailed):
        verification_gate.update_verification(db, admin, seller.id, "rejected", clock=clock)

    seller = verification_gate.update_verification(
        db, admin, seller.id, "rejected", rejection_reason="Trade license expired", clock=clock
    )
    assert seller.is_active is False
    assert seller.rejection_reason == "Trade license expired"

    seller = verification_gate.update_verification(db, admin, seller.id, "under_review", clock=clock)
    assert seller.verification_status == VerificationStatus.under_review


def test_badges_only_for_verified(db, market, applicant, clock):
    _, seller = applicant
    with pytest.raises(InvalidStatus):
        verification_gate.update_verification(
            db, market.admin(), seller.id, "under_review", trust_badges=["top_rated"], clock=clock
        )


def test_only_admin_moves_verification(db, applicant, clock):
    user, seller = applicant
    with pytest.raises(AccessDenied):
        verification_gate.update_verification(db, user, seller.id, "under_review", clock=clock)


def test_documents_upload_and_review(db, market, applicant, clock):
    user, seller = applicant
    admin = market.admin()

    document = verification_gate.add_document(db, user, "trade_license", "https://docs.example.com/tl.pdf", clock=clock)
    assert document.status == DocumentStatus.pending

    reviewed = verification_gate.review_document(db, admin, seller.id, document.id, "approved", clock=clock)
    assert reviewed.status == DocumentStatus.approved
    assert reviewed.reviewed_by == admin.id

    with pytest.raises(ValidationFailed):
        verification_gate.review_document(db, admin, seller.id, document.id, "pending", clock=clock)
    with pytest.raises(NotFound):
        verification_gate.review_document(db, admin, "other-seller", document.id, "approved", clock=clock)

    details = verification_gate.seller_verification_details(db, admin, seller.id, clock=clock)
    assert details["verificationChecklist"]["documents"] == {"submitted": 1, "required": 4, "approved": 1}
    assert details["requiredDocuments"][0] == "trade_license"


def test_document_upload_requires_seller_profile(db, market, clock):
    with pytest.raises(NotFound):
        verification_gate.add_document(db, market.customer(), "trade_license", "https://x", clock=clock)


def test_risk_assessment_flags_new_sellers(applicant, clock):
    _, seller = applicant

    risk = verification_gate.risk_assessment(seller, clock())
    assert "newSeller" in risk["factors"]
    assert "missingWebsite" not in risk["factors"]
    assert risk["level"] == "high"

    clock.advance(days=45)
    later = verification_gate.risk_assessment(seller, clock())
    assert "newSeller" not in later["factors"]
    assert later["score"] == risk["score"] - 1


def test_list_seller_verifications_summary(db, market, applicant):
    market.seller()
    admin = market.admin()

    listing = verification_gate.list_seller_verifications(db, admin)
    assert listing["summary"]["pending"] == 1
    assert listing["summary"]["verified"] == 1

    pending = verification_gate.list_seller_verifications(db, admin, "pending")
    assert [s["businessName"] for s in pending["sellers"]] == ["Shine Cosmetics"]


def test_require_verified_seller(db, market, applicant):
    user, _ = applicant
    with pytest.raises(AccessDenied) as exc_info:
        verification_gate.require_verified_seller(db, user)
    assert exc_info.value.code == "SELLER_NOT_VERIFIED"

    verified_user, verified = market.seller()
    assert verification_gate.require_verified_seller(db, verified_user).id == verified.id


def test_concurrent_verification_applies_trust_bonus_once(db, market, clock):
    seller_user, seller = market.seller(status=VerificationStatus.under_review)
    admin = market.admin()
    score_before = db.query(User.trust_score).filter(User.id == seller_user.id).scalar()
    assert seller.verification_status == VerificationStatus.under_review

    # Another admin verifies the seller; this session still holds the under_review row.
    db.execute(
        update(Seller)
        .where(Seller.id == seller.id)
        .values(verification_status=VerificationStatus.verified)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(InvalidStatus):
        verification_gate.update_verification(db, admin, seller.id, "verified", clock=clock)

    assert db.query(User.trust_score).filter(User.id == seller_user.id).scalar() == score_before
