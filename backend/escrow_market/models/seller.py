from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from escrow_market.models_sqlalchemy.models import (
    BusinessType,
    DocumentStatus,
    DocumentType,
    TrustBadge,
    VerificationStatus,
)


class SellerApplication(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_name: str = Field(..., min_length=1, alias="businessName")
    business_type: BusinessType = Field(..., alias="businessType")
    description: str = Field(..., min_length=1, max_length=1000)
    business_info: Optional[Dict[str, Any]] = Field(None, alias="businessInfo")


class DocumentUpload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    doc_type: DocumentType = Field(..., alias="type")
    url: str = Field(..., min_length=1)


class DocumentReview(BaseModel):
    status: DocumentStatus


class VerificationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: VerificationStatus
    notes: Optional[str] = None
    trust_badges: Optional[List[TrustBadge]] = Field(None, alias="trustBadges")
    rejection_reason: Optional[str] = Field(None, alias="rejectionReason")
