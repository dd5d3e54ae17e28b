from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_market.models_sqlalchemy.models import OrderStatus, PaymentMethod


# Methods a customer may pick at checkout; bank transfers are settled offline.
CHECKOUT_PAYMENT_METHODS = {
    PaymentMethod.stripe,
    PaymentMethod.sslcommerz,
    PaymentMethod.bkash,
    PaymentMethod.nagad,
    PaymentMethod.rocket,
}


class ShippingAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    division: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1, alias="postalCode")
    country: str = "Bangladesh"


class OrderItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    quantity: int = Field(..., ge=1)


class OrderCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: ShippingAddress = Field(..., alias="shippingAddress")
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")

    @field_validator("payment_method")
    @classmethod
    def _checkout_method(cls, value: PaymentMethod) -> PaymentMethod:
        if value not in CHECKOUT_PAYMENT_METHODS:
            raise ValueError("Invalid payment method")
        return value


class PaymentConfirmationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: Optional[str] = Field(None, alias="transactionId")
    success: bool = True
    failure_reason: Optional[str] = Field(None, alias="failureReason")


class FulfillmentUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: OrderStatus
    tracking_number: Optional[str] = Field(None, alias="trackingNumber")
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = Field(None, alias="estimatedDelivery")


class DeliveryConfirmationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delivery_notes: Optional[str] = Field(None, alias="deliveryNotes")


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None


class DisputeOpenRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)


class DisputeResolveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resolution: str = Field(..., min_length=1)
    refund_amount: Optional[Decimal] = Field(None, ge=0, alias="refundAmount")
    admin_notes: Optional[str] = Field(None, alias="adminNotes")


class DisputeCloseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    admin_notes: Optional[str] = Field(None, alias="adminNotes")
