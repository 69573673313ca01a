"""
Order lifecycle Pydantic schemas for API request/response validation.

Covers order placement, administrative transitions, payment proof
uploads, manual review and the audit history.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from orderflow.services.orders.enums import OrderStatus, ProofStatus


class OrderItemRequest(BaseModel):
    """One line of a new order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    product_id: str = Field(..., min_length=1, max_length=64, description="Product identifier")
    variant_id: Optional[str] = Field(None, max_length=64, description="Product variant")
    product_name: Optional[str] = Field(None, max_length=255, description="Display name")
    quantity: int = Field(..., gt=0, le=10000, description="Units ordered")
    unit_price: Decimal = Field(
        ...,
        ge=Decimal("0"),
        max_digits=12,
        decimal_places=2,
        description="Price per unit",
    )


class CustomerInfoRequest(BaseModel):
    """Customer placing the order."""

    model_config = ConfigDict(str_strip_whitespace=True)

    customer_id: str = Field(..., min_length=1, max_length=64, description="Customer identifier")
    chat_id: Optional[str] = Field(
        None,
        max_length=64,
        description="Messaging chat id status notifications are sent to",
    )


class OrderCreateRequest(BaseModel):
    """Request schema for placing an order."""

    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "store_id": "store-1",
                "store_name": "Corner Shop",
                "currency": "USD",
                "client_request_id": "cart-7f3a",
                "customer": {"customer_id": "cust-42", "chat_id": "123456789"},
                "items": [
                    {"product_id": "sku-1", "quantity": 2, "unit_price": "9.99"},
                ],
            }
        },
    )

    store_id: str = Field(..., min_length=1, max_length=64)
    store_name: Optional[str] = Field(None, max_length=255)
    currency: str = Field("USD", min_length=3, max_length=3, description="ISO 4217 code")
    client_request_id: Optional[str] = Field(
        None,
        max_length=128,
        description="Idempotency key; repeating it returns the original order",
    )
    notes: Optional[str] = Field(None, max_length=2000)
    customer: CustomerInfoRequest
    items: list[OrderItemRequest] = Field(..., min_length=1, max_length=200)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()


class ReasonRequest(BaseModel):
    """Body for reject and cancel."""

    reason: str = Field(..., min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Reason cannot be blank")
        return v.strip()


class ShipRequest(BaseModel):
    tracking_number: Optional[str] = Field(None, max_length=128)
    carrier: Optional[str] = Field(None, max_length=64)


class DeliverRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class ProofReviewRequest(BaseModel):
    """Manual decision on a payment proof."""

    approve: bool
    reason: Optional[str] = Field(None, max_length=1000)


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    variant_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: int
    unit_price: Decimal


class OrderResponse(BaseModel):
    """Complete order response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: OrderStatus
    store_id: str
    store_name: str
    customer_id: str
    customer_chat_id: Optional[str] = None
    currency: str
    total_amount: Decimal
    notes: Optional[str] = None
    active_proof_id: Optional[UUID] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    delivery_notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemResponse] = Field(default_factory=list)


class ProofUploadResponse(BaseModel):
    """Response for an accepted payment proof."""

    model_config = ConfigDict(from_attributes=True)

    proof_id: UUID
    order_id: UUID
    detected_mime_type: str
    size_bytes: int
    uploaded_at: datetime
    superseded_proof_id: Optional[UUID] = None


class PendingReviewResponse(BaseModel):
    proof_id: UUID
    order_id: UUID
    order_number: str
    store_id: str
    total_amount: Decimal
    currency: str
    proof_status: ProofStatus
    confidence_score: Optional[float] = None
    uploaded_at: datetime
    original_filename: str
    verification: dict[str, Any] = Field(default_factory=dict)


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    action: str
    actor: str
    order_id: UUID
    details: Optional[dict[str, Any]] = None
    created_at: datetime
