"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ProfileUpdateRequest(BaseModel):
    """Self-service profile changes."""

    full_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=30)
    user_type: Optional[Literal["buyer", "seller", "both", "lawyer"]] = None
    country_code: Optional[str] = Field(default=None, min_length=2, max_length=2)


class PropertyCreateRequest(BaseModel):
    """Request schema for creating a listing."""

    title: str = Field(..., min_length=10, max_length=200, description="Listing headline")
    description: str = Field(..., min_length=50, max_length=5000)
    price: Decimal = Field(..., ge=10000, le=1000000000, description="Asking price in major units")
    property_type: str = Field(..., description="house, apartment, townhouse, land, commercial or farm")
    bedrooms: int = Field(default=0, ge=0, le=50)
    bathrooms: int = Field(default=0, ge=0, le=50)
    address: str = Field(..., min_length=3, max_length=300)
    city: str = Field(..., min_length=2, max_length=100)
    country_code: Optional[str] = Field(default=None, min_length=2, max_length=2)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "title": "Three bedroom family home in Rondebosch",
                    "description": "Sunny north-facing home close to schools, with a large "
                    "garden, double garage and staff quarters.",
                    "price": 2500000,
                    "property_type": "house",
                    "bedrooms": 3,
                    "bathrooms": 2,
                    "address": "12 Main Road",
                    "city": "Cape Town",
                    "country_code": "ZA",
                }
            ]
        }
    }


class PropertyUpdateRequest(BaseModel):
    """Partial listing update. Omitted fields are left unchanged."""

    title: Optional[str] = Field(default=None, min_length=10, max_length=200)
    description: Optional[str] = Field(default=None, min_length=50, max_length=5000)
    price: Optional[Decimal] = Field(default=None, ge=10000, le=1000000000)
    property_type: Optional[str] = None
    bedrooms: Optional[int] = Field(default=None, ge=0, le=50)
    bathrooms: Optional[int] = Field(default=None, ge=0, le=50)
    address: Optional[str] = Field(default=None, max_length=300)
    city: Optional[str] = Field(default=None, max_length=100)


class OfferCreateRequest(BaseModel):
    property_id: UUID
    amount: Decimal = Field(..., gt=0, description="Offered price in major units")
    message: Optional[str] = Field(default=None, max_length=2000)
    valid_until: Optional[datetime] = Field(default=None, description="Expiry, defaults to 7 days")


class OfferRejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class CounterOfferRequest(BaseModel):
    counter_amount: Decimal = Field(..., gt=0)
    message: Optional[str] = Field(default=None, max_length=2000)


class LawyerRegisterRequest(BaseModel):
    firm_name: str = Field(..., min_length=2, max_length=200)
    flat_fee_buyer: Decimal = Field(..., ge=1000, le=1000000)
    flat_fee_seller: Decimal = Field(..., ge=1000, le=1000000)
    country_code: Optional[str] = Field(default=None, min_length=2, max_length=2)


class SelectLawyerRequest(BaseModel):
    lawyer_id: UUID


class ViewingCreateRequest(BaseModel):
    property_id: UUID
    requested_date: date
    requested_time_slot: Literal["morning", "afternoon", "evening"]
    financing_status: Literal["cash", "pre_approved", "financing_in_progress", "exploring"]
    pre_approval_amount: Optional[Decimal] = Field(default=None, gt=0)
    message: Optional[str] = Field(default=None, max_length=1000)


class ViewingConfirmRequest(BaseModel):
    confirmed_date: date
    confirmed_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM")
    response: Optional[str] = Field(default=None, max_length=1000)


class ViewingCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class LawyerReviewRequest(BaseModel):
    """Review of the lawyer who acted for the caller."""

    rating: int = Field(..., ge=1, le=5)
    communication_rating: Optional[int] = Field(default=None, ge=1, le=5)
    professionalism_rating: Optional[int] = Field(default=None, ge=1, le=5)
    efficiency_rating: Optional[int] = Field(default=None, ge=1, le=5)
    review_text: str = Field(..., min_length=20, max_length=1000)
    would_recommend: bool = True


class CancelTransactionRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class SuccessFeeCheckoutRequest(BaseModel):
    """Request schema for paying a success fee."""

    transaction_id: UUID
    role: Literal["buyer", "seller"] = Field(..., description="Which side's fee is being paid")


class FeaturedCheckoutRequest(BaseModel):
    property_id: UUID
    plan: Literal["featured_7", "featured_30", "premium_30"]


class CheckoutSessionResponse(BaseModel):
    """Response schema for a created Checkout session."""

    session_id: str = Field(..., description="Stripe Checkout session ID")
    url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    amount: Decimal = Field(..., description="Amount in major units")
    currency: str
    payment_id: str


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Partial refund amount (full remaining refund if omitted)"
    )
    reason: Optional[str] = Field(default=None, max_length=500, description="Refund reason")


class ConversationCreateRequest(BaseModel):
    recipient_id: UUID
    property_id: Optional[UUID] = None
    initial_message: Optional[str] = Field(default=None, max_length=5000)


class MessageCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message cannot be empty")
        return v


class InquiryRequest(BaseModel):
    message: str = Field(..., min_length=10, max_length=1000)


class ModerationActionRequest(BaseModel):
    action: Literal["approve", "reject", "flag", "unflag"]
    reason: Optional[str] = Field(default=None, max_length=2000)


class ReportRequest(BaseModel):
    resource_type: Literal["property", "message", "profile"]
    resource_id: UUID
    reason: Literal["spam", "fraud", "inappropriate", "duplicate", "misleading", "other"]
    details: Optional[str] = Field(default=None, max_length=2000)


class FlagReviewRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    notes: Optional[str] = Field(default=None, max_length=2000)


class SuspendUserRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class SettingUpdateRequest(BaseModel):
    value: Any = Field(..., description="New value, coerced to the setting's type")


class RemittanceRequest(BaseModel):
    payment_ids: List[UUID] = Field(..., min_length=1)


class FeeCalculationResponse(BaseModel):
    """Savings of the flat fee against traditional agent commission."""

    property_price: Decimal
    country_code: str
    currency: str
    currency_symbol: str
    commission_rate: Decimal
    buyer_agent_fee: Decimal
    seller_agent_fee: Decimal
    traditional_agent_fee: Decimal
    platform_fee: Decimal
    total_savings: Decimal
    savings_percentage: Decimal
    display: Dict[str, str]


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, duplicate or no_handler")
    event_id: str = Field(..., description="Stripe event ID")
    event_type: Optional[str] = Field(default=None, description="Stripe event type")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")


class ReconciliationResponse(BaseModel):
    """Response schema for a pending-payment reconciliation run."""

    run_id: int
    checked: int
    completed: int
    expired: int
    unchanged: int
    errors: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="alive, healthy, degraded or unhealthy")
    checks: Dict[str, Any] = Field(..., description="Individual component health checks")
