"""
Pydantic schemas for API request/response models.

Amounts are integer minor units (paise).
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class LineItem(BaseModel):
    """One product line in a checkout request."""

    product_id: UUID = Field(..., description="Product identifier")
    quantity: int = Field(default=1, ge=1, description="Number of copies")


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    items: List[LineItem] = Field(..., min_length=1, description="Products to buy")
    user_id: Optional[UUID] = Field(default=None, description="Registered buyer")
    guest_email: Optional[str] = Field(default=None, max_length=255, description="Guest email")
    guest_name: Optional[str] = Field(default=None, max_length=100, description="Guest name")

    @field_validator("guest_email")
    @classmethod
    def validate_guest_email(cls, v: Optional[str]) -> Optional[str]:
        """Light shape check; deliverability is the email provider's job."""
        if v is None:
            return v
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v

    @model_validator(mode="after")
    def require_buyer(self) -> "CreateOrderRequest":
        """Either a user id or a full guest identity."""
        if self.user_id is None and not (self.guest_email and self.guest_name):
            raise ValueError("Either user_id or guest_email and guest_name are required")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {"product_id": "123e4567-e89b-12d3-a456-426614174000", "quantity": 1}
                    ],
                    "guest_email": "buyer@example.com",
                    "guest_name": "Asha",
                }
            ]
        }
    }


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Internal order number")
    purchase_id: str = Field(..., description="Customer-facing purchase reference")
    gateway_order_id: str = Field(..., description="Razorpay order ID")
    amount: int = Field(..., description="Total amount in paise")
    currency: str = Field(..., description="Currency code")
    key_id: str = Field(..., description="Public gateway key for the checkout widget")


class VerifyPaymentRequest(BaseModel):
    """Values the checkout widget hands back after payment."""

    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class VerifyPaymentResponse(BaseModel):
    """Response schema for payment verification."""

    success: bool = Field(..., description="Whether the order is paid")
    message: str = Field(..., description="Status message")
    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Internal order number")
    payment_status: str = Field(..., description="Order payment status after verification")


class OrderItemResponse(BaseModel):
    """Line item as priced at checkout."""

    product_id: str
    name: Optional[str] = None
    price: int
    quantity: int


class OrderResponse(BaseModel):
    """Order as seen by its buyer."""

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Internal order number")
    purchase_id: str = Field(..., description="Short purchase reference")
    payment_status: str = Field(..., description="Current payment status")
    total_amount: int = Field(..., description="Total in minor units")
    items: List[OrderItemResponse] = Field(..., description="Line items")
    email_sent: bool = Field(..., description="Whether the confirmation went out")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")


class DownloadResponse(BaseModel):
    """Signed download link for a purchased product."""

    download_url: str = Field(..., description="Time-limited download URL")
    password: str = Field(..., description="PDF password")
    expires_in_seconds: int = Field(..., description="Link lifetime")


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    status: str = Field(..., description="Processing status")


class WebhookEventResponse(BaseModel):
    """One stored webhook delivery."""

    id: str
    event_id: str
    event_type: str
    payload: Dict[str, Any]
    status: str
    error_message: Optional[str] = None
    requires_review: bool = False
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    method: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class WebhookEventListResponse(BaseModel):
    """Paginated webhook deliveries."""

    events: List[WebhookEventResponse]
    pagination: Pagination


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
