"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
    "WebhookResponse",
]
