"""
API routes for checkout, webhooks, the webhook audit trail and monitoring.
"""
import math
import time
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.checkout import (
    CheckoutError,
    CheckoutValidationError,
    LineItemRequest,
    OrderNotFoundError,
)
from core.notifications import NotificationError
from core.order_state_machine import OrderStatus, TransitionOutcome
from database.connection import get_db
from database.models import WEBHOOK_EVENT_STATUSES, Order, Product
from monitoring.health import HealthCheck

from .dependencies import Services, get_services, require_admin_key
from .schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    DownloadResponse,
    HealthCheckResponse,
    OrderResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookEventListResponse,
    WebhookEventResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)]
)
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


@order_router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Snapshot prices and open a Razorpay order for checkout",
)
async def create_order(
    request: CreateOrderRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Create a pending order and the matching gateway order."""
    logger.info(
        "api_create_order_request",
        item_count=len(request.items),
        buyer_type="user" if request.user_id else "guest",
    )
    try:
        result = await services.checkout.create_order(
            items=[
                LineItemRequest(product_id=str(item.product_id), quantity=item.quantity)
                for item in request.items
            ],
            user_id=request.user_id,
            guest_email=request.guest_email,
            guest_name=request.guest_name,
        )
    except CheckoutValidationError as e:
        logger.warning("api_create_order_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CheckoutError as e:
        logger.error("api_create_order_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    order = result.order
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "purchase_id": order.purchase_id,
        "gateway_order_id": order.gateway_order_id,
        "amount": order.total_amount,
        "currency": result.gateway_order.get("currency", get_settings().currency),
        "key_id": get_settings().razorpay_key_id,
    }


@order_router.post(
    "/verify-payment",
    response_model=VerifyPaymentResponse,
    summary="Verify a payment",
    description="Confirm a payment reported by the checkout widget",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Apply the capture transition after checking the widget signature."""
    try:
        result = await services.checkout.verify_payment(
            request.razorpay_order_id,
            request.razorpay_payment_id,
            request.razorpay_signature,
        )
    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CheckoutValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CheckoutError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    order = result.order
    message = (
        "Payment verified successfully"
        if result.outcome == TransitionOutcome.APPLIED
        else "Payment already verified"
    )
    return {
        "success": order.payment_status == OrderStatus.COMPLETED.value,
        "message": message,
        "order_id": str(order.id),
        "order_number": order.order_number,
        "payment_status": order.payment_status,
    }


def _is_buyer(order: Order, guest_email: Optional[str], user_id: Optional[uuid.UUID]) -> bool:
    return (order.user_id is not None and order.user_id == user_id) or (
        order.guest_email is not None
        and guest_email is not None
        and order.guest_email == guest_email.strip().lower()
    )


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
    description="Order status and items, visible to its buyer only",
)
async def get_order(
    order_id: uuid.UUID,
    guest_email: Optional[str] = Query(default=None),
    user_id: Optional[uuid.UUID] = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if not _is_buyer(order, guest_email, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")

    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "purchase_id": order.purchase_id,
        "payment_status": order.payment_status,
        "total_amount": order.total_amount,
        "items": order.items or [],
        "email_sent": order.email_sent,
        "created_at": order.created_at.isoformat(),
    }


@order_router.get(
    "/{order_id}/download/{product_id}",
    response_model=DownloadResponse,
    summary="Download a purchased product",
    description="Signed, time-limited download link for a completed order",
)
async def download_product(
    order_id: uuid.UUID,
    product_id: uuid.UUID,
    guest_email: Optional[str] = Query(default=None),
    user_id: Optional[uuid.UUID] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Issue a download credential to the buyer of a completed order."""
    order = await db.get(Order, order_id)
    if order is None or order.payment_status != OrderStatus.COMPLETED.value:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found or payment not completed",
        )

    if not any(item.get("product_id") == str(product_id) for item in order.items or []):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found in order")

    if not _is_buyer(order, guest_email, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")

    product = (await db.execute(select(Product).where(Product.id == product_id))).scalar_one_or_none()
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    try:
        credential = await services.notifier.issue_credential(product)
    except NotificationError as e:
        logger.error("api_download_link_error", order_id=str(order_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to generate download link"
        )

    return {
        "download_url": credential.url,
        "password": credential.password,
        "expires_in_seconds": credential.expires_in_seconds,
    }


@webhook_router.post(
    "/razorpay",
    response_model=WebhookResponse,
    summary="Razorpay webhook endpoint",
    description="Handle Razorpay webhook events",
)
async def razorpay_webhook(
    request: Request,
    razorpay_signature: Optional[str] = Header(default=None, alias="X-Razorpay-Signature"),
    razorpay_event_id: Optional[str] = Header(default=None, alias="X-Razorpay-Event-Id"),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Handle Razorpay webhook events.

    The signature is checked against the raw body before it is parsed.
    """
    body = await request.body()
    result = await services.webhook_handler.handle_delivery(
        body, razorpay_signature, header_event_id=razorpay_event_id
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


@webhook_router.get("/health", summary="Webhook endpoint health")
async def webhook_health() -> Dict[str, Any]:
    """Liveness of the webhook endpoint."""
    return {"status": "ok", "endpoint": "/webhooks/razorpay", "timestamp": time.time()}


@admin_router.get(
    "/webhook-events",
    response_model=WebhookEventListResponse,
    summary="List webhook deliveries",
)
async def list_webhook_events(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    event_type: Optional[str] = Query(default=None),
    event_status: Optional[str] = Query(default=None, alias="status"),
    search: Optional[str] = Query(default=None, max_length=100),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Paginated audit trail with filters."""
    if event_status and event_status not in WEBHOOK_EVENT_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status filter")

    events, total = await services.event_store.list_events(
        page=page, limit=limit, event_type=event_type, status=event_status, search=search
    )
    return {
        "events": [event.to_dict() for event in events],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@admin_router.get("/webhook-events/stats", summary="Webhook delivery statistics")
async def webhook_event_stats(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Overall and last-24h outcome counts."""
    return await services.event_store.stats()


@admin_router.get(
    "/webhook-events/payment/{payment_id}",
    response_model=list[WebhookEventResponse],
    summary="Deliveries for a payment",
)
async def webhook_events_for_payment(
    payment_id: str, services: Services = Depends(get_services)
) -> list[Dict[str, Any]]:
    """All deliveries that referenced a gateway payment."""
    events = await services.event_store.list_by_payment(payment_id)
    return [event.to_dict() for event in events]


@admin_router.get(
    "/webhook-events/{record_id}",
    response_model=WebhookEventResponse,
    summary="Get a webhook delivery",
)
async def get_webhook_event(
    record_id: uuid.UUID, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Single delivery by audit row id."""
    event = await services.event_store.get(record_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    return event.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
