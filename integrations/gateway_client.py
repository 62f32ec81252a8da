"""
Razorpay REST client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Bounded request timeouts
"""
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the gateway, if any
            original_error: Underlying exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Stops sending requests for ``timeout`` seconds once ``failure_threshold``
    consecutive calls have failed, then lets trial calls through.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            GatewayError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class RazorpayClient:
    """
    Async wrapper for the Razorpay Orders and Payments API.

    Features:
    - Basic auth with the key id / key secret pair
    - Automatic retry with exponential backoff for transient failures
    - Circuit breaker
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        """
        Args:
            http_client: Optional preconfigured client (tests inject a mock transport)
        """
        settings = get_settings()
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.razorpay_api_base_url,
            auth=(settings.razorpay_key_id, settings.razorpay_key_secret),
            timeout=settings.gateway_timeout_seconds,
        )

        logger.info(
            "gateway_client_initialized",
            test_mode=settings.is_test_mode,
            configured=settings.gateway_configured,
        )

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _request(
        self, operation: str, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not self.settings.gateway_configured:
            raise GatewayError("Gateway credentials are not configured", GatewayErrorType.PERMANENT)
        self.circuit_breaker.before_call()
        started = time.time()
        try:
            response = await self.http_client.request(method, path, json=json)
        except httpx.HTTPError as e:
            self.circuit_breaker.on_failure()
            metrics.record_gateway_api_call(operation, "error", time.time() - started)
            metrics.record_gateway_api_error(GatewayErrorType.TRANSIENT.value)
            logger.error("gateway_api_connection_error", operation=operation, error=str(e))
            raise GatewayError(str(e), GatewayErrorType.TRANSIENT, original_error=e)

        duration = time.time() - started
        if response.is_error:
            error_type = self._classify_status(response.status_code)
            if error_type != GatewayErrorType.PERMANENT:
                self.circuit_breaker.on_failure()
            metrics.record_gateway_api_call(operation, "error", duration)
            metrics.record_gateway_api_error(error_type.value)

            description = response.text
            try:
                description = response.json().get("error", {}).get("description") or description
            except ValueError:
                pass
            logger.error(
                "gateway_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
                error_message=description,
            )
            raise GatewayError(description, error_type, status_code=response.status_code)

        self.circuit_breaker.on_success()
        metrics.record_gateway_api_call(operation, "success", duration)
        return response.json()

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway order for checkout.

        Args:
            amount: Amount in minor units (paise)
            currency: Currency code (e.g., 'INR')
            receipt: Our order number, echoed back by the gateway
            notes: Optional key/value notes

        Returns:
            Dict[str, Any]: Gateway order entity (``id`` is the gateway order id)

        Raises:
            GatewayError: If order creation fails
        """
        logger.info("creating_gateway_order", amount=amount, currency=currency, receipt=receipt)
        order = await self._request(
            "create_order",
            "POST",
            "/orders",
            json={
                "amount": amount,
                "currency": currency.upper(),
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        logger.info("gateway_order_created", gateway_order_id=order.get("id"), receipt=receipt)
        return order

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Retrieve a payment by id.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("fetching_gateway_payment", payment_id=payment_id)
        return await self._request("fetch_payment", "GET", f"/payments/{payment_id}")

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
