"""
Service wiring for the API.

Services are built once per process and handed to routes through FastAPI
dependencies, so tests can swap the whole set with ``dependency_overrides``.
"""
import hmac
from typing import Optional

import structlog
from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from core.checkout import CheckoutService
from core.dispatcher import ReconciliationDispatcher
from core.event_store import WebhookEventStore
from core.idempotency import (
    ExpirySweeper,
    IdempotencyGuard,
    IdempotencyStore,
    create_idempotency_store,
)
from core.notifications import NotificationTrigger
from core.order_state_machine import OrderStateMachine
from core.signature import SignatureVerifier
from integrations.email_client import ResendEmailSender
from integrations.gateway_client import RazorpayClient
from integrations.storage_client import S3DownloadLinkSigner
from integrations.webhook_handler import WebhookHandler

logger = structlog.get_logger(__name__)


class Services:
    """All collaborators of the webhook and checkout paths."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        idempotency_store: Optional[IdempotencyStore] = None,
        email_sender=None,
        link_signer=None,
        gateway: Optional[RazorpayClient] = None,
    ):
        settings = get_settings()
        self.verifier = SignatureVerifier(
            settings.razorpay_webhook_secret, settings.razorpay_key_secret
        )
        self.idempotency_store = idempotency_store or create_idempotency_store(settings)
        self.guard = IdempotencyGuard(self.idempotency_store, settings.idempotency_ttl_seconds)
        self.sweeper = ExpirySweeper(
            self.idempotency_store, settings.idempotency_sweep_interval_seconds
        )
        self.event_store = WebhookEventStore(session_factory)
        self.state_machine = OrderStateMachine(session_factory)
        self.notifier = NotificationTrigger(
            email_sender or ResendEmailSender(),
            link_signer or S3DownloadLinkSigner(),
            session_factory=session_factory,
        )
        self.dispatcher = ReconciliationDispatcher(
            self.state_machine, self.event_store, self.notifier
        )
        self.webhook_handler = WebhookHandler(
            self.verifier, self.guard, self.event_store, self.dispatcher
        )
        self.gateway = gateway or RazorpayClient()
        self.checkout = CheckoutService(
            self.gateway,
            self.verifier,
            self.state_machine,
            self.notifier,
            session_factory=session_factory,
        )

    async def start(self) -> None:
        self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.idempotency_store.close()
        await self.gateway.close()


_services: Optional[Services] = None


def get_services() -> Services:
    """Dependency returning the process-wide services."""
    global _services
    if _services is None:
        _services = Services()
    return _services


def reset_services() -> None:
    global _services
    _services = None


async def require_admin_key(
    api_key: Optional[str] = Header(default=None, alias=get_settings().api_key_header),
) -> None:
    """Admin endpoints require the configured API key."""
    expected = get_settings().admin_api_key
    if not expected:
        logger.error("admin_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access is not configured",
        )
    if not api_key or not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("admin_auth_failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
