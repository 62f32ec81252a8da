"""Core payment reconciliation logic."""
from .checkout import CheckoutError, CheckoutService, CheckoutValidationError
from .dispatcher import ReconciliationDispatcher
from .event_store import WebhookEventStore
from .idempotency import IdempotencyGuard, create_idempotency_store
from .notifications import NotificationError, NotificationTrigger
from .order_state_machine import OrderStateMachine
from .signature import SignatureVerifier

__all__ = [
    "CheckoutError",
    "CheckoutService",
    "CheckoutValidationError",
    "IdempotencyGuard",
    "NotificationError",
    "NotificationTrigger",
    "OrderStateMachine",
    "ReconciliationDispatcher",
    "SignatureVerifier",
    "WebhookEventStore",
    "create_idempotency_store",
]
