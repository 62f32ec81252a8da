"""
Routes verified gateway events to order transitions.

Every :class:`GatewayEventType` member, ``UNKNOWN`` included, maps to a
handler; the mapping is checked when the dispatcher is built. Handlers are
isolated from each other and from the HTTP layer: whatever a handler raises
ends up as a ``failed`` audit row, never as an error response to the gateway.
"""
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from core.event_store import WebhookEventStore
from core.events import GatewayEventType, dig, get_entity
from core.notifications import NotificationTrigger
from core.order_state_machine import OrderStateMachine, TransitionOutcome, TransitionResult

logger = structlog.get_logger(__name__)


class DispatchStatus(str, Enum):
    """Final audit status of a dispatched event."""

    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class DispatchOutcome:
    """What happened to one event."""

    status: DispatchStatus
    message: Optional[str] = None
    transition: Optional[TransitionResult] = None
    notified: bool = False


Handler = Callable[[str, Dict[str, Any]], Awaitable[DispatchOutcome]]


class ReconciliationDispatcher:
    """Total mapping from gateway event types to handlers."""

    def __init__(
        self,
        state_machine: OrderStateMachine,
        event_store: WebhookEventStore,
        notifier: Optional[NotificationTrigger] = None,
    ):
        """
        Args:
            state_machine: Applies order transitions
            event_store: Audit trail to record outcomes on
            notifier: Optional order confirmation sender
        """
        self.state_machine = state_machine
        self.event_store = event_store
        self.notifier = notifier

        self.handlers: Dict[GatewayEventType, Handler] = {
            GatewayEventType.PAYMENT_CAPTURED: self._on_payment_captured,
            GatewayEventType.PAYMENT_FAILED: self._on_payment_failed,
            GatewayEventType.REFUND_CREATED: self._on_refund_created,
            GatewayEventType.PAYMENT_AUTHORIZED: self._on_informational,
            GatewayEventType.ORDER_PAID: self._on_informational,
            GatewayEventType.DISPUTE_CREATED: self._on_informational,
            GatewayEventType.DISPUTE_WON: self._on_informational,
            GatewayEventType.DISPUTE_LOST: self._on_informational,
            GatewayEventType.DISPUTE_CLOSED: self._on_informational,
            GatewayEventType.SUBSCRIPTION_ACTIVATED: self._on_informational,
            GatewayEventType.SUBSCRIPTION_CANCELLED: self._on_informational,
            GatewayEventType.UNKNOWN: self._on_unknown,
        }

        missing = [member.value for member in GatewayEventType if member not in self.handlers]
        if missing:
            raise ValueError(f"No handler for event types: {', '.join(missing)}")

    async def handle(
        self,
        event_type: str,
        payload: Dict[str, Any],
        event_record_id: Optional[uuid.UUID] = None,
    ) -> DispatchOutcome:
        """
        Dispatch one event and record its outcome on the audit row.

        Args:
            event_type: Raw ``event`` string from the delivery
            payload: The delivery's ``payload`` object
            event_record_id: Audit row to update, if one was stored

        Returns:
            DispatchOutcome: Never raises for handler faults
        """
        handler = self.handlers[GatewayEventType.parse(event_type)]
        try:
            outcome = await handler(event_type, payload if isinstance(payload, dict) else {})
        except Exception as e:
            logger.exception("webhook_handler_failed", event_type=event_type, error=str(e))
            outcome = DispatchOutcome(DispatchStatus.FAILED, message=str(e) or type(e).__name__)

        await self._record(event_record_id, outcome)
        return outcome

    async def _record(self, event_record_id: Optional[uuid.UUID], outcome: DispatchOutcome) -> None:
        try:
            if outcome.status == DispatchStatus.FAILED:
                await self.event_store.update_outcome(
                    event_record_id, DispatchStatus.FAILED.value, outcome.message
                )
            elif outcome.message:
                await self.event_store.annotate(event_record_id, outcome.message)
        except Exception as e:
            logger.error(
                "webhook_event_outcome_not_recorded",
                record_id=str(event_record_id) if event_record_id else None,
                error=str(e),
            )

    @staticmethod
    def _from_transition(result: TransitionResult) -> DispatchOutcome:
        if result.outcome in (TransitionOutcome.NOT_FOUND, TransitionOutcome.REJECTED):
            return DispatchOutcome(DispatchStatus.FAILED, message=result.reason, transition=result)
        return DispatchOutcome(
            DispatchStatus.PROCESSED,
            message=result.reason if result.outcome == TransitionOutcome.NOOP else None,
            transition=result,
        )

    async def _on_payment_captured(self, event_type: str, payload: Dict[str, Any]) -> DispatchOutcome:
        payment = get_entity(payload, "payment") or {}
        result = await self.state_machine.capture(payment.get("order_id"), payment.get("id"))
        outcome = self._from_transition(result)

        if result.applied and self.notifier is not None and result.order is not None:
            outcome.notified = await self.notifier.notify_order(
                result.order, recipient=payment.get("email")
            )
        return outcome

    async def _on_payment_failed(self, event_type: str, payload: Dict[str, Any]) -> DispatchOutcome:
        payment = get_entity(payload, "payment") or {}
        logger.info(
            "payment_failed_event",
            payment_id=payment.get("id"),
            error_code=payment.get("error_code"),
            error_description=payment.get("error_description"),
        )
        result = await self.state_machine.fail(payment.get("order_id"), payment.get("id"))
        return self._from_transition(result)

    async def _on_refund_created(self, event_type: str, payload: Dict[str, Any]) -> DispatchOutcome:
        refund = get_entity(payload, "refund") or {}
        payment_id = refund.get("payment_id") or dig(payload, "payment", "entity", "id")
        result = await self.state_machine.refund(payment_id)
        return self._from_transition(result)

    async def _on_informational(self, event_type: str, payload: Dict[str, Any]) -> DispatchOutcome:
        logger.info("webhook_event_recorded", event_type=event_type)
        return DispatchOutcome(DispatchStatus.PROCESSED)

    async def _on_unknown(self, event_type: str, payload: Dict[str, Any]) -> DispatchOutcome:
        logger.warning("webhook_event_unhandled", event_type=event_type)
        return DispatchOutcome(
            DispatchStatus.PROCESSED, message=f"unhandled event type: {event_type}"
        )
