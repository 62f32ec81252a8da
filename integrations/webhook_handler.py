"""
Razorpay webhook pipeline with signature verification and event deduplication.

Implements:
- Signature verification over the raw request bytes
- Event deduplication through the idempotency guard
- One audit row per delivery, including rejected and duplicate ones
- Dispatch to the reconciliation handlers

Only a bad signature or an unparseable body is answered with 400. Everything
else, including handler faults and unknown orders, is acknowledged with 200
so the gateway does not retry conditions it did not cause.
"""
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from core.dispatcher import DispatchStatus, ReconciliationDispatcher
from core.event_store import WebhookEventStore
from core.events import (
    UNKNOWN_EVENT_ID,
    EventFields,
    extract_event_fields,
    resolve_event_id,
)
from core.idempotency import IdempotencyGuard
from core.signature import SignatureVerifier
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACK_BODY = {"status": "ok"}


class WebhookError(Exception):
    """Raised when a delivery is rejected before dispatch."""

    def __init__(self, message: str, audit_message: str):
        super().__init__(message)
        self.audit_message = audit_message


@dataclass
class WebhookResult:
    """HTTP answer plus what happened, for logging and tests."""

    status_code: int
    body: Dict[str, Any] = field(default_factory=lambda: dict(ACK_BODY))
    status: str = "processed"
    event_id: Optional[str] = None
    record_id: Optional[uuid.UUID] = None


def _decode(raw_body: bytes) -> Optional[Dict[str, Any]]:
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _event_type_of(body: Optional[Dict[str, Any]]) -> str:
    event_type = body.get("event") if body else None
    return event_type.strip() if isinstance(event_type, str) and event_type.strip() else "unknown"


class WebhookHandler:
    """
    Handles Razorpay webhook deliveries end to end.

    Features:
    - Signature verification with the shared webhook secret
    - Deduplication by resolved event identity (24h window)
    - Durable audit trail of every attempt
    - Fault-isolated dispatch to order transitions
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        guard: IdempotencyGuard,
        event_store: WebhookEventStore,
        dispatcher: ReconciliationDispatcher,
    ):
        self.verifier = verifier
        self.guard = guard
        self.event_store = event_store
        self.dispatcher = dispatcher

        logger.info("webhook_handler_initialized")

    async def handle_delivery(
        self,
        raw_body: bytes,
        signature: Optional[str],
        header_event_id: Optional[str] = None,
    ) -> WebhookResult:
        """
        Process one webhook request.

        Args:
            raw_body: Request body exactly as received
            signature: ``X-Razorpay-Signature`` header value
            header_event_id: ``X-Razorpay-Event-Id`` header value, if sent

        Returns:
            WebhookResult: Status code and body to answer with
        """
        started = time.time()
        body = _decode(raw_body)
        event_type = _event_type_of(body)

        try:
            if not self.verifier.verify(raw_body, signature):
                metrics.record_signature_failure()
                raise WebhookError("Invalid signature", "invalid signature")
            if body is None:
                raise WebhookError("Malformed payload", "malformed payload")
        except WebhookError as e:
            logger.warning(
                "webhook_rejected",
                reason=e.audit_message,
                event_type=event_type,
                signature_prefix=(signature or "")[:8],
            )
            record_id = await self._append(
                event_id=resolve_event_id(event_type, (body or {}).get("payload"), header_event_id),
                event_type=event_type,
                payload=body if body is not None else {"raw": raw_body.decode("utf-8", "replace")},
                signature=signature,
                status="failed",
                error_message=e.audit_message,
            )
            metrics.record_webhook_event(event_type, "rejected", time.time() - started)
            return WebhookResult(
                status_code=400,
                body={"status": "error", "error": str(e)},
                status="rejected",
                record_id=record_id,
            )

        result = WebhookResult(status_code=200, status="failed")
        try:
            return await self._process(body, event_type, signature, header_event_id, started, result)
        except Exception as e:
            logger.exception("webhook_processing_error", event_type=event_type, error=str(e))
            await self._record_fault(result, body, event_type, signature, f"processing error: {e}")
            metrics.record_webhook_event(event_type, "failed", time.time() - started)
            result.status = "failed"
            return result

    async def _process(
        self,
        body: Dict[str, Any],
        event_type: str,
        signature: Optional[str],
        header_event_id: Optional[str],
        started: float,
        result: WebhookResult,
    ) -> WebhookResult:
        payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}
        event_id = resolve_event_id(event_type, payload, header_event_id)
        result.event_id = event_id
        fields = extract_event_fields(payload)

        log = logger.bind(event_id=event_id, event_type=event_type)
        log.info("processing_webhook_event")

        if not await self.guard.should_process(event_id):
            result.record_id = await self._append(
                event_id=event_id,
                event_type=event_type,
                payload=body,
                signature=signature,
                status="duplicate",
                fields=fields,
            )
            metrics.record_duplicate()
            metrics.record_webhook_event(event_type, "duplicate", time.time() - started)
            result.status = "duplicate"
            return result

        result.record_id = await self._append(
            event_id=event_id,
            event_type=event_type,
            payload=body,
            signature=signature,
            status="processed",
            requires_review=IdempotencyGuard.requires_review(event_id),
            fields=fields,
        )

        outcome = await self.dispatcher.handle(event_type, payload, result.record_id)
        if outcome.status == DispatchStatus.PROCESSED:
            await self.guard.mark_processed(event_id)

        log.info(
            "webhook_event_processed",
            status=outcome.status.value,
            message=outcome.message,
            notified=outcome.notified,
        )
        metrics.record_webhook_event(event_type, outcome.status.value, time.time() - started)
        result.status = outcome.status.value
        return result

    async def _record_fault(
        self,
        result: WebhookResult,
        body: Dict[str, Any],
        event_type: str,
        signature: Optional[str],
        message: str,
    ) -> None:
        """Make sure a delivery that blew up mid-pipeline still leaves a failed row."""
        if result.record_id is None:
            result.record_id = await self._append(
                event_id=result.event_id or UNKNOWN_EVENT_ID,
                event_type=event_type,
                payload=body,
                signature=signature,
                status="failed",
                error_message=message,
            )
            return
        try:
            await self.event_store.update_outcome(result.record_id, "failed", message)
        except Exception as e:
            logger.error(
                "webhook_event_update_failed", record_id=str(result.record_id), error=str(e)
            )

    async def _append(
        self,
        *,
        event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        signature: Optional[str],
        status: str,
        error_message: Optional[str] = None,
        requires_review: bool = False,
        fields: Optional[EventFields] = None,
    ) -> Optional[uuid.UUID]:
        """Store the audit row; a storage failure is logged and processing continues."""
        try:
            return await self.event_store.append(
                event_id=event_id or UNKNOWN_EVENT_ID,
                event_type=event_type,
                payload=payload,
                signature=signature,
                status=status,
                error_message=error_message,
                requires_review=requires_review,
                fields=fields,
            )
        except Exception as e:
            logger.error(
                "webhook_event_store_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            return None
