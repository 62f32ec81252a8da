"""
Durable audit trail of inbound webhook deliveries.

Every delivery that reaches the webhook route gets exactly one row, written
in its own transaction so the record survives whatever happens to order
processing afterwards. Rows are updated in place when the processing outcome
changes and are never deleted.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.events import EventFields
from database.connection import get_session_factory
from database.models import WebhookEvent

logger = structlog.get_logger(__name__)

# PostgreSQL INTEGER range
INT_MIN = -(2**31)
INT_MAX = 2**31 - 1


def _fit(column: str, value: Optional[str]) -> Optional[str]:
    """Clip a string to the width of its ``webhook_events`` column."""
    if value is None:
        return None
    length = WebhookEvent.__table__.c[column].type.length
    return value[:length] if length else value


def _fit_int(value: Optional[int]) -> Optional[int]:
    if value is None or not INT_MIN <= value <= INT_MAX:
        return None
    return value


class WebhookEventStore:
    """Append/update/query access to ``webhook_events``."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Args:
            session_factory: Optional session factory (defaults to the app's)
        """
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def append(
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
    ) -> uuid.UUID:
        """
        Persist one delivery attempt.

        Returns:
            uuid.UUID: Id of the stored row
        """
        extracted = {
            column: _fit(column, value) if isinstance(value, str) else value
            for column, value in (fields or EventFields()).as_dict().items()
        }
        extracted["amount"] = _fit_int(extracted["amount"])
        record = WebhookEvent(
            event_id=_fit("event_id", event_id),
            event_type=_fit("event_type", event_type),
            payload=payload,
            signature=_fit("signature", signature or None),
            status=status,
            error_message=error_message,
            requires_review=requires_review,
            **extracted,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()

        logger.info(
            "webhook_event_stored",
            record_id=str(record.id),
            event_id=event_id,
            event_type=event_type,
            status=status,
        )
        return record.id

    async def update_outcome(
        self, record_id: Optional[uuid.UUID], status: str, error_message: Optional[str] = None
    ) -> None:
        """Overwrite status and error message of a stored delivery."""
        if record_id is None:
            return
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == record_id)
                .values(
                    status=status,
                    error_message=error_message,
                    processed_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def annotate(self, record_id: Optional[uuid.UUID], message: str) -> None:
        """Attach a note without changing the status."""
        if record_id is None:
            return
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == record_id)
                .values(error_message=message)
            )
            await session.commit()

    async def get(self, record_id: uuid.UUID) -> Optional[WebhookEvent]:
        async with self.session_factory() as session:
            return await session.get(WebhookEvent, record_id)

    async def list_by_payment(self, payment_id: str) -> List[WebhookEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.payment_id == payment_id)
                .order_by(WebhookEvent.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_events(
        self,
        page: int = 1,
        limit: int = 20,
        event_type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Tuple[List[WebhookEvent], int]:
        """
        Paginated listing with optional filters.

        ``search`` matches (case-insensitively) event, payment, order and
        refund ids and the payer email.
        """
        conditions = []
        if event_type:
            conditions.append(WebhookEvent.event_type == event_type)
        if status:
            conditions.append(WebhookEvent.status == status)
        if search:
            conditions.append(
                or_(
                    WebhookEvent.event_id.icontains(search, autoescape=True),
                    WebhookEvent.payment_id.icontains(search, autoescape=True),
                    WebhookEvent.order_id.icontains(search, autoescape=True),
                    WebhookEvent.refund_id.icontains(search, autoescape=True),
                    WebhookEvent.email.icontains(search, autoescape=True),
                )
            )

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(WebhookEvent).where(*conditions)
            )
            result = await session.execute(
                select(WebhookEvent)
                .where(*conditions)
                .order_by(WebhookEvent.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)

    async def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Overall and trailing-24h outcome counts plus distributions."""
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=24)

        async with self.session_factory() as session:
            status_rows = (
                await session.execute(
                    select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)
                )
            ).all()
            recent_rows = (
                await session.execute(
                    select(WebhookEvent.status, func.count())
                    .where(WebhookEvent.created_at >= since)
                    .group_by(WebhookEvent.status)
                )
            ).all()
            type_rows = (
                await session.execute(
                    select(WebhookEvent.event_type, func.count().label("count"))
                    .group_by(WebhookEvent.event_type)
                    .order_by(func.count().desc())
                )
            ).all()
            latest = (
                await session.execute(
                    select(WebhookEvent).order_by(WebhookEvent.created_at.desc()).limit(10)
                )
            ).scalars().all()

        by_status = {status: count for status, count in status_rows}
        recent_by_status = {status: count for status, count in recent_rows}
        total = sum(by_status.values())
        recent_total = sum(recent_by_status.values())

        return {
            "overall": {
                "total": total,
                "successful": by_status.get("processed", 0),
                "failed": by_status.get("failed", 0),
                "duplicate": by_status.get("duplicate", 0),
                "success_rate": _rate(by_status.get("processed", 0), total),
            },
            "recent_24h": {
                "total": recent_total,
                "successful": recent_by_status.get("processed", 0),
                "failed": recent_by_status.get("failed", 0),
                "success_rate": _rate(recent_by_status.get("processed", 0), recent_total),
            },
            "event_type_distribution": [
                {"event_type": event_type, "count": count} for event_type, count in type_rows
            ],
            "status_distribution": [
                {"status": status, "count": count} for status, count in by_status.items()
            ],
            "recent_events": [event.to_dict() for event in latest],
        }


def _rate(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole else 0.0
