"""
Order payment lifecycle.

Transitions:
    pending/processing --capture--> completed   (+counters, notification)
    failed --capture with a new payment id--> completed
    pending/processing --fail--> failed
    completed --refund--> refunded               (-counters, mirrored)

Every transition is a conditional UPDATE guarded by the allowed source
states. The affected row count decides which caller won, so two concurrent
deliveries of the same capture can never both apply the counter side effects.
Counter changes run in the same transaction as the status change, as
``col = col + delta`` statements.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection import get_session_factory
from database.models import Order, Product
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderStatus(str, Enum):
    """Payment status of an order."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


CAPTURABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)
FAILABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)


class TransitionOutcome(str, Enum):
    """How a transition attempt ended."""

    APPLIED = "applied"
    NOOP = "noop"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"


@dataclass
class TransitionResult:
    """Result of a transition attempt. "Order not found" is a value, not an error."""

    outcome: TransitionOutcome
    order: Optional[Order] = None
    previous_status: Optional[str] = None
    reason: Optional[str] = None
    counted_items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _in_lock_order(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Product rows are always locked in ascending id order to avoid deadlocks."""
    return sorted(entries, key=lambda entry: str(entry.get("product_id") or ""))


class OrderStateMachine:
    """Applies gateway outcomes to orders and keeps product counters in step."""

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

    async def capture(
        self,
        gateway_order_id: Optional[str],
        gateway_payment_id: Optional[str],
        signature: Optional[str] = None,
    ) -> TransitionResult:
        """
        Mark an order paid and count its items as sold.

        Args:
            gateway_order_id: Gateway order the payment belongs to
            gateway_payment_id: Captured payment
            signature: Checkout callback signature, stored when provided

        Returns:
            TransitionResult: APPLIED only for the caller that won the transition
        """
        if not gateway_order_id:
            return self._finish("capture", TransitionResult(
                TransitionOutcome.NOT_FOUND, reason="order not found: no gateway order id"
            ))

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._load(session, gateway_order_id)
                if order is None:
                    return self._finish("capture", TransitionResult(
                        TransitionOutcome.NOT_FOUND,
                        reason=f"order not found for gateway order {gateway_order_id}",
                    ))

                previous = order.payment_status
                if previous == OrderStatus.COMPLETED.value:
                    return self._finish("capture", TransitionResult(
                        TransitionOutcome.NOOP, order=order, previous_status=previous,
                        reason="order already completed",
                    ))
                if previous == OrderStatus.REFUNDED.value:
                    return self._finish("capture", TransitionResult(
                        TransitionOutcome.REJECTED, order=order, previous_status=previous,
                        reason="order already refunded",
                    ))
                if (
                    previous == OrderStatus.FAILED.value
                    and order.gateway_payment_id == gateway_payment_id
                ):
                    return self._finish("capture", TransitionResult(
                        TransitionOutcome.REJECTED, order=order, previous_status=previous,
                        reason="capture repeats the failed payment attempt",
                    ))

                values: Dict[str, Any] = {
                    "payment_status": OrderStatus.COMPLETED.value,
                    "gateway_payment_id": gateway_payment_id,
                }
                if signature:
                    values["gateway_signature"] = signature

                retry_after_failure = and_(
                    Order.payment_status == OrderStatus.FAILED.value,
                    or_(
                        Order.gateway_payment_id.is_(None),
                        Order.gateway_payment_id != gateway_payment_id,
                    ),
                )
                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        or_(Order.payment_status.in_(CAPTURABLE_STATUSES), retry_after_failure),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return self._finish("capture", await self._lost_race(session, order, previous))

                counted = await self._apply_counters(session, order, direction=1)
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id)
                    .values(counted_items=counted)
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(order)

        logger.info(
            "order_captured",
            order_number=order.order_number,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            previous_status=previous,
            is_synthetic=order.is_synthetic,
        )
        return self._finish("capture", TransitionResult(
            TransitionOutcome.APPLIED, order=order, previous_status=previous,
            counted_items=counted,
        ))

    async def fail(
        self, gateway_order_id: Optional[str], gateway_payment_id: Optional[str]
    ) -> TransitionResult:
        """
        Mark an unpaid order failed. No counter changes.

        Completed, refunded and already failed orders are left alone.
        """
        if not gateway_order_id:
            return self._finish("fail", TransitionResult(
                TransitionOutcome.NOT_FOUND, reason="order not found: no gateway order id"
            ))

        async with self.session_factory() as session:
            async with session.begin():
                order = await self._load(session, gateway_order_id)
                if order is None:
                    return self._finish("fail", TransitionResult(
                        TransitionOutcome.NOT_FOUND,
                        reason=f"order not found for gateway order {gateway_order_id}",
                    ))

                previous = order.payment_status
                if previous not in FAILABLE_STATUSES:
                    return self._finish("fail", TransitionResult(
                        TransitionOutcome.NOOP, order=order, previous_status=previous,
                        reason=f"order is {previous}, failure ignored",
                    ))

                result = await session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.payment_status.in_(FAILABLE_STATUSES))
                    .values(
                        payment_status=OrderStatus.FAILED.value,
                        gateway_payment_id=gateway_payment_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return self._finish("fail", await self._lost_race(session, order, previous))
                await session.refresh(order)

        logger.info(
            "order_payment_failed",
            order_number=order.order_number,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
        )
        return self._finish("fail", TransitionResult(
            TransitionOutcome.APPLIED, order=order, previous_status=previous
        ))

    async def refund(self, gateway_payment_id: Optional[str]) -> TransitionResult:
        """
        Refund a completed order, reversing exactly what its capture counted.

        A refund of an already refunded order is a no-op; a refund of an order
        in any other state is rejected.
        """
        if not gateway_payment_id:
            return self._finish("refund", TransitionResult(
                TransitionOutcome.NOT_FOUND, reason="order not found: no payment id"
            ))

        async with self.session_factory() as session:
            async with session.begin():
                order = (
                    await session.execute(
                        select(Order).where(Order.gateway_payment_id == gateway_payment_id)
                    )
                ).scalars().first()
                if order is None:
                    return self._finish("refund", TransitionResult(
                        TransitionOutcome.NOT_FOUND,
                        reason=f"order not found for payment {gateway_payment_id}",
                    ))

                previous = order.payment_status
                if previous == OrderStatus.REFUNDED.value:
                    return self._finish("refund", TransitionResult(
                        TransitionOutcome.NOOP, order=order, previous_status=previous,
                        reason="order already refunded",
                    ))
                if previous != OrderStatus.COMPLETED.value:
                    return self._finish("refund", TransitionResult(
                        TransitionOutcome.REJECTED, order=order, previous_status=previous,
                        reason=f"cannot refund order in status {previous}",
                    ))

                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.payment_status == OrderStatus.COMPLETED.value,
                    )
                    .values(payment_status=OrderStatus.REFUNDED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return self._finish("refund", await self._lost_race(session, order, previous))

                reversed_items = await self._reverse_counters(session, order.counted_items or [])
                await session.refresh(order)

        logger.info(
            "order_refunded",
            order_number=order.order_number,
            gateway_payment_id=gateway_payment_id,
        )
        return self._finish("refund", TransitionResult(
            TransitionOutcome.APPLIED, order=order, previous_status=previous,
            counted_items=reversed_items,
        ))

    async def _load(self, session: AsyncSession, gateway_order_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order).where(Order.gateway_order_id == gateway_order_id)
        )
        return result.scalar_one_or_none()

    async def _lost_race(
        self, session: AsyncSession, order: Order, previous: str
    ) -> TransitionResult:
        """Another writer changed the order between our read and our update."""
        await session.refresh(order)
        logger.info(
            "order_transition_lost_race",
            order_number=order.order_number,
            expected_status=previous,
            current_status=order.payment_status,
        )
        return TransitionResult(
            TransitionOutcome.NOOP,
            order=order,
            previous_status=previous,
            reason=f"concurrent transition, order is now {order.payment_status}",
        )

    async def _apply_counters(
        self, session: AsyncSession, order: Order, direction: int
    ) -> List[Dict[str, Any]]:
        """Add item quantities to product counters; returns what was counted."""
        counted: List[Dict[str, Any]] = []
        count_real = not order.is_synthetic
        for item in _in_lock_order(order.items or []):
            product_id = _parse_uuid(item.get("product_id"))
            quantity = int(item.get("quantity") or 0)
            if product_id is None or quantity <= 0:
                logger.warning("order_item_not_counted", order_number=order.order_number, item=item)
                continue

            delta = direction * quantity
            values: Dict[str, Any] = {"sales_count": Product.sales_count + delta}
            if count_real:
                values["real_sales_count"] = Product.real_sales_count + delta
            result = await session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(
                    "product_missing_for_counter",
                    order_number=order.order_number,
                    product_id=str(product_id),
                )
                continue
            counted.append({"product_id": str(product_id), "quantity": quantity, "real": count_real})
        return counted

    async def _reverse_counters(
        self, session: AsyncSession, counted_items: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        reversed_items: List[Dict[str, Any]] = []
        for entry in _in_lock_order(counted_items):
            product_id = _parse_uuid(entry.get("product_id"))
            quantity = int(entry.get("quantity") or 0)
            if product_id is None or quantity <= 0:
                continue

            values: Dict[str, Any] = {"sales_count": Product.sales_count - quantity}
            if entry.get("real"):
                values["real_sales_count"] = Product.real_sales_count - quantity
            await session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            reversed_items.append(entry)
        return reversed_items

    @staticmethod
    def _finish(transition: str, result: TransitionResult) -> TransitionResult:
        metrics.record_transition(transition, result.outcome.value)
        if result.outcome in (TransitionOutcome.NOT_FOUND, TransitionOutcome.REJECTED):
            logger.warning(f"order_{transition}_{result.outcome.value}", reason=result.reason)
        return result
