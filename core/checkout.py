"""
Checkout: order creation and the synchronous payment confirmation path.

The client-side confirmation goes through the same state machine as the
webhook, so whichever of the two arrives first applies the capture and the
other one is a no-op.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from core.notifications import NotificationTrigger
from core.order_state_machine import OrderStateMachine, TransitionOutcome, TransitionResult
from core.signature import SignatureVerifier
from database.connection import get_session_factory
from database.models import Order, Product, generate_order_number
from integrations.gateway_client import GatewayError, RazorpayClient
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CheckoutError(Exception):
    """Base exception for checkout failures."""

    pass


class CheckoutValidationError(CheckoutError):
    """Raised when the request cannot be turned into an order."""

    pass


class OrderNotFoundError(CheckoutError):
    """Raised when no order matches the given reference."""

    pass


@dataclass
class LineItemRequest:
    product_id: str
    quantity: int = 1


@dataclass
class CheckoutResult:
    order: Order
    gateway_order: Dict[str, Any]


class CheckoutService:
    """Creates orders and confirms payments reported by the checkout widget."""

    def __init__(
        self,
        gateway: RazorpayClient,
        verifier: SignatureVerifier,
        state_machine: OrderStateMachine,
        notifier: Optional[NotificationTrigger] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.settings = get_settings()
        self.gateway = gateway
        self.verifier = verifier
        self.state_machine = state_machine
        self.notifier = notifier
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @staticmethod
    def _validate(
        items: List[LineItemRequest],
        user_id: Optional[uuid.UUID],
        guest_email: Optional[str],
        guest_name: Optional[str],
    ) -> Dict[uuid.UUID, int]:
        if not items:
            raise CheckoutValidationError("Order must contain at least one item")
        if user_id is None and not (guest_email and guest_name):
            raise CheckoutValidationError("Either user_id or guest email and name are required")

        quantities: Dict[uuid.UUID, int] = {}
        for item in items:
            try:
                product_id = uuid.UUID(str(item.product_id))
            except ValueError:
                raise CheckoutValidationError(f"Invalid product id: {item.product_id}")
            if item.quantity < 1:
                raise CheckoutValidationError("Quantity must be at least 1")
            quantities[product_id] = quantities.get(product_id, 0) + item.quantity
        return quantities

    async def create_order(
        self,
        items: List[LineItemRequest],
        user_id: Optional[uuid.UUID] = None,
        guest_email: Optional[str] = None,
        guest_name: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Snapshot prices, open a gateway order and persist a pending order.

        Raises:
            CheckoutValidationError: Bad items, unknown/inactive products, no buyer
            CheckoutError: Gateway order could not be created
        """
        quantities = self._validate(items, user_id, guest_email, guest_name)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Product).where(Product.id.in_(list(quantities)))
            )
            products = {product.id: product for product in result.scalars().all()}

            line_items: List[Dict[str, Any]] = []
            total_amount = 0
            for product_id, quantity in quantities.items():
                product = products.get(product_id)
                if product is None or not product.is_active:
                    raise CheckoutValidationError(f"Product {product_id} is not available")
                line_items.append(
                    {
                        "product_id": str(product.id),
                        "name": product.name,
                        "price": product.price,
                        "quantity": quantity,
                    }
                )
                total_amount += product.price * quantity

            order_number = generate_order_number()
            try:
                gateway_order = await self.gateway.create_order(
                    amount=total_amount,
                    currency=self.settings.currency,
                    receipt=order_number,
                    notes={"order_number": order_number},
                )
            except GatewayError as e:
                logger.error("checkout_gateway_order_failed", order_number=order_number, error=str(e))
                raise CheckoutError(f"Failed to create payment order: {e}") from e

            order = Order(
                order_number=order_number,
                user_id=user_id,
                guest_email=guest_email if user_id is None else None,
                guest_name=guest_name if user_id is None else None,
                items=line_items,
                total_amount=total_amount,
                gateway_order_id=gateway_order["id"],
            )
            session.add(order)
            await session.commit()

        buyer_type = "user" if user_id is not None else "guest"
        metrics.record_order_created(buyer_type)
        logger.info(
            "order_created",
            order_number=order.order_number,
            gateway_order_id=order.gateway_order_id,
            total_amount=total_amount,
            buyer_type=buyer_type,
        )
        return CheckoutResult(order=order, gateway_order=gateway_order)

    async def verify_payment(
        self, gateway_order_id: str, gateway_payment_id: str, signature: str
    ) -> TransitionResult:
        """
        Confirm a payment reported by the client.

        A bad signature leaves the order untouched.

        Raises:
            OrderNotFoundError: No order for ``gateway_order_id``
            CheckoutValidationError: Signature does not match
            CheckoutError: Order cannot be completed from its current state
        """
        async with self.session_factory() as session:
            exists = await session.scalar(
                select(Order.id).where(Order.gateway_order_id == gateway_order_id)
            )
        if exists is None:
            raise OrderNotFoundError("Order not found")

        if not self.verifier.verify_payment(gateway_order_id, gateway_payment_id, signature):
            logger.warning("payment_verification_failed", gateway_order_id=gateway_order_id)
            raise CheckoutValidationError("Payment verification failed")

        result = await self.state_machine.capture(gateway_order_id, gateway_payment_id, signature)
        if result.outcome == TransitionOutcome.NOT_FOUND:
            raise OrderNotFoundError("Order not found")
        if result.outcome == TransitionOutcome.REJECTED:
            raise CheckoutError(result.reason or "Order cannot be completed")

        if result.applied and self.notifier is not None and result.order is not None:
            recipient = None
            if not result.order.guest_email:
                recipient = await self._payer_email(gateway_payment_id)
            await self.notifier.notify_order(result.order, recipient=recipient)
        return result

    async def _payer_email(self, gateway_payment_id: str) -> Optional[str]:
        """Registered buyers are reached at the email the gateway collected."""
        try:
            payment = await self.gateway.fetch_payment(gateway_payment_id)
        except GatewayError as e:
            logger.warning(
                "payer_email_lookup_failed", gateway_payment_id=gateway_payment_id, error=str(e)
            )
            return None
        email = payment.get("email")
        return email.strip() if isinstance(email, str) and email.strip() else None
