"""
Order confirmation after a successful capture.

Sending is a separate step from the order transition: a slow or failing email
provider never rolls back or delays the payment state beyond the configured
timeout. Delivery flags on the order are set only when the send succeeded.
"""
import asyncio
import html
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from database.connection import get_session_factory
from database.models import Order, Product
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised when a download credential cannot be issued or an email cannot be sent."""

    pass


@dataclass(frozen=True)
class DownloadCredential:
    """Time-limited download link plus the password that unlocks the PDF."""

    url: str
    password: str
    expires_in_seconds: int

    @property
    def expires_in_minutes(self) -> int:
        return max(1, self.expires_in_seconds // 60)


def format_amount(amount: int) -> str:
    """Minor units to a display string, e.g. 49900 -> '₹499.00'."""
    return f"₹{amount / 100:,.2f}"


def render_order_confirmation(
    customer_name: str,
    order_number: str,
    purchase_id: str,
    items: Iterable[Dict[str, Any]],
    total_amount: int,
    credential: DownloadCredential,
) -> str:
    """HTML body of the order confirmation email."""
    products = "".join(
        f"<li>{html.escape(str(item.get('name', 'Prompt pack')))} - "
        f"{format_amount(int(item.get('price') or 0))}"
        f"{' x ' + str(item['quantity']) if int(item.get('quantity') or 1) > 1 else ''}</li>"
        for item in items
    )
    return f"""<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif; background-color: #f5f5f5; margin: 0; padding: 0;">
    <div style="max-width: 600px; margin: 0 auto; background-color: #191A1D; color: #ffffff;">
      <div style="background: #D4AF37; padding: 30px; text-align: center;">
        <h1 style="margin: 0; color: #191A1D;">Order Confirmed!</h1>
      </div>
      <div style="padding: 40px 30px;">
        <p>Dear {html.escape(customer_name)},</p>
        <p>Thank you for your purchase! Your order has been successfully processed.</p>
        <div style="border: 1px solid #D4AF37; border-radius: 8px; padding: 20px; margin: 20px 0;">
          <h2 style="color: #D4AF37;">Order Details</h2>
          <p><strong>Order Number:</strong> {html.escape(order_number)}</p>
          <p><strong>Purchase ID:</strong> <span style="color: #D4AF37;">{html.escape(purchase_id)}</span></p>
          <p><strong>Products:</strong></p>
          <ul style="list-style: none; padding: 0;">{products}</ul>
          <p style="color: #D4AF37;"><strong>Total Amount: {format_amount(total_amount)}</strong></p>
        </div>
        <div style="border: 2px solid #D4AF37; border-radius: 8px; padding: 20px; text-align: center;">
          <h3>Your PDF Password</h3>
          <p>Use this password to unlock your prompt pack:</p>
          <div style="font-size: 24px; font-weight: bold; color: #D4AF37;">{html.escape(credential.password)}</div>
        </div>
        <div style="text-align: center;">
          <a href="{html.escape(credential.url, quote=True)}" style="display: inline-block; background-color: #D4AF37; color: #191A1D; padding: 15px 30px; border-radius: 8px;">Download Your Prompt Pack</a>
          <p style="font-size: 12px; color: #888;">This link will expire in {credential.expires_in_minutes} minutes</p>
        </div>
        <p>If you have any questions, contact support with your <strong>Purchase ID: {html.escape(purchase_id)}</strong>.</p>
      </div>
    </div>
  </body>
</html>
"""


class NotificationTrigger:
    """Issues download credentials and sends order confirmations."""

    def __init__(
        self,
        email_sender,
        link_signer,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        timeout_seconds: Optional[float] = None,
        url_ttl_seconds: Optional[int] = None,
    ):
        """
        Args:
            email_sender: Object with ``async send(to, subject, html)``
            link_signer: Object with ``async signed_url(key_or_url, expires_in_seconds)``
            session_factory: Optional session factory (defaults to the app's)
            timeout_seconds: Upper bound for one confirmation send
            url_ttl_seconds: Lifetime of issued download links
        """
        settings = get_settings()
        self.email_sender = email_sender
        self.link_signer = link_signer
        self._session_factory = session_factory
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.notification_timeout_seconds
        )
        self.url_ttl_seconds = (
            url_ttl_seconds if url_ttl_seconds is not None else settings.download_url_ttl_seconds
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def issue_credential(self, product: Product) -> DownloadCredential:
        """
        Raises:
            NotificationError: If the link cannot be signed
        """
        try:
            url = await self.link_signer.signed_url(product.pdf_key, self.url_ttl_seconds)
        except Exception as e:
            raise NotificationError(f"Failed to generate download link: {e}") from e
        return DownloadCredential(
            url=url, password=product.pdf_password, expires_in_seconds=self.url_ttl_seconds
        )

    async def notify(
        self,
        order: Order,
        product: Product,
        credential: DownloadCredential,
        recipient: Optional[str] = None,
    ) -> bool:
        """
        Send the confirmation and, on success, set the delivery flags.

        Failures and timeouts are logged and reported as ``False``; they never
        propagate to the caller.
        """
        to = order.guest_email or recipient
        if not to:
            logger.warning("notification_skipped_no_recipient", order_number=order.order_number)
            metrics.record_notification("skipped")
            return False

        body = render_order_confirmation(
            customer_name=order.customer_name,
            order_number=order.order_number,
            purchase_id=order.purchase_id,
            items=order.items or [],
            total_amount=order.total_amount,
            credential=credential,
        )
        try:
            await asyncio.wait_for(
                self.email_sender.send(
                    to=to,
                    subject=f"Order Confirmation - {order.order_number}",
                    html=body,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "notification_timeout",
                order_number=order.order_number,
                timeout_seconds=self.timeout_seconds,
            )
            metrics.record_notification("timeout")
            return False
        except Exception as e:
            logger.error("notification_failed", order_number=order.order_number, error=str(e))
            metrics.record_notification("failed")
            return False

        try:
            await self._mark_delivered(order)
        except Exception as e:
            logger.error(
                "delivery_flags_update_failed", order_number=order.order_number, error=str(e)
            )
        metrics.record_notification("sent")
        logger.info("order_confirmation_sent", order_number=order.order_number)
        return True

    async def notify_order(self, order: Order, recipient: Optional[str] = None) -> bool:
        """Confirm a freshly completed order using its first product's PDF."""
        try:
            product = await self._first_product(order)
            if product is None:
                logger.warning("notification_skipped_no_product", order_number=order.order_number)
                metrics.record_notification("skipped")
                return False
            credential = await self.issue_credential(product)
        except Exception as e:
            logger.error("notification_failed", order_number=order.order_number, error=str(e))
            metrics.record_notification("failed")
            return False
        return await self.notify(order, product, credential, recipient=recipient)

    async def _first_product(self, order: Order) -> Optional[Product]:
        if not order.items:
            return None
        product_id = order.items[0].get("product_id")
        async with self.session_factory() as session:
            result = await session.execute(
                select(Product).where(Product.id == _to_uuid(product_id))
            )
            return result.scalar_one_or_none()

    async def _mark_delivered(self, order: Order) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            await session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(email_sent=True, email_sent_at=now, pdf_delivered=True, pdf_delivered_at=now)
            )
            await session.commit()
        order.email_sent = True
        order.email_sent_at = now
        order.pdf_delivered = True
        order.pdf_delivered_at = now


def _to_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
