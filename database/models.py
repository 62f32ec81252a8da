"""SQLAlchemy database models for the prompt-pack store.

Amounts are stored as integer minor currency units (paise), matching what the
payment gateway sends and expects.
"""
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "refunded")
WEBHOOK_EVENT_STATUSES = ("processed", "failed", "duplicate")

_PURCHASE_ID_ALPHABET = string.ascii_uppercase + string.digits
_BASE36_ALPHABET = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def utcnow() -> datetime:
    """Timezone-aware current time, with microseconds (SQLite CURRENT_TIMESTAMP has none)."""
    return datetime.now(timezone.utc)


def generate_order_number() -> str:
    """Internal order number: ORD-<base36 epoch millis>-<4 random chars>."""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_PURCHASE_ID_ALPHABET) for _ in range(4))
    return f"ORD-{timestamp}-{suffix}"


def generate_purchase_id() -> str:
    """Customer-facing purchase reference formatted as XXXX-XXXX."""
    raw = "".join(secrets.choice(_PURCHASE_ID_ALPHABET) for _ in range(8))
    return f"{raw[:4]}-{raw[4:]}"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Catalog product (a PDF prompt pack).

    Owned by catalog code; only the sales counters are written here, and only
    as a side effect of order state transitions.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(220), unique=True, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    pdf_key: Mapped[str] = mapped_column(String(512), nullable=False)
    pdf_password: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    real_sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (CheckConstraint("price >= 0", name="non_negative_price"),)

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, name={self.name!r}, price={self.price})>"


class Order(Base):
    """
    Purchase record.

    Line items are snapshots ({product_id, name, price, quantity}) so later
    catalog price changes never touch historical orders. ``counted_items``
    records exactly what was added to product counters at capture time so a
    refund can reverse the same quantities.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, default=generate_order_number
    )
    purchase_id: Mapped[str] = mapped_column(
        String(9), unique=True, nullable=False, default=generate_purchase_id
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    guest_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONDocument, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="razorpay")
    gateway_order_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    gateway_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pdf_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pdf_delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_synthetic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synthetic_customer_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    counted_items: Mapped[List[Dict[str, Any]] | None] = mapped_column(
        JSONDocument, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="non_negative_total"),
        CheckConstraint(
            "payment_status IN ('pending', 'processing', 'completed', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
        Index("idx_orders_status_created", "payment_status", "created_at"),
    )

    @validates("guest_email")
    def _normalize_guest_email(self, key: str, value: str | None) -> str | None:
        return value.strip().lower() if value else value

    @validates("guest_name", "synthetic_customer_name")
    def _strip_name(self, key: str, value: str | None) -> str | None:
        return value.strip() if value else value

    @property
    def customer_name(self) -> str:
        """Display name for customer-facing messages."""
        return self.guest_name or self.synthetic_customer_name or "Customer"

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"total={self.total_amount}, status={self.payment_status})>"
        )


class WebhookEvent(Base):
    """
    Webhook audit trail table.

    One row per inbound delivery attempt, whatever its outcome. ``event_id``
    is deliberately not unique: a re-delivery gets its own ``duplicate`` row.
    """

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="processed")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact: Mapped[str | None] = mapped_column(String(50), nullable=True)
    method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('processed', 'failed', 'duplicate')",
            name="valid_webhook_event_status",
        ),
        Index("idx_webhook_events_status_created", "status", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the admin audit API."""
        return {
            "id": str(self.id),
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status,
            "error_message": self.error_message,
            "requires_review": self.requires_review,
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "refund_id": self.refund_id,
            "amount": self.amount,
            "currency": self.currency,
            "email": self.email,
            "contact": self.contact,
            "method": self.method,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return (
            f"<WebhookEvent(id={self.id}, event_id={self.event_id}, "
            f"type={self.event_type}, status={self.status})>"
        )
