"""
Gateway event catalog and schema-tolerant payload extraction.

Webhook bodies look like::

    {"event": "payment.captured",
     "payload": {"payment": {"entity": {"id": "pay_...", "order_id": "order_..."}}}}

Nothing here raises on a missing or oddly-typed nested field; absent values
come back as ``None``.
"""
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# Identity could not be derived from the delivery
UNKNOWN_EVENT_ID = "unknown"


class GatewayEventType(str, Enum):
    """Closed set of gateway event types, plus an explicit UNKNOWN variant."""

    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_AUTHORIZED = "payment.authorized"
    REFUND_CREATED = "refund.created"
    ORDER_PAID = "order.paid"
    DISPUTE_CREATED = "payment.dispute.created"
    DISPUTE_WON = "payment.dispute.won"
    DISPUTE_LOST = "payment.dispute.lost"
    DISPUTE_CLOSED = "payment.dispute.closed"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "GatewayEventType":
        """Map a raw ``event`` string onto the catalog; anything else is UNKNOWN."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Entity whose id identifies a delivery of each event type
PRIMARY_ENTITY: Dict[GatewayEventType, str] = {
    GatewayEventType.PAYMENT_CAPTURED: "payment",
    GatewayEventType.PAYMENT_FAILED: "payment",
    GatewayEventType.PAYMENT_AUTHORIZED: "payment",
    GatewayEventType.REFUND_CREATED: "refund",
    GatewayEventType.ORDER_PAID: "order",
    GatewayEventType.DISPUTE_CREATED: "dispute",
    GatewayEventType.DISPUTE_WON: "dispute",
    GatewayEventType.DISPUTE_LOST: "dispute",
    GatewayEventType.DISPUTE_CLOSED: "dispute",
    GatewayEventType.SUBSCRIPTION_ACTIVATED: "subscription",
    GatewayEventType.SUBSCRIPTION_CANCELLED: "subscription",
}


def dig(data: Any, *keys: str) -> Any:
    """Walk nested mappings, returning None as soon as a level is missing."""
    current = data
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def get_entity(payload: Any, name: str) -> Optional[Dict[str, Any]]:
    """Return ``payload[name]["entity"]`` when it is a mapping."""
    entity = dig(payload, name, "entity")
    return dict(entity) if isinstance(entity, Mapping) else None


def _as_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


@dataclass
class EventFields:
    """Correlation fields pulled out of a payload for the audit trail."""

    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    method: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def extract_event_fields(payload: Any) -> EventFields:
    """Best-effort extraction of ids, amount and contact details."""
    payment = get_entity(payload, "payment")
    if payment is not None:
        currency = _as_str(payment.get("currency"))
        return EventFields(
            order_id=_as_str(payment.get("order_id")),
            payment_id=_as_str(payment.get("id")),
            amount=_as_int(payment.get("amount")),
            currency=currency[:3] if currency else None,
            email=_as_str(payment.get("email")),
            contact=_as_str(payment.get("contact")),
            method=_as_str(payment.get("method")),
        )

    refund = get_entity(payload, "refund")
    if refund is not None:
        currency = _as_str(refund.get("currency"))
        return EventFields(
            refund_id=_as_str(refund.get("id")),
            payment_id=_as_str(refund.get("payment_id")),
            amount=_as_int(refund.get("amount")),
            currency=currency[:3] if currency else None,
        )

    order = get_entity(payload, "order")
    if order is not None:
        currency = _as_str(order.get("currency"))
        return EventFields(
            order_id=_as_str(order.get("id")),
            amount=_as_int(order.get("amount")),
            currency=currency[:3] if currency else None,
        )

    dispute = get_entity(payload, "dispute")
    if dispute is not None:
        currency = _as_str(dispute.get("currency"))
        return EventFields(
            payment_id=_as_str(dispute.get("payment_id")),
            amount=_as_int(dispute.get("amount")),
            currency=currency[:3] if currency else None,
        )

    return EventFields()


def resolve_event_id(
    raw_event_type: Any, payload: Any, header_event_id: Optional[str] = None
) -> str:
    """
    Derive the identity used for deduplication.

    Order of preference:
    1. The gateway's own event id header (stable across retries).
    2. ``"<event type>:<primary entity id>"``. The type prefix keeps
       ``payment.authorized`` and ``payment.captured`` for one payment apart.
    3. :data:`UNKNOWN_EVENT_ID`.
    """
    header_value = _as_str(header_event_id)
    if header_value:
        return header_value

    event_type_text = _as_str(raw_event_type)
    if not event_type_text:
        return UNKNOWN_EVENT_ID

    event_type = GatewayEventType.parse(event_type_text)
    entity_name = PRIMARY_ENTITY.get(event_type)
    if entity_name is not None:
        entity_id = _as_str(dig(payload, entity_name, "entity", "id"))
        return f"{event_type.value}:{entity_id}" if entity_id else UNKNOWN_EVENT_ID

    # Unrecognized type: fall back to the first entity carrying an id
    if isinstance(payload, Mapping):
        for name in sorted(payload):
            entity_id = _as_str(dig(payload, name, "entity", "id"))
            if entity_id:
                return f"{event_type_text}:{entity_id}"
    return UNKNOWN_EVENT_ID
