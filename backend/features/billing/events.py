"""
backend/features/billing/events.py

Decode provider webhook envelopes into typed billing events.

Envelope shape:
    {
      "meta": {"event_name": "...", "event_id": "...", "event_created_at": "...",
               "custom_data": {"user_id": "..."}},
      "data": {"id": "...", "type": "...", "attributes": {...}}
    }
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from backend.core.errors import InvalidPayloadError
from backend.models.billing import (
    BillingEvent,
    EventKind,
    OrderEvent,
    PaymentEvent,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionExpired,
    SubscriptionResumed,
    SubscriptionUpdated,
    UnknownEvent,
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into aware UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def event_id_for(meta: Dict[str, Any], data: Dict[str, Any]) -> str:
    """Provider event id, or a key derived from (name, object id, creation time).

    The object id alone repeats across every event of one subscription.
    """
    explicit = _str_or_none(meta.get("event_id"))
    if explicit:
        return explicit
    return f"{meta.get('event_name')}:{data.get('id')}:{meta.get('event_created_at')}"


def _custom_user_id(meta: Dict[str, Any], attributes: Dict[str, Any]) -> Optional[str]:
    for source in (meta.get("custom_data"), attributes.get("custom_data")):
        if isinstance(source, dict) and source.get("user_id"):
            return str(source["user_id"])
    return None


def _period_end(attributes: Dict[str, Any]) -> Optional[datetime]:
    return parse_timestamp(attributes.get("current_period_end") or attributes.get("renews_at"))


def decode_event(envelope: Any) -> BillingEvent:
    """
    Build the typed event for a parsed webhook body.

    Raises:
        InvalidPayloadError: the envelope is structurally unusable
    """
    if not isinstance(envelope, dict):
        raise InvalidPayloadError("Webhook body must be a JSON object")
    meta = envelope.get("meta")
    data = envelope.get("data")
    if not isinstance(meta, dict) or not isinstance(data, dict):
        raise InvalidPayloadError("Webhook body requires 'meta' and 'data' objects")

    event_name = _str_or_none(meta.get("event_name"))
    if not event_name:
        raise InvalidPayloadError("Missing meta.event_name")
    created_at = parse_timestamp(meta.get("event_created_at"))
    if created_at is None:
        raise InvalidPayloadError("Missing or invalid meta.event_created_at")

    attributes = data.get("attributes") or {}
    if not isinstance(attributes, dict):
        raise InvalidPayloadError("data.attributes must be an object")

    base = {
        "event_id": event_id_for(meta, data),
        "event_name": event_name,
        "created_at": created_at,
    }
    object_id = _str_or_none(data.get("id"))

    try:
        kind = EventKind(event_name)
    except ValueError:
        kind = EventKind.UNKNOWN

    try:
        if kind == EventKind.SUBSCRIPTION_CREATED:
            return SubscriptionCreated(
                **base,
                subscription_id=object_id,
                user_id=_custom_user_id(meta, attributes),
                customer_id=_str_or_none(attributes.get("customer_id")),
                variant_id=_str_or_none(attributes.get("variant_id")),
                current_period_end=_period_end(attributes),
            )
        if kind == EventKind.SUBSCRIPTION_UPDATED:
            return SubscriptionUpdated(
                **base,
                subscription_id=object_id,
                provider_status=_str_or_none(attributes.get("status")),
                variant_id=_str_or_none(attributes.get("variant_id")),
                current_period_end=_period_end(attributes),
                cancelled=bool(attributes.get("cancelled", False)),
            )
        if kind == EventKind.SUBSCRIPTION_CANCELLED:
            return SubscriptionCancelled(**base, subscription_id=object_id, current_period_end=_period_end(attributes))
        if kind == EventKind.SUBSCRIPTION_RESUMED:
            return SubscriptionResumed(**base, subscription_id=object_id, current_period_end=_period_end(attributes))
        if kind == EventKind.SUBSCRIPTION_EXPIRED:
            return SubscriptionExpired(**base, subscription_id=object_id)
        if kind in (EventKind.PAYMENT_SUCCESS, EventKind.PAYMENT_FAILED, EventKind.PAYMENT_RECOVERED):
            return PaymentEvent(
                **base,
                kind=kind,
                subscription_id=_str_or_none(attributes.get("subscription_id")),
                amount=_int_or_none(attributes.get("total", attributes.get("amount"))),
                currency=_str_or_none(attributes.get("currency")),
                invoice_url=_str_or_none((attributes.get("urls") or {}).get("invoice_url") or attributes.get("invoice_url")),
                error=_str_or_none(attributes.get("error")),
                current_period_end=_period_end(attributes),
            )
        if kind in (EventKind.ORDER_CREATED, EventKind.ORDER_REFUNDED):
            return OrderEvent(
                **base,
                kind=kind,
                order_id=object_id,
                user_id=_custom_user_id(meta, attributes),
                amount=_int_or_none(attributes.get("refunded_amount", attributes.get("refund_amount", attributes.get("total")))),
                currency=_str_or_none(attributes.get("currency")),
                reason=_str_or_none(attributes.get("refund_reason")),
            )
    except PydanticValidationError as exc:
        raise InvalidPayloadError(f"Malformed {event_name} payload: {exc.error_count()} invalid field(s)") from exc

    return UnknownEvent(**base, attributes={"type": data.get("type"), "id": object_id})
