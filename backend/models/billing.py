"""
Billing event models.

Provider webhooks arrive as loosely typed JSON keyed by ``meta.event_name``.
They are decoded once, at the ingestor boundary, into one of the event
classes below. ``UnknownEvent`` keeps unrecognised kinds flowing so new
provider events never break ingestion.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_SUCCESS = "subscription_payment_success"
    PAYMENT_FAILED = "subscription_payment_failed"
    PAYMENT_RECOVERED = "subscription_payment_recovered"
    ORDER_CREATED = "order_created"
    ORDER_REFUNDED = "order_refunded"
    UNKNOWN = "unknown"


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_name: str
    created_at: datetime


class SubscriptionCreated(_Event):
    kind: EventKind = EventKind.SUBSCRIPTION_CREATED
    subscription_id: str
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    variant_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


class SubscriptionUpdated(_Event):
    kind: EventKind = EventKind.SUBSCRIPTION_UPDATED
    subscription_id: str
    provider_status: Optional[str] = None
    variant_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled: bool = False


class SubscriptionCancelled(_Event):
    kind: EventKind = EventKind.SUBSCRIPTION_CANCELLED
    subscription_id: str
    current_period_end: Optional[datetime] = None


class SubscriptionResumed(_Event):
    kind: EventKind = EventKind.SUBSCRIPTION_RESUMED
    subscription_id: str
    current_period_end: Optional[datetime] = None


class SubscriptionExpired(_Event):
    kind: EventKind = EventKind.SUBSCRIPTION_EXPIRED
    subscription_id: str


class PaymentEvent(_Event):
    """Payment outcome for an existing subscription."""
    kind: EventKind
    subscription_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    invoice_url: Optional[str] = None
    error: Optional[str] = None
    current_period_end: Optional[datetime] = None


class OrderEvent(_Event):
    """One-time order or refund; carries the user id in custom data."""
    kind: EventKind
    order_id: str
    user_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    reason: Optional[str] = None


class UnknownEvent(_Event):
    kind: EventKind = EventKind.UNKNOWN
    attributes: Dict[str, Any] = Field(default_factory=dict)


BillingEvent = Union[
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionCancelled,
    SubscriptionResumed,
    SubscriptionExpired,
    PaymentEvent,
    OrderEvent,
    UnknownEvent,
]


class IngestStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"


class IngestResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: IngestStatus
    event_id: str
    event_name: str
    result: Optional[Dict[str, Any]] = None


class IdempotencyRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    processed_at: datetime
    outcome: Optional[Dict[str, Any]] = None


class PaymentLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    status: str  # success, failed, refunded
    subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    invoice_url: Optional[str] = None
    error: Optional[str] = None
