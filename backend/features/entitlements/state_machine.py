"""
backend/features/entitlements/state_machine.py

Entitlement state machine.

Pure transition logic: (current record, billing event, now) -> Transition.
No I/O happens here; the webhook ingestor persists the new record, applies
the quota effect and dispatches notifications after commit.

    none -> active -> {past_due, cancelled} -> expired
    past_due -> active | expired
    cancelled -> active (resume)

From expired only subscription_created produces active again. Events that
describe the state a record is already in are no-ops, so redundant
deliveries with distinct event ids converge on the same record.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from backend.core.errors import UnknownSubscriptionError
from backend.models.billing import (
    BillingEvent,
    EventKind,
    OrderEvent,
    PaymentEvent,
    PaymentLogEntry,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionResumed,
    SubscriptionUpdated,
)
from backend.models.entitlement import EntitlementRecord, SubscriptionStatus, Tier, PREMIUM_STATUSES


class QuotaEffect(str, Enum):
    NONE = "none"
    UNLIMITED = "unlimited"
    RECOMPUTE = "recompute"
    RESET_TO_FREE = "reset_to_free"


class Notification(str, Enum):
    PREMIUM_WELCOME = "premium_welcome"
    CANCELLATION_NOTICE = "cancellation_notice"
    PAYMENT_FAILED_NOTICE = "payment_failed_notice"
    DOWNGRADE_NOTICE = "downgrade_notice"


# Provider subscription statuses -> ours. None keeps the current status.
PROVIDER_STATUS_MAP: Dict[str, Optional[SubscriptionStatus]] = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.EXPIRED,
    "paused": None,
}


@dataclass(frozen=True)
class Transition:
    event: BillingEvent
    before: Optional[EntitlementRecord]
    after: Optional[EntitlementRecord]
    quota_effect: QuotaEffect = QuotaEffect.NONE
    notifications: Tuple[Notification, ...] = ()
    payment: Optional[PaymentLogEntry] = None
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.after is not None and self.after != self.before

    @property
    def effective(self) -> bool:
        """True when anything is persisted: a record change or a payment entry."""
        return self.changed or self.payment is not None

    def outcome(self) -> Dict[str, Any]:
        record = self.after or self.before
        return {
            "user_id": record.user_id if record else (self.payment.user_id if self.payment else None),
            "from_status": self.before.subscription_status.value if self.before else None,
            "to_status": self.after.subscription_status.value if self.after else None,
            "tier": record.tier.value if record else None,
            "changed": self.changed,
            "quota_effect": self.quota_effect.value,
            "reason": self.reason,
        }


def _noop(event: BillingEvent, record: Optional[EntitlementRecord], reason: str, payment: Optional[PaymentLogEntry] = None) -> Transition:
    return Transition(event=event, before=record, after=None, payment=payment, reason=reason)


class EntitlementStateMachine:
    def __init__(
        self,
        plan_for_variant: Callable[[Optional[str]], str] = lambda variant_id: "unknown",
        *,
        allow_resume_after_period_end: bool = False,
    ):
        self._plan_for_variant = plan_for_variant
        self._allow_resume_after_period_end = allow_resume_after_period_end

    def apply(self, record: Optional[EntitlementRecord], event: BillingEvent, now: datetime) -> Transition:
        """Compute the transition for ``event`` against ``record``.

        Raises:
            UnknownSubscriptionError: a subscription or payment event without a
                matching record, or a record bound to a different subscription.
        """
        kind = event.kind
        if kind == EventKind.SUBSCRIPTION_CREATED:
            return self._created(self._require(record, event), event, now)
        if kind == EventKind.SUBSCRIPTION_UPDATED:
            return self._updated(self._require(record, event), event, now)
        if kind == EventKind.SUBSCRIPTION_CANCELLED:
            return self._cancelled(self._require(record, event), event, now)
        if kind == EventKind.SUBSCRIPTION_RESUMED:
            return self._resumed(self._require(record, event), event, now)
        if kind == EventKind.SUBSCRIPTION_EXPIRED:
            return self._expired(self._require(record, event), event)
        if kind in (EventKind.PAYMENT_SUCCESS, EventKind.PAYMENT_FAILED, EventKind.PAYMENT_RECOVERED):
            return self._payment(self._require(record, event), event)
        if kind in (EventKind.ORDER_CREATED, EventKind.ORDER_REFUNDED):
            return self._order(event)
        return _noop(event, record, f"unhandled event {event.event_name}")

    def _require(self, record: Optional[EntitlementRecord], event: BillingEvent) -> EntitlementRecord:
        subscription_id = getattr(event, "subscription_id", None)
        if record is None:
            raise UnknownSubscriptionError(
                f"No entitlement matches subscription {subscription_id} ({event.event_name})",
                subscription_id=subscription_id,
            )
        if event.kind != EventKind.SUBSCRIPTION_CREATED and record.provider_subscription_id != subscription_id:
            raise UnknownSubscriptionError(
                f"Entitlement for {record.user_id} is bound to another subscription",
                subscription_id=subscription_id,
            )
        return record

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def _created(self, record: EntitlementRecord, event: SubscriptionCreated, now: datetime) -> Transition:
        if (
            record.subscription_status == SubscriptionStatus.ACTIVE
            and record.provider_subscription_id == event.subscription_id
        ):
            return _noop(event, record, "subscription already active")

        after = record.model_copy(
            update={
                "tier": Tier.PREMIUM,
                "subscription_status": SubscriptionStatus.ACTIVE,
                "plan": self._plan_for_variant(event.variant_id),
                "current_period_end": event.current_period_end,
                "cancelled_at": None,
                "provider_subscription_id": event.subscription_id,
                "provider_customer_id": event.customer_id or record.provider_customer_id,
                "provider_variant_id": event.variant_id,
            }
        )
        return Transition(
            event=event,
            before=record,
            after=after,
            quota_effect=QuotaEffect.UNLIMITED,
            notifications=(Notification.PREMIUM_WELCOME,),
        )

    def _updated(self, record: EntitlementRecord, event: SubscriptionUpdated, now: datetime) -> Transition:
        target = PROVIDER_STATUS_MAP.get((event.provider_status or "").lower())
        current = record.subscription_status

        if target == SubscriptionStatus.EXPIRED:
            return self._expired(record, event)
        if current == SubscriptionStatus.EXPIRED:
            return _noop(event, record, "subscription expired; only a new subscription reactivates")
        if target == SubscriptionStatus.ACTIVE and current == SubscriptionStatus.CANCELLED and not self._can_resume(record, now):
            target = None

        status = target or current
        update: Dict[str, Any] = {
            "subscription_status": status,
            "plan": self._plan_for_variant(event.variant_id) if event.variant_id else record.plan,
            "provider_variant_id": event.variant_id or record.provider_variant_id,
            "current_period_end": event.current_period_end or record.current_period_end,
        }
        if status in PREMIUM_STATUSES:
            update["tier"] = Tier.PREMIUM
        if status == SubscriptionStatus.CANCELLED and record.cancelled_at is None:
            update["cancelled_at"] = now
        if status == SubscriptionStatus.ACTIVE:
            update["cancelled_at"] = None

        after = record.model_copy(update=update)
        if after == record:
            return _noop(event, record, "no change")
        return Transition(event=event, before=record, after=after, quota_effect=QuotaEffect.RECOMPUTE)

    def _cancelled(self, record: EntitlementRecord, event: SubscriptionCancelled, now: datetime) -> Transition:
        if record.subscription_status == SubscriptionStatus.CANCELLED:
            return _noop(event, record, "subscription already cancelled")
        if record.subscription_status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            return _noop(event, record, f"cannot cancel from {record.subscription_status.value}")

        after = record.model_copy(
            update={
                "subscription_status": SubscriptionStatus.CANCELLED,
                "cancelled_at": now,
                "current_period_end": event.current_period_end or record.current_period_end,
            }
        )
        # Premium is kept until the provider reports expiry
        return Transition(
            event=event,
            before=record,
            after=after,
            notifications=(Notification.CANCELLATION_NOTICE,),
        )

    def _can_resume(self, record: EntitlementRecord, now: datetime) -> bool:
        if self._allow_resume_after_period_end or record.current_period_end is None:
            return True
        return now < record.current_period_end

    def _resumed(self, record: EntitlementRecord, event: SubscriptionResumed, now: datetime) -> Transition:
        if record.subscription_status == SubscriptionStatus.ACTIVE:
            return _noop(event, record, "subscription already active")
        if record.subscription_status != SubscriptionStatus.CANCELLED:
            return _noop(event, record, f"cannot resume from {record.subscription_status.value}")
        if not self._can_resume(record, now):
            return _noop(event, record, "current period already ended")

        after = record.model_copy(
            update={
                "subscription_status": SubscriptionStatus.ACTIVE,
                "cancelled_at": None,
                "current_period_end": event.current_period_end or record.current_period_end,
            }
        )
        return Transition(event=event, before=record, after=after)

    def _expired(self, record: EntitlementRecord, event: BillingEvent) -> Transition:
        if record.subscription_status == SubscriptionStatus.EXPIRED:
            return _noop(event, record, "subscription already expired")
        if record.subscription_status == SubscriptionStatus.NONE:
            return _noop(event, record, "no subscription to expire")

        after = record.model_copy(
            update={
                "tier": Tier.FREE,
                "subscription_status": SubscriptionStatus.EXPIRED,
            }
        )
        return Transition(
            event=event,
            before=record,
            after=after,
            quota_effect=QuotaEffect.RESET_TO_FREE,
            notifications=(Notification.DOWNGRADE_NOTICE,),
        )

    # ------------------------------------------------------------------
    # Payments and orders
    # ------------------------------------------------------------------

    def _payment(self, record: EntitlementRecord, event: PaymentEvent) -> Transition:
        status = record.subscription_status
        entry_status = "failed" if event.kind == EventKind.PAYMENT_FAILED else "success"
        payment = None
        if event.kind != EventKind.PAYMENT_RECOVERED:
            payment = PaymentLogEntry(
                user_id=record.user_id,
                status=entry_status,
                subscription_id=event.subscription_id,
                amount=event.amount,
                currency=event.currency,
                invoice_url=event.invoice_url,
                error=event.error,
            )

        if event.kind == EventKind.PAYMENT_FAILED:
            if status != SubscriptionStatus.ACTIVE:
                return _noop(event, record, f"payment failure while {status.value}", payment)
            after = record.model_copy(update={"subscription_status": SubscriptionStatus.PAST_DUE})
            return Transition(
                event=event,
                before=record,
                after=after,
                notifications=(Notification.PAYMENT_FAILED_NOTICE,),
                payment=payment,
            )

        if event.kind == EventKind.PAYMENT_RECOVERED:
            if status != SubscriptionStatus.PAST_DUE:
                return _noop(event, record, f"nothing to recover while {status.value}")
            after = record.model_copy(update={"subscription_status": SubscriptionStatus.ACTIVE})
            return Transition(event=event, before=record, after=after)

        # Successful renewal: recovers past_due and extends the period
        if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
            return _noop(event, record, f"payment received while {status.value}", payment)
        after = record.model_copy(
            update={
                "subscription_status": SubscriptionStatus.ACTIVE,
                "current_period_end": event.current_period_end or record.current_period_end,
            }
        )
        if after == record:
            return _noop(event, record, "payment recorded", payment)
        return Transition(event=event, before=record, after=after, payment=payment)

    def _order(self, event: OrderEvent) -> Transition:
        if event.kind != EventKind.ORDER_REFUNDED or not event.user_id:
            return _noop(event, None, f"{event.event_name} has no entitlement effect")
        payment = PaymentLogEntry(
            user_id=event.user_id,
            status="refunded",
            order_id=event.order_id,
            amount=-abs(event.amount) if event.amount is not None else None,
            currency=event.currency,
            error=event.reason,
        )
        return _noop(event, None, "refund recorded", payment)
