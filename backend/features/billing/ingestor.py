"""
backend/features/billing/ingestor.py

Webhook ingestor: the only entry point through which billing events change
entitlements.

    1. Verify signature (raw bytes, before any parsing)
    2. Decode the envelope, reject stale events
    3. Check idempotency (skip if already processed)
    4. Apply the state machine transition
    5. Persist record, quota limits, payment log and idempotency record in
       one transaction
    6. Dispatch notifications after commit

Payload bodies are never logged.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.core.errors import InvalidPayloadError, InvalidSignatureError, StaleEventError
from backend.core.idempotency import IdempotencyLog
from backend.core.logging import log_event
from backend.features.billing.events import decode_event
from backend.features.billing.signature import verify_signature
from backend.features.entitlements.state_machine import EntitlementStateMachine, QuotaEffect, Transition
from backend.features.entitlements.store import EntitlementStore
from backend.features.notifications.service import LoggingNotifier, Notifier, deliver
from backend.features.quota.policy import QuotaPolicy
from backend.models.billing import (
    BillingEvent,
    EventKind,
    IngestResult,
    IngestStatus,
    OrderEvent,
    UnknownEvent,
)
from backend.models.entitlement import EntitlementRecord, ResourceType, Tier

logger = logging.getLogger("ecoscore.billing")

# Schedules a callable after the response; BackgroundTasks.add_task fits
Scheduler = Callable[..., None]


def _run_now(func: Callable[..., Any], *args: Any) -> None:
    func(*args)


def plan_resolver(variant_plans: Mapping[str, str]) -> Callable[[Optional[str]], str]:
    """Map provider variant ids to plan names; unmapped variants are 'unknown'."""
    def resolve(variant_id: Optional[str]) -> str:
        if not variant_id:
            return "unknown"
        return variant_plans.get(str(variant_id), "unknown")
    return resolve


class WebhookIngestor:
    def __init__(
        self,
        store: EntitlementStore,
        idempotency: IdempotencyLog,
        state_machine: EntitlementStateMachine,
        policy: QuotaPolicy,
        *,
        secret: Optional[str],
        replay_window_seconds: int = 300,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._idempotency = idempotency
        self._machine = state_machine
        self._policy = policy
        self._secret = secret
        self._replay_window_seconds = replay_window_seconds
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock

    @property
    def signature_configured(self) -> bool:
        return bool(self._secret)

    def ingest(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        *,
        schedule: Optional[Scheduler] = None,
    ) -> IngestResult:
        """
        Verify, deduplicate and apply one webhook delivery.

        Raises:
            InvalidSignatureError / StaleEventError: security rejection (401)
            InvalidPayloadError: malformed body (400)
            AppError or other exceptions: dispatch failure; recorded and re-raised
        """
        if not verify_signature(self._secret, signature_header, raw_payload):
            logger.warning(
                "[billing] signature rejected",
                extra={"signature_present": bool(signature_header), "body_bytes": len(raw_payload)},
            )
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            envelope = json.loads(raw_payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InvalidPayloadError("Webhook body is not valid JSON") from exc
        event = decode_event(envelope)

        now = self._clock()
        age_seconds = (now - event.created_at).total_seconds()
        if abs(age_seconds) > self._replay_window_seconds:
            logger.warning(
                "[billing] stale event rejected",
                extra={"event_id": event.event_id, "event_type": event.event_name, "age_seconds": int(age_seconds)},
            )
            raise StaleEventError("Webhook event outside the replay window")

        if self._idempotency.is_processed(event.event_id):
            logger.info(
                "[billing] duplicate event",
                extra={"event_id": event.event_id, "event_type": event.event_name},
            )
            return IngestResult(
                status=IngestStatus.ALREADY_PROCESSED,
                event_id=event.event_id,
                event_name=event.event_name,
            )

        try:
            transition = self._apply(event, now)
        except IntegrityError:
            # Race condition: a concurrent delivery committed this event first
            if self._idempotency.get(event.event_id) is not None:
                logger.info(
                    "[billing] duplicate event (concurrent)",
                    extra={"event_id": event.event_id, "event_type": event.event_name},
                )
                return IngestResult(
                    status=IngestStatus.ALREADY_PROCESSED,
                    event_id=event.event_id,
                    event_name=event.event_name,
                )
            self._record_failure(event, "integrity_error", "conflicting entitlement write", now)
            raise
        except Exception as exc:
            self._record_failure(event, getattr(exc, "code", type(exc).__name__), str(exc), now)
            raise

        self._idempotency.mark_cached(event.event_id)
        self._dispatch_notifications(transition, schedule or _run_now)

        outcome = transition.outcome()
        status = IngestStatus.SUCCESS if transition.effective else IngestStatus.IGNORED
        log_event(
            "info",
            "[billing] event processed",
            user_id=outcome.get("user_id"),
            event_type=event.event_name,
            extra={
                "event_id": event.event_id,
                "status": status.value,
                "from_status": outcome.get("from_status"),
                "to_status": outcome.get("to_status"),
                "reason": transition.reason,
            },
        )
        return IngestResult(
            status=status,
            event_id=event.event_id,
            event_name=event.event_name,
            result=outcome,
        )

    def _locate(self, event: BillingEvent, session: Session) -> Optional[EntitlementRecord]:
        if isinstance(event, (OrderEvent, UnknownEvent)):
            return None
        if event.kind == EventKind.SUBSCRIPTION_CREATED:
            return self._store.get(event.user_id, session=session) if event.user_id else None
        return self._store.get_by_subscription(event.subscription_id, session=session)

    def _apply(self, event: BillingEvent, now: datetime) -> Transition:
        with self._store.transaction() as session:
            record = self._locate(event, session)
            transition = self._machine.apply(record, event, now)

            if transition.changed:
                self._store.save(transition.after, session)
                self._apply_quota_effect(transition, session, now)
            if transition.payment is not None:
                self._store.record_payment(event.event_id, transition.payment, session)

            # Recorded even for ignored events so redeliveries short-circuit
            self._idempotency.record(
                session,
                event.event_id,
                event.event_name,
                outcome=transition.outcome(),
                processed_at=now,
            )
        return transition

    def _apply_quota_effect(self, transition: Transition, session: Session, now: datetime) -> None:
        after = transition.after
        effect = transition.quota_effect
        if effect == QuotaEffect.NONE or after is None:
            return
        if effect == QuotaEffect.UNLIMITED:
            self._store.apply_limits(after.user_id, self._policy.limits_for(Tier.PREMIUM), session)
        elif effect == QuotaEffect.RECOMPUTE:
            self._store.apply_limits(after.user_id, self._policy.limits_for(after.tier), session)
        elif effect == QuotaEffect.RESET_TO_FREE:
            self._store.apply_limits(
                after.user_id,
                self._policy.limits_for(Tier.FREE),
                session,
                reset_usage=True,
                reset_at={resource: self._policy.next_reset_at(resource, now) for resource in ResourceType},
            )

    def _record_failure(self, event: BillingEvent, error_code: str, message: str, now: datetime) -> None:
        log_event(
            "error",
            "[billing] event failed",
            event_type=event.event_name,
            error_code=error_code,
            extra={"event_id": event.event_id},
        )
        try:
            self._idempotency.record_failure(event.event_id, event.event_name, error_code, message[:500], now)
        except Exception:
            logger.exception("[billing] could not record failure", extra={"event_id": event.event_id})

    def _dispatch_notifications(self, transition: Transition, schedule: Scheduler) -> None:
        record = transition.after or transition.before
        if record is None:
            return
        context: Dict[str, Any] = {
            "event_id": transition.event.event_id,
            "plan": record.plan,
            "current_period_end": record.current_period_end.isoformat() if record.current_period_end else None,
        }
        for notification in transition.notifications:
            schedule(deliver, self._notifier, record.user_id, notification, context)
