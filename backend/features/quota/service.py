"""
backend/features/quota/service.py

Quota ledger: admission control for metered operations.

Handles:
- check_and_consume: admit or reject one unit of a resource, consuming on admit
- get_status: read-only view of every counter for status display
- Lazy period reset on read (no background scheduler)

Serialization per (user, resource) comes from a short lease; the bound on
``used`` itself is enforced by the conditional UPDATE in the store.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from backend.core.errors import QuotaBusyError, UserNotFoundError
from backend.core.locks import LockService, lease
from backend.features.entitlements.store import EntitlementStore
from backend.features.quota.policy import QuotaPolicy
from backend.features.usage.service import UsageRecorder
from backend.models.entitlement import (
    Admission,
    EntitlementRecord,
    QuotaCounter,
    QuotaStatus,
    ResourceType,
    UNLIMITED,
)

logger = logging.getLogger("ecoscore.quota")

# A reset can race a period boundary; one extra pass settles it
_MAX_CONSUME_ATTEMPTS = 3


def lock_key(user_id: str, resource_type: ResourceType) -> str:
    return f"quota_lock:{user_id}:{ResourceType(resource_type).value}"


def _remaining(limit: int, used: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


class QuotaLedger:
    def __init__(
        self,
        store: EntitlementStore,
        locks: LockService,
        policy: QuotaPolicy,
        usage: UsageRecorder,
        *,
        lock_ttl_seconds: float = 5.0,
        lock_wait_seconds: float = 0.25,
        lock_poll_seconds: float = 0.025,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._locks = locks
        self._policy = policy
        self._usage = usage
        self._lock_ttl_seconds = lock_ttl_seconds
        self._lock_wait_seconds = lock_wait_seconds
        self._lock_poll_seconds = lock_poll_seconds
        self._clock = clock

    def _entitlement(self, user_id: str) -> EntitlementRecord:
        record = self._store.get(user_id)
        if record is None:
            raise UserNotFoundError(f"No entitlement for user {user_id}")
        return record

    def _fresh_counter(self, user_id: str, resource_type: ResourceType, limit: int, now: datetime) -> QuotaCounter:
        """Load (creating lazily) and reset the counter if its period has elapsed."""
        counter = self._store.ensure_counter(
            user_id,
            resource_type,
            period_kind=self._policy.period_for(resource_type),
            limit=limit,
            period_reset_at=self._policy.next_reset_at(resource_type, now),
        )
        if now < counter.period_reset_at:
            return counter

        new_reset_at = self._policy.next_reset_at(resource_type, now)
        if self._store.reset_counter(
            user_id,
            resource_type,
            expected_reset_at=counter.period_reset_at,
            new_reset_at=new_reset_at,
            limit=limit,
        ):
            logger.info(
                "[quota] period reset",
                extra={
                    "user_id": user_id,
                    "resource_type": resource_type.value,
                    "previous_reset_at": counter.period_reset_at.isoformat(),
                    "next_reset_at": new_reset_at.isoformat(),
                },
            )
        refreshed = self._store.get_counter(user_id, resource_type)
        assert refreshed is not None
        return refreshed

    def check_and_consume(self, user_id: str, resource_type: ResourceType) -> Admission:
        """
        Admit or reject one unit of ``resource_type`` for ``user_id``.

        Raises:
            UserNotFoundError: no entitlement record for the user
            QuotaBusyError: the lease could not be taken within the wait bound
        """
        resource_type = ResourceType(resource_type)
        record = self._entitlement(user_id)
        limit = self._policy.limit_for(record.tier, resource_type)

        def busy() -> Exception:
            logger.warning(
                "[quota] BUSY",
                extra={"user_id": user_id, "resource_type": resource_type.value},
            )
            return QuotaBusyError(
                f"Quota operation in progress for {resource_type.value}, retry shortly",
                retry_after_seconds=self._lock_wait_seconds,
            )

        with lease(
            self._locks,
            lock_key(user_id, resource_type),
            ttl_seconds=self._lock_ttl_seconds,
            wait_seconds=self._lock_wait_seconds,
            poll_seconds=self._lock_poll_seconds,
            on_busy=busy,
        ):
            admission = self._consume_locked(user_id, resource_type, limit)

        if admission.allowed:
            self._usage.emit_usage_event(user_id, resource_type, self._clock())
        return admission

    def _consume_locked(self, user_id: str, resource_type: ResourceType, limit: int) -> Admission:
        for _ in range(_MAX_CONSUME_ATTEMPTS):
            now = self._clock()
            counter = self._fresh_counter(user_id, resource_type, limit, now)

            if limit != UNLIMITED and counter.used >= limit:
                logger.info(
                    "[quota] EXCEEDED",
                    extra={
                        "user_id": user_id,
                        "resource_type": resource_type.value,
                        "used": counter.used,
                        "limit": limit,
                    },
                )
                return Admission(
                    allowed=False,
                    resource_type=resource_type,
                    remaining=0,
                    limit=limit,
                    reset_at=counter.period_reset_at,
                    requires_upgrade=True,
                )

            consumed = self._store.try_consume(user_id, resource_type, limit=limit, now=now)
            if consumed is not None:
                logger.info(
                    "[quota] ALLOWED",
                    extra={
                        "user_id": user_id,
                        "resource_type": resource_type.value,
                        "used": consumed.used,
                        "limit": limit,
                    },
                )
                return Admission(
                    allowed=True,
                    resource_type=resource_type,
                    remaining=_remaining(limit, consumed.used),
                    limit=limit,
                    reset_at=consumed.period_reset_at,
                )
            # Refused: a concurrent writer filled the quota or the period
            # rolled over since the read. Re-read and decide again.

        counter = self._store.get_counter(user_id, resource_type)
        assert counter is not None
        return Admission(
            allowed=False,
            resource_type=resource_type,
            remaining=0,
            limit=limit,
            reset_at=counter.period_reset_at,
            requires_upgrade=limit != UNLIMITED,
        )

    def get_status(self, user_id: str) -> Dict[ResourceType, QuotaStatus]:
        """Current usage per resource type; stale periods are shown as reset, nothing is written."""
        record = self._entitlement(user_id)
        counters = self._store.list_counters(user_id)
        now = self._clock()

        status: Dict[ResourceType, QuotaStatus] = {}
        for resource_type in ResourceType:
            limit = self._policy.limit_for(record.tier, resource_type)
            counter: Optional[QuotaCounter] = counters.get(resource_type)
            if counter is None or now >= counter.period_reset_at:
                used = 0
                reset_at = self._policy.next_reset_at(resource_type, now)
            else:
                used = counter.used
                reset_at = counter.period_reset_at
            status[resource_type] = QuotaStatus(
                used=used,
                limit=limit,
                remaining=_remaining(limit, used),
                reset_at=reset_at,
            )
        return status

    def get_usage_stats(self, user_id: str, days: int = 30) -> Dict[str, Dict]:
        self._entitlement(user_id)
        return self._usage.get_usage_stats(user_id, days=days, now=self._clock())
