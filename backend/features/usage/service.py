"""
backend/features/usage/service.py

Usage accounting for observability.

Handles:
- Usage event emission (per user, resource type and UTC day)
- Usage stats over a trailing window

Best-effort by contract: a failed write is logged and dropped, never raised
into the admission path.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from backend.models.entitlement import ResourceType

logger = logging.getLogger("ecoscore.usage")

SECONDS_PER_DAY = 86400


def usage_key(user_id: str, resource_type: ResourceType, day: date) -> str:
    return f"quota_usage:{user_id}:{ResourceType(resource_type).value}:{day.isoformat()}"


class UsageRecorder:
    def __init__(self, client: Optional[Redis], *, retention_days: int = 7):
        self._client = client
        self._retention_seconds = SECONDS_PER_DAY * max(1, retention_days)

    def emit_usage_event(
        self,
        user_id: str,
        resource_type: ResourceType,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """Count one consumption against the day it occurred on."""
        if self._client is None:
            return
        occurred_at = occurred_at or datetime.now(timezone.utc)
        key = usage_key(user_id, resource_type, occurred_at.astimezone(timezone.utc).date())
        try:
            with self._client.pipeline(transaction=False) as pipe:
                pipe.incr(key)
                pipe.expire(key, self._retention_seconds)
                pipe.execute()
        except RedisError:
            logger.warning(
                "usage event dropped",
                extra={"user_id": user_id, "resource_type": ResourceType(resource_type).value},
                exc_info=True,
            )

    def get_usage_stats(
        self,
        user_id: str,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> Dict[str, Dict]:
        """
        Per-day counts for the trailing ``days`` window (today included).

        Returns:
            {
                "daily": {"2026-10-18": {"scan": 3, "ai_question": 0, "export": 0}, ...},
                "total": {"scan": 3, "ai_question": 0, "export": 0}
            }
        Empty when the cache is not available.
        """
        stats: Dict[str, Dict] = {"daily": {}, "total": {}}
        if self._client is None:
            return stats

        now = now or datetime.now(timezone.utc)
        today = now.astimezone(timezone.utc).date()
        window = [today - timedelta(days=offset) for offset in range(max(0, days), -1, -1)]
        resources = list(ResourceType)
        keys = [usage_key(user_id, resource, day) for day in window for resource in resources]

        try:
            values = self._client.mget(keys) if keys else []
        except RedisError:
            logger.warning("usage stats unavailable", extra={"user_id": user_id}, exc_info=True)
            return stats

        totals = {resource.value: 0 for resource in resources}
        index = 0
        for day in window:
            per_day = {}
            for resource in resources:
                raw = values[index]
                index += 1
                count = int(raw) if raw else 0
                per_day[resource.value] = count
                totals[resource.value] += count
            stats["daily"][day.isoformat()] = per_day
        stats["total"] = totals
        return stats
