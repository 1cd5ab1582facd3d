"""
backend/features/quota/policy.py

Quota policy: per-tier limits, per-resource periods, reset boundaries.

Everything here is static configuration plus calendar arithmetic; no I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional

from backend.core.config import DEFAULT_QUOTA_LIMITS, DEFAULT_QUOTA_PERIODS, Settings
from backend.models.entitlement import PeriodKind, ResourceType, Tier, UNLIMITED


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def next_day_boundary(now: datetime) -> datetime:
    """Next UTC midnight strictly after ``now``."""
    now = _normalize_now(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def next_month_boundary(now: datetime) -> datetime:
    """First day of the next month, 00:00 UTC."""
    now = _normalize_now(now)
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def next_reset_at(period_kind: PeriodKind, now: datetime) -> datetime:
    """Next period boundary after ``now``, however many periods were skipped."""
    if period_kind == PeriodKind.DAILY:
        return next_day_boundary(now)
    return next_month_boundary(now)


@dataclass(frozen=True)
class QuotaPolicy:
    limits: Mapping[str, Mapping[str, int]] = field(default_factory=lambda: DEFAULT_QUOTA_LIMITS)
    periods: Mapping[str, str] = field(default_factory=lambda: DEFAULT_QUOTA_PERIODS)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "QuotaPolicy":
        return cls(limits=cfg.QUOTA_LIMITS, periods=cfg.QUOTA_PERIODS)

    def limit_for(self, tier: Tier, resource_type: ResourceType) -> int:
        """Configured limit for ``tier``; resources missing from the table get 0."""
        tier_limits = self.limits.get(Tier(tier).value, {})
        limit = tier_limits.get(ResourceType(resource_type).value, 0)
        return UNLIMITED if limit < 0 else int(limit)

    def limits_for(self, tier: Tier) -> Dict[ResourceType, int]:
        return {resource: self.limit_for(tier, resource) for resource in ResourceType}

    def period_for(self, resource_type: ResourceType) -> PeriodKind:
        raw = self.periods.get(ResourceType(resource_type).value, PeriodKind.MONTHLY.value)
        return PeriodKind(raw)

    def next_reset_at(self, resource_type: ResourceType, now: Optional[datetime] = None) -> datetime:
        return next_reset_at(self.period_for(resource_type), _normalize_now(now))
