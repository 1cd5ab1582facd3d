"""
backend/models/entitlement.py

Entitlement and quota models.

An entitlement is what a user may currently do, derived from their
subscription tier and status. Quota counters meter consumption of each
resource type within its period.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


UNLIMITED = -1


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


PREMIUM_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED}
)


class ResourceType(str, Enum):
    SCAN = "scan"
    AI_QUESTION = "ai_question"
    EXPORT = "export"


class PeriodKind(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class EntitlementRecord(BaseModel):
    """
    Current entitlement of one user.

    Invariant: tier == premium implies subscription_status is active,
    past_due or cancelled. A cancelled subscription keeps premium until
    the provider reports expiry.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    plan: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_variant_id: Optional[str] = None

    @property
    def is_premium(self) -> bool:
        return self.tier == Tier.PREMIUM

    def is_consistent(self) -> bool:
        return self.tier != Tier.PREMIUM or self.subscription_status in PREMIUM_STATUSES


class QuotaCounter(BaseModel):
    """Usage of one resource type for one user within the current period."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    resource_type: ResourceType
    period_kind: PeriodKind
    used: int
    limit: int
    period_reset_at: datetime

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


class Admission(BaseModel):
    """Outcome of a quota check. Exhausted quota is a normal outcome, not an error."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    resource_type: ResourceType
    remaining: int
    limit: int
    reset_at: datetime
    requires_upgrade: bool = False


class QuotaStatus(BaseModel):
    """Read-only view of one counter for status display."""
    model_config = ConfigDict(frozen=True)

    used: int
    limit: int
    remaining: int
    reset_at: datetime
