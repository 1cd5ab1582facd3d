"""
Quota API routes.

- GET  /api/quota/status: Per-resource usage for the caller
- GET  /api/quota/usage: Daily usage stats for the caller
- POST /api/quota/{resource_type}/consume: Admission check for other services

``require_quota`` guards metered routes:

    @router.post("/scan")
    def scan(admission: Admission = Depends(require_quota(ResourceType.SCAN))):
        ...
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from backend.core.auth import get_current_user_id
from backend.core.errors import QuotaBusyError, QuotaExceededError
from backend.core.services import Services, get_services
from backend.models.entitlement import Admission, QuotaStatus, ResourceType


router = APIRouter(prefix="/quota", tags=["quota"])

logger = logging.getLogger("ecoscore.quota")


class QuotaStatusResponse(BaseModel):
    tier: str
    is_premium: bool
    quotas: Dict[str, QuotaStatus]


class AdmissionResponse(BaseModel):
    allowed: bool
    resource_type: str
    remaining: int
    limit: int
    reset_at: datetime
    requires_upgrade: bool


def admit(services: Services, user_id: str, resource_type: ResourceType, retries: Optional[int] = None) -> Admission:
    """check_and_consume with a bounded number of retries on a busy lease."""
    attempts = 1 + max(0, services.settings.QUOTA_BUSY_RETRIES if retries is None else retries)
    for attempt in range(1, attempts):
        try:
            return services.ledger.check_and_consume(user_id, resource_type)
        except QuotaBusyError:
            logger.info(
                "[quota] busy, retrying",
                extra={"user_id": user_id, "resource_type": resource_type.value, "attempt": attempt},
            )
    return services.ledger.check_and_consume(user_id, resource_type)


def _upgrade_details(admission: Admission) -> Dict:
    return {
        "resource_type": admission.resource_type.value,
        "limit": admission.limit,
        "remaining": admission.remaining,
        "reset_at": admission.reset_at.isoformat(),
        "requires_upgrade": admission.requires_upgrade,
        "upgrade_url": "/premium",
    }


def require_quota(resource_type: ResourceType) -> Callable[..., Admission]:
    """
    Build a dependency that consumes one unit of ``resource_type``.

    Errors:
        403: Quota exhausted (upgrade payload in error.details)
        404: No entitlement for the caller
        429: Lease still busy after retries (Retry-After header)
    """
    resource_type = ResourceType(resource_type)

    def dependency(
        user_id: str = Depends(get_current_user_id),
        services: Services = Depends(get_services),
    ) -> Admission:
        admission = admit(services, user_id, resource_type)
        if not admission.allowed:
            raise QuotaExceededError(
                f"Quota exceeded for {resource_type.value}",
                details=_upgrade_details(admission),
            )
        return admission

    return dependency


@router.get("/status", response_model=QuotaStatusResponse)
def get_quota_status(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """
    Current usage per resource type.

    Returns:
        {"tier": "free", "is_premium": false,
         "quotas": {"scan": {"used", "limit", "remaining", "reset_at"}, ...}}
    """
    record = services.store.get(user_id)
    status = services.ledger.get_status(user_id)
    return {
        "tier": record.tier.value if record else "free",
        "is_premium": bool(record and record.is_premium),
        "quotas": {resource.value: quota for resource, quota in status.items()},
    }


@router.get("/usage")
def get_usage(
    days: int = Query(30, ge=0, le=90),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Dict:
    """Daily usage counts for the trailing window (empty when Redis is down)."""
    stats = services.ledger.get_usage_stats(user_id, days=days)
    return {"days": days, **stats}


@router.post("/{resource_type}/consume", response_model=AdmissionResponse)
def consume(
    resource_type: ResourceType,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """
    Admit or reject one unit of ``resource_type``.

    Exhausted quota is a normal 200 response with ``allowed: false``.
    """
    admission = admit(services, user_id, resource_type)
    return {
        "allowed": admission.allowed,
        "resource_type": admission.resource_type.value,
        "remaining": admission.remaining,
        "limit": admission.limit,
        "reset_at": admission.reset_at,
        "requires_upgrade": admission.requires_upgrade,
    }
