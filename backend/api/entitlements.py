"""
Entitlement API routes.

- POST /api/entitlements/register: Create the free record for the caller
- GET  /api/entitlements/me: Current entitlement of the caller
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.core.auth import get_current_user_id
from backend.core.errors import UserNotFoundError
from backend.core.services import Services, get_services
from backend.models.entitlement import EntitlementRecord


router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class EntitlementResponse(BaseModel):
    user_id: str
    tier: str
    is_premium: bool
    subscription_status: str
    plan: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


def _to_response(record: EntitlementRecord) -> EntitlementResponse:
    return EntitlementResponse(
        user_id=record.user_id,
        tier=record.tier.value,
        is_premium=record.is_premium,
        subscription_status=record.subscription_status.value,
        plan=record.plan,
        current_period_end=record.current_period_end,
        cancelled_at=record.cancelled_at,
    )


@router.post("/register", response_model=EntitlementResponse)
def register(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Called once at user registration. Repeated calls return the existing record."""
    return _to_response(services.store.create_for_user(user_id))


@router.get("/me", response_model=EntitlementResponse)
def get_my_entitlement(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    record = services.store.get(user_id)
    if record is None:
        raise UserNotFoundError(f"No entitlement for user {user_id}")
    return _to_response(record)
