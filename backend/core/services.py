"""
Service container.

All stateful collaborators are built once at start-up from settings and
stored on ``app.state.services``; route handlers receive them through the
``get_services`` dependency. Tests build their own container around an
in-memory database and a fake Redis.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import Request
from redis import Redis
from sqlalchemy.orm import sessionmaker

from backend.core.config import Settings, settings
from backend.core.idempotency import IdempotencyLog
from backend.core.locks import LockService, NullLockService, RedisLockService
from backend.features.billing.ingestor import WebhookIngestor, plan_resolver
from backend.features.entitlements.state_machine import EntitlementStateMachine
from backend.features.entitlements.store import EntitlementStore
from backend.features.notifications.service import LoggingNotifier, Notifier
from backend.features.quota.policy import QuotaPolicy
from backend.features.quota.service import QuotaLedger
from backend.features.usage.service import UsageRecorder


@dataclass
class Services:
    settings: Settings
    store: EntitlementStore
    ledger: QuotaLedger
    ingestor: WebhookIngestor
    idempotency: IdempotencyLog
    usage: UsageRecorder
    redis: Optional[Redis] = None


def variant_plans(cfg: Settings) -> Dict[str, str]:
    mapping = {
        cfg.BILLING_VARIANT_MONTHLY: "monthly",
        cfg.BILLING_VARIANT_ANNUAL: "annual",
        cfg.BILLING_VARIANT_FAMILY_MONTHLY: "family_monthly",
    }
    return {str(variant): plan for variant, plan in mapping.items() if variant}


def build_services(
    session_factory: sessionmaker,
    redis_client: Optional[Redis] = None,
    cfg: Optional[Settings] = None,
    *,
    notifier: Optional[Notifier] = None,
    locks: Optional[LockService] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    cfg = cfg or settings
    clock = clock or (lambda: datetime.now(timezone.utc))
    policy = QuotaPolicy.from_settings(cfg)
    store = EntitlementStore(session_factory)
    usage = UsageRecorder(redis_client, retention_days=cfg.QUOTA_USAGE_RETENTION_DAYS)
    if locks is None:
        locks = RedisLockService(redis_client) if redis_client is not None else NullLockService()

    ledger = QuotaLedger(
        store,
        locks,
        policy,
        usage,
        lock_ttl_seconds=cfg.QUOTA_LOCK_TTL_SECONDS,
        lock_wait_seconds=cfg.QUOTA_LOCK_WAIT_SECONDS,
        lock_poll_seconds=cfg.QUOTA_LOCK_POLL_SECONDS,
        clock=clock,
    )
    idempotency = IdempotencyLog(session_factory, cache=redis_client)
    state_machine = EntitlementStateMachine(
        plan_resolver(variant_plans(cfg)),
        allow_resume_after_period_end=cfg.BILLING_ALLOW_RESUME_AFTER_PERIOD_END,
    )
    ingestor = WebhookIngestor(
        store,
        idempotency,
        state_machine,
        policy,
        secret=cfg.BILLING_WEBHOOK_SECRET,
        replay_window_seconds=cfg.BILLING_REPLAY_WINDOW_SECONDS,
        notifier=notifier or LoggingNotifier(),
        clock=clock,
    )
    return Services(
        settings=cfg,
        store=store,
        ledger=ledger,
        ingestor=ingestor,
        idempotency=idempotency,
        usage=usage,
        redis=redis_client,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
