"""Cleanup job for billing idempotency log retention."""
from datetime import datetime, timedelta, timezone
import logging
from typing import Optional

from sqlalchemy import delete, select, func

from backend.core.config import settings
from backend.core.database import billing_event_failures, billing_events, get_db_session

logger = logging.getLogger("ecoscore.cleanup.idempotency")


def cleanup_idempotency_log(
    *,
    retention_days: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    """Delete processed-event records and failure rows older than the retention window.

    The window must exceed the provider's redelivery horizon; a purged event
    id would be applied again if redelivered.
    """
    days = retention_days if retention_days is not None else int(settings.BILLING_IDEMPOTENCY_RETENTION_DAYS or 30)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

    with get_db_session() as session:
        events_candidates = session.execute(
            select(func.count()).select_from(billing_events).where(billing_events.c.processed_at < cutoff)
        ).scalar() or 0
        failures_candidates = session.execute(
            select(func.count()).select_from(billing_event_failures).where(billing_event_failures.c.last_seen_at < cutoff)
        ).scalar() or 0

        events_deleted = 0
        failures_deleted = 0
        if not dry_run:
            if events_candidates:
                result = session.execute(
                    delete(billing_events).where(billing_events.c.processed_at < cutoff)
                )
                events_deleted = result.rowcount or 0
            if failures_candidates:
                result = session.execute(
                    delete(billing_event_failures).where(billing_event_failures.c.last_seen_at < cutoff)
                )
                failures_deleted = result.rowcount or 0

    summary = {
        "retention_days": days,
        "dry_run": dry_run,
        "candidates": events_candidates,
        "deleted": events_deleted,
        "failure_candidates": failures_candidates,
        "failures_deleted": failures_deleted,
    }
    logger.info("[cleanup] billing idempotency retention", extra=summary)
    return summary


if __name__ == "__main__":
    result = cleanup_idempotency_log()
    print(result)
