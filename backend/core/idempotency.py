"""
backend/core/idempotency.py
Idempotency log for inbound billing events.

The durable record lives in ``billing_events`` and is written inside the same
transaction as the entitlement mutation it guards. Redis (``webhook:{id}``)
is only a read-through hint for fast duplicate detection; the primary key on
``event_id`` is what actually deduplicates.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.core.database import as_utc, billing_event_failures, billing_events
from backend.models.billing import IdempotencyRecord

logger = logging.getLogger("ecoscore.idempotency")

CACHE_TTL_SECONDS = 24 * 3600


def cache_key(event_id: str) -> str:
    return f"webhook:{event_id}"


class IdempotencyLog:
    def __init__(self, session_factory: sessionmaker, cache: Optional[Redis] = None, *, cache_ttl_seconds: int = CACHE_TTL_SECONDS):
        self._session_factory = session_factory
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds

    def _session(self) -> Session:
        return self._session_factory()

    def is_processed(self, event_id: str) -> bool:
        """
        Check whether an event was already applied (read-only).

        Returns:
            True if the event id is in the log, False otherwise
        """
        if self._cache is not None:
            try:
                if self._cache.exists(cache_key(event_id)):
                    return True
            except RedisError:
                logger.warning("idempotency cache unavailable", extra={"event_id": event_id}, exc_info=True)
        return self.get(event_id) is not None

    def get(self, event_id: str) -> Optional[IdempotencyRecord]:
        session = self._session()
        try:
            row = session.execute(
                select(billing_events).where(billing_events.c.event_id == event_id)
            ).first()
        finally:
            session.close()
        if row is None:
            return None
        return IdempotencyRecord(
            event_id=row.event_id,
            event_type=row.event_type,
            processed_at=as_utc(row.processed_at),
            outcome=row.outcome,
        )

    def record(
        self,
        session: Session,
        event_id: str,
        event_type: str,
        outcome: Optional[Dict[str, Any]] = None,
        processed_at: Optional[datetime] = None,
    ) -> None:
        """Insert the idempotency record into the caller's transaction.

        A concurrent duplicate surfaces as IntegrityError at flush or commit.
        """
        session.execute(
            insert(billing_events).values(
                event_id=event_id,
                event_type=event_type,
                processed_at=processed_at or datetime.now(timezone.utc),
                outcome=outcome,
            )
        )
        # Applied or not, a failure row for this event is now resolved
        session.execute(delete(billing_event_failures).where(billing_event_failures.c.event_id == event_id))

    def mark_cached(self, event_id: str) -> None:
        """Populate the fast-path hint after the record committed."""
        if self._cache is None:
            return
        try:
            self._cache.set(cache_key(event_id), "1", ex=self._cache_ttl_seconds)
        except RedisError:
            logger.warning("idempotency cache write failed", extra={"event_id": event_id}, exc_info=True)

    def record_failure(
        self,
        event_id: str,
        event_type: str,
        error_code: str,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Upsert a failed dispatch so operators can reconcile it."""
        now = now or datetime.now(timezone.utc)
        session = self._session()
        try:
            result = session.execute(
                update(billing_event_failures)
                .where(billing_event_failures.c.event_id == event_id)
                .values(
                    error_code=error_code,
                    error_message=error_message,
                    attempts=billing_event_failures.c.attempts + 1,
                    last_seen_at=now,
                )
            )
            if result.rowcount == 0:
                session.execute(
                    insert(billing_event_failures).values(
                        event_id=event_id,
                        event_type=event_type,
                        error_code=error_code,
                        error_message=error_message,
                        attempts=1,
                        first_seen_at=now,
                        last_seen_at=now,
                    )
                )
            session.commit()
        except IntegrityError:
            # Race condition: another delivery inserted the row first
            session.rollback()
            logger.info("failure row created concurrently", extra={"event_id": event_id})
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_failures(self) -> List[Dict[str, Any]]:
        session = self._session()
        try:
            rows = session.execute(
                select(billing_event_failures).order_by(billing_event_failures.c.last_seen_at.desc())
            ).all()
        finally:
            session.close()
        return [
            {
                "event_id": row.event_id,
                "event_type": row.event_type,
                "error_code": row.error_code,
                "error_message": row.error_message,
                "attempts": row.attempts,
                "first_seen_at": as_utc(row.first_seen_at),
                "last_seen_at": as_utc(row.last_seen_at),
            }
            for row in rows
        ]
