"""
backend/features/entitlements/store.py

Entitlement store: durable entitlement records, quota counters and the
payment log.

Only the quota ledger and the webhook ingestor write through this store.
Methods that take a ``session`` join the caller's transaction; without one
they run in a short transaction of their own.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional
import logging

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.core.database import as_utc, entitlements, payment_logs, quota_counters
from backend.models.billing import PaymentLogEntry
from backend.models.entitlement import (
    EntitlementRecord,
    PeriodKind,
    QuotaCounter,
    ResourceType,
    SubscriptionStatus,
    Tier,
    UNLIMITED,
)

logger = logging.getLogger("ecoscore.entitlements.store")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_record(row) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row.user_id,
        tier=Tier(row.tier),
        subscription_status=SubscriptionStatus(row.subscription_status),
        plan=row.plan,
        current_period_end=as_utc(row.current_period_end),
        cancelled_at=as_utc(row.cancelled_at),
        provider_subscription_id=row.provider_subscription_id,
        provider_customer_id=row.provider_customer_id,
        provider_variant_id=row.provider_variant_id,
    )


def _row_to_counter(row) -> QuotaCounter:
    return QuotaCounter(
        user_id=row.user_id,
        resource_type=ResourceType(row.resource_type),
        period_kind=PeriodKind(row.period_kind),
        used=row.used,
        limit=row.quota_limit,
        period_reset_at=as_utc(row.period_reset_at),
    )


class EntitlementStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Unit of work: commit on success, roll back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own

    # ------------------------------------------------------------------
    # Entitlement records
    # ------------------------------------------------------------------

    def create_for_user(self, user_id: str) -> EntitlementRecord:
        """Create the free/none record for a newly registered user (idempotent)."""
        now = _utc_now()
        try:
            with self.transaction() as session:
                session.execute(
                    insert(entitlements).values(
                        user_id=user_id,
                        tier=Tier.FREE.value,
                        subscription_status=SubscriptionStatus.NONE.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            logger.debug("entitlement already exists", extra={"user_id": user_id})

        record = self.get(user_id)
        assert record is not None
        return record

    def get(self, user_id: str, session: Optional[Session] = None) -> Optional[EntitlementRecord]:
        with self._scope(session) as s:
            row = s.execute(
                select(entitlements).where(entitlements.c.user_id == user_id)
            ).first()
        return _row_to_record(row) if row else None

    def get_by_subscription(self, subscription_id: str, session: Optional[Session] = None) -> Optional[EntitlementRecord]:
        with self._scope(session) as s:
            row = s.execute(
                select(entitlements).where(entitlements.c.provider_subscription_id == subscription_id)
            ).first()
        return _row_to_record(row) if row else None

    def save(self, record: EntitlementRecord, session: Session) -> None:
        """Persist a transitioned record. Callers hold the webhook transaction."""
        if not record.is_consistent():
            raise ValueError(
                f"refusing to persist premium tier with status {record.subscription_status.value}"
            )
        result = session.execute(
            update(entitlements)
            .where(entitlements.c.user_id == record.user_id)
            .values(
                tier=record.tier.value,
                subscription_status=record.subscription_status.value,
                plan=record.plan,
                current_period_end=record.current_period_end,
                cancelled_at=record.cancelled_at,
                provider_subscription_id=record.provider_subscription_id,
                provider_customer_id=record.provider_customer_id,
                provider_variant_id=record.provider_variant_id,
                updated_at=_utc_now(),
            )
        )
        if result.rowcount != 1:
            raise LookupError(f"entitlement for user {record.user_id} disappeared")

    # ------------------------------------------------------------------
    # Quota counters
    # ------------------------------------------------------------------

    def get_counter(self, user_id: str, resource_type: ResourceType, session: Optional[Session] = None) -> Optional[QuotaCounter]:
        with self._scope(session) as s:
            row = s.execute(
                select(quota_counters).where(
                    and_(
                        quota_counters.c.user_id == user_id,
                        quota_counters.c.resource_type == ResourceType(resource_type).value,
                    )
                )
            ).first()
        return _row_to_counter(row) if row else None

    def list_counters(self, user_id: str) -> Dict[ResourceType, QuotaCounter]:
        with self.transaction() as s:
            rows = s.execute(
                select(quota_counters).where(quota_counters.c.user_id == user_id)
            ).all()
        counters = {}
        for row in rows:
            try:
                counter = _row_to_counter(row)
            except ValueError:
                # Resource types retired from configuration
                continue
            counters[counter.resource_type] = counter
        return counters

    def ensure_counter(
        self,
        user_id: str,
        resource_type: ResourceType,
        *,
        period_kind: PeriodKind,
        limit: int,
        period_reset_at: datetime,
    ) -> QuotaCounter:
        """Load the counter, creating it on first use."""
        existing = self.get_counter(user_id, resource_type)
        if existing is not None:
            return existing

        try:
            with self.transaction() as session:
                session.execute(
                    insert(quota_counters).values(
                        user_id=user_id,
                        resource_type=ResourceType(resource_type).value,
                        period_kind=PeriodKind(period_kind).value,
                        used=0,
                        quota_limit=limit,
                        period_reset_at=period_reset_at,
                        updated_at=_utc_now(),
                    )
                )
        except IntegrityError:
            # Race condition: a concurrent request created it first
            logger.debug(
                "quota counter created concurrently",
                extra={"user_id": user_id, "resource_type": ResourceType(resource_type).value},
            )

        counter = self.get_counter(user_id, resource_type)
        assert counter is not None
        return counter

    def reset_counter(
        self,
        user_id: str,
        resource_type: ResourceType,
        *,
        expected_reset_at: datetime,
        new_reset_at: datetime,
        limit: int,
    ) -> bool:
        """Zero a stale counter. Compare-and-set on the old boundary so only one caller resets."""
        with self.transaction() as session:
            result = session.execute(
                update(quota_counters)
                .where(
                    and_(
                        quota_counters.c.user_id == user_id,
                        quota_counters.c.resource_type == ResourceType(resource_type).value,
                        quota_counters.c.period_reset_at == expected_reset_at,
                    )
                )
                .values(used=0, period_reset_at=new_reset_at, quota_limit=limit, updated_at=_utc_now())
            )
            return result.rowcount == 1

    def try_consume(
        self,
        user_id: str,
        resource_type: ResourceType,
        *,
        limit: int,
        now: datetime,
    ) -> Optional[QuotaCounter]:
        """Atomically increment ``used`` if the result stays within ``limit``.

        Returns the updated counter, or None when the increment was refused
        (limit reached, or the period elapsed since the counter was read).
        """
        conditions = [
            quota_counters.c.user_id == user_id,
            quota_counters.c.resource_type == ResourceType(resource_type).value,
            quota_counters.c.period_reset_at > now,
        ]
        if limit != UNLIMITED:
            conditions.append(quota_counters.c.used < limit)

        with self.transaction() as session:
            result = session.execute(
                update(quota_counters)
                .where(and_(*conditions))
                .values(used=quota_counters.c.used + 1, quota_limit=limit, updated_at=now)
            )
            if result.rowcount != 1:
                return None
            # Same transaction: sees exactly our increment
            return self.get_counter(user_id, resource_type, session=session)

    def apply_limits(
        self,
        user_id: str,
        limits: Mapping[ResourceType, int],
        session: Session,
        *,
        reset_usage: bool = False,
        reset_at: Optional[Mapping[ResourceType, datetime]] = None,
    ) -> None:
        """Rewrite the limit snapshot of existing counters, optionally zeroing usage."""
        for resource_type, limit in limits.items():
            values = {"quota_limit": limit, "updated_at": _utc_now()}
            if reset_usage:
                values["used"] = 0
                if reset_at and resource_type in reset_at:
                    values["period_reset_at"] = reset_at[resource_type]
            session.execute(
                update(quota_counters)
                .where(
                    and_(
                        quota_counters.c.user_id == user_id,
                        quota_counters.c.resource_type == ResourceType(resource_type).value,
                    )
                )
                .values(**values)
            )

    # ------------------------------------------------------------------
    # Payment log
    # ------------------------------------------------------------------

    def record_payment(self, event_id: str, entry: PaymentLogEntry, session: Session) -> None:
        session.execute(
            insert(payment_logs).values(
                user_id=entry.user_id,
                event_id=event_id,
                subscription_id=entry.subscription_id,
                order_id=entry.order_id,
                amount=entry.amount,
                currency=entry.currency,
                status=entry.status,
                invoice_url=entry.invoice_url,
                error=entry.error,
                created_at=_utc_now(),
            )
        )

    def list_payments(self, user_id: str) -> List[PaymentLogEntry]:
        with self.transaction() as s:
            rows = s.execute(
                select(payment_logs)
                .where(payment_logs.c.user_id == user_id)
                .order_by(payment_logs.c.created_at, payment_logs.c.id)
            ).all()
        return [
            PaymentLogEntry(
                user_id=row.user_id,
                status=row.status,
                subscription_id=row.subscription_id,
                order_id=row.order_id,
                amount=row.amount,
                currency=row.currency,
                invoice_url=row.invoice_url,
                error=row.error,
            )
            for row in rows
        ]
