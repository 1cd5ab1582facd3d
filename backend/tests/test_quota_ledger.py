"""
Tests for the quota ledger: admission, lazy reset, lease handling.
"""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import update

from backend.core.database import get_db_session, quota_counters
from backend.core.errors import QuotaBusyError, UserNotFoundError
from backend.core.locks import NullLockService
from backend.features.quota.policy import QuotaPolicy
from backend.features.quota.service import QuotaLedger, lock_key
from backend.features.usage.service import usage_key
from backend.models.entitlement import ResourceType, SubscriptionStatus, Tier, UNLIMITED


def make_premium(services, user_id):
    record = services.store.create_for_user(user_id).model_copy(
        update={
            "tier": Tier.PREMIUM,
            "subscription_status": SubscriptionStatus.ACTIVE,
            "provider_subscription_id": f"sub_{user_id}",
        }
    )
    with services.store.transaction() as session:
        services.store.save(record, session)
    return record


def set_used(user_id, resource_type, used):
    with get_db_session() as session:
        session.execute(
            update(quota_counters)
            .where(quota_counters.c.user_id == user_id)
            .where(quota_counters.c.resource_type == resource_type.value)
            .values(used=used)
        )


def counter_used(services, user_id, resource_type=ResourceType.SCAN):
    return services.store.get_counter(user_id, resource_type).used


class TestCheckAndConsume:
    def test_unknown_user(self, services):
        with pytest.raises(UserNotFoundError):
            services.ledger.check_and_consume("ghost", ResourceType.SCAN)

    def test_first_call_creates_counter(self, services, clock):
        services.store.create_for_user("user_1")
        admission = services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        assert admission.allowed
        assert admission.limit == 30
        assert admission.remaining == 29
        assert admission.reset_at == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert counter_used(services, "user_1") == 1

    def test_free_user_at_limit_is_rejected(self, services):
        """Free scan limit 30, used 30: rejected, usage unchanged."""
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        set_used("user_1", ResourceType.SCAN, 30)

        admission = services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        assert admission.allowed is False
        assert admission.remaining == 0
        assert admission.requires_upgrade is True
        assert counter_used(services, "user_1") == 30

    def test_last_unit_is_admitted(self, services):
        """Free scan limit 30, used 29: admitted with nothing remaining."""
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        set_used("user_1", ResourceType.SCAN, 29)

        admission = services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        assert admission.allowed is True
        assert admission.remaining == 0
        assert counter_used(services, "user_1") == 30

    def test_premium_is_always_admitted(self, services):
        make_premium(services, "user_p")
        for _ in range(50):
            admission = services.ledger.check_and_consume("user_p", ResourceType.AI_QUESTION)
            assert admission.allowed
            assert admission.remaining == UNLIMITED
            assert admission.limit == UNLIMITED
        assert counter_used(services, "user_p", ResourceType.AI_QUESTION) == 50

    def test_zero_limit_rejects_immediately(self, services):
        services.store.create_for_user("user_1")
        admission = services.ledger.check_and_consume("user_1", ResourceType.EXPORT)
        assert not admission.allowed
        assert admission.requires_upgrade
        assert counter_used(services, "user_1", ResourceType.EXPORT) == 0

    def test_used_never_exceeds_limit(self, services):
        services.store.create_for_user("user_1")
        results = [services.ledger.check_and_consume("user_1", ResourceType.SCAN).allowed for _ in range(35)]
        assert results.count(True) == 30
        assert counter_used(services, "user_1") == 30

    def test_resources_are_independent(self, services):
        make_premium(services, "user_p")
        services.ledger.check_and_consume("user_p", ResourceType.SCAN)
        services.ledger.check_and_consume("user_p", ResourceType.EXPORT)
        assert counter_used(services, "user_p", ResourceType.SCAN) == 1
        assert counter_used(services, "user_p", ResourceType.EXPORT) == 1


class TestLazyReset:
    def test_daily_counter_resets_next_day(self, services, clock):
        make_premium(services, "user_p")
        services.ledger.check_and_consume("user_p", ResourceType.AI_QUESTION)
        services.ledger.check_and_consume("user_p", ResourceType.AI_QUESTION)

        clock.advance(days=1)
        admission = services.ledger.check_and_consume("user_p", ResourceType.AI_QUESTION)

        assert counter_used(services, "user_p", ResourceType.AI_QUESTION) == 1
        assert admission.reset_at == datetime(2026, 3, 17, tzinfo=timezone.utc)

    def test_reset_after_many_skipped_periods(self, services, clock):
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        set_used("user_1", ResourceType.SCAN, 30)

        clock.set(datetime(2026, 9, 10, 8, 0, tzinfo=timezone.utc))
        admission = services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        assert admission.allowed
        assert admission.remaining == 29
        assert admission.reset_at == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert counter_used(services, "user_1") == 1

    def test_reset_exactly_at_boundary(self, services, clock):
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        set_used("user_1", ResourceType.SCAN, 30)

        clock.set(datetime(2026, 4, 1, tzinfo=timezone.utc))
        assert services.ledger.check_and_consume("user_1", ResourceType.SCAN).allowed

    def test_concurrent_fill_is_reread(self, services):
        """A refused conditional update is re-evaluated rather than admitted."""
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        set_used("user_1", ResourceType.SCAN, 29)
        real_try_consume = services.store.try_consume

        def racing_try_consume(*args, **kwargs):
            # Another writer takes the last unit between our read and update
            set_used("user_1", ResourceType.SCAN, 30)
            return real_try_consume(*args, **kwargs)

        with patch.object(services.store, "try_consume", side_effect=racing_try_consume):
            admission = services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        assert admission.allowed is False
        assert counter_used(services, "user_1") == 30


class TestLease:
    def test_busy_lease_raises_quota_busy(self, services, redis_client):
        services.store.create_for_user("user_1")
        redis_client.set(lock_key("user_1", ResourceType.SCAN), "other-request", px=5000)

        with pytest.raises(QuotaBusyError):
            services.ledger.check_and_consume("user_1", ResourceType.SCAN)

    def test_lease_released_after_admission(self, services, redis_client):
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        assert redis_client.get(lock_key("user_1", ResourceType.SCAN)) is None

    def test_other_resource_not_blocked(self, services, redis_client):
        make_premium(services, "user_p")
        redis_client.set(lock_key("user_p", ResourceType.SCAN), "other-request", px=5000)
        assert services.ledger.check_and_consume("user_p", ResourceType.EXPORT).allowed

    def test_without_lock_service_limit_still_holds(self, services, clock):
        """Fail-open locking: the conditional update alone bounds usage."""
        ledger = QuotaLedger(
            services.store,
            NullLockService(),
            QuotaPolicy.from_settings(services.settings),
            services.usage,
            clock=clock,
        )
        services.store.create_for_user("user_1")
        allowed = sum(ledger.check_and_consume("user_1", ResourceType.SCAN).allowed for _ in range(40))
        assert allowed == 30


class TestUsageEvents:
    def test_admission_emits_usage_event(self, services, redis_client, clock):
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)
        services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        key = usage_key("user_1", ResourceType.SCAN, clock().date())
        assert redis_client.get(key) == "2"
        assert redis_client.ttl(key) > 0

    def test_rejection_emits_nothing(self, services, redis_client, clock):
        services.store.create_for_user("user_1")
        services.ledger.check_and_consume("user_1", ResourceType.EXPORT)
        assert redis_client.get(usage_key("user_1", ResourceType.EXPORT, clock().date())) is None


class TestGetStatus:
    def test_status_for_new_user(self, services):
        services.store.create_for_user("user_1")
        status = services.ledger.get_status("user_1")

        assert set(status) == set(ResourceType)
        assert status[ResourceType.SCAN].used == 0
        assert status[ResourceType.SCAN].remaining == 30
        assert status[ResourceType.AI_QUESTION].reset_at == datetime(2026, 3, 16, tzinfo=timezone.utc)

    def test_status_shows_stale_period_as_reset_without_writing(self, services, clock):
        services.store.create_for_user("user_1")
        for _ in range(3):
            services.ledger.check_and_consume("user_1", ResourceType.SCAN)

        clock.set(datetime(2026, 5, 2, tzinfo=timezone.utc))
        status = services.ledger.get_status("user_1")

        assert status[ResourceType.SCAN].used == 0
        assert status[ResourceType.SCAN].reset_at == datetime(2026, 6, 1, tzinfo=timezone.utc)
        # Read-only: the stored counter is untouched until the next consume
        assert counter_used(services, "user_1") == 3

    def test_status_premium(self, services):
        make_premium(services, "user_p")
        services.ledger.check_and_consume("user_p", ResourceType.SCAN)
        status = services.ledger.get_status("user_p")
        assert status[ResourceType.SCAN].used == 1
        assert status[ResourceType.SCAN].limit == UNLIMITED
        assert status[ResourceType.SCAN].remaining == UNLIMITED

    def test_status_unknown_user(self, services):
        with pytest.raises(UserNotFoundError):
            services.ledger.get_status("ghost")
