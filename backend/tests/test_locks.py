"""
Tests for the distributed lock service (Redis leases, fail-open).
"""
import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.core.locks import NULL_TOKEN, NullLockService, RedisLockService, acquire_within, lease


class TestRedisLockService:
    def test_acquire_is_exclusive(self, redis_client):
        first = RedisLockService(redis_client)
        second = RedisLockService(redis_client)
        assert first.acquire("quota_lock:u:scan", 5)
        assert not second.acquire("quota_lock:u:scan", 5)

    def test_release_frees_the_key(self, redis_client):
        locks = RedisLockService(redis_client)
        assert locks.acquire("k", 5)
        locks.release("k")
        assert redis_client.get("k") is None
        assert locks.acquire("k", 5)

    def test_lease_has_ttl(self, redis_client):
        locks = RedisLockService(redis_client)
        locks.acquire("k", 5)
        assert 0 < redis_client.pttl("k") <= 5000

    def test_release_does_not_delete_foreign_lease(self, redis_client):
        """After our lease expired and someone else took it, release is a no-op."""
        ours = RedisLockService(redis_client, token_factory=lambda: "ours")
        assert ours.acquire("k", 5)
        redis_client.set("k", "theirs")
        ours.release("k")
        assert redis_client.get("k") == "theirs"

    def test_stale_holder_cannot_release_successor_lease(self, redis_client):
        """A lease that outlived its TTL must not free the key for its successor."""
        tokens = iter(["first", "second"])
        locks = RedisLockService(redis_client, token_factory=lambda: next(tokens))

        first = locks.try_lease("k", 5)
        redis_client.delete("k")  # TTL elapsed
        second = locks.try_lease("k", 5)

        locks.release("k", first)
        assert redis_client.get("k") == second

        locks.release("k", second)
        assert redis_client.get("k") is None

    def test_acquire_release_tracks_holder_per_thread(self, redis_client):
        locks = RedisLockService(redis_client)
        assert locks.acquire("k", 5)
        redis_client.delete("k")  # TTL elapsed

        successor = threading.Thread(target=locks.acquire, args=("k", 5))
        successor.start()
        successor.join()

        locks.release("k")
        assert redis_client.exists("k") == 1

    def test_release_without_acquire_is_noop(self, redis_client):
        RedisLockService(redis_client).release("never-held")

    def test_acquire_fails_open_when_redis_down(self):
        client = MagicMock()
        client.set.side_effect = RedisConnectionError("down")
        assert RedisLockService(client).acquire("k", 5) is True

    def test_release_swallows_redis_errors(self):
        client = MagicMock()
        client.set.return_value = True
        client.pipeline.side_effect = RedisConnectionError("down")
        locks = RedisLockService(client)
        assert locks.acquire("k", 5)
        locks.release("k")


class TestAcquireWithin:
    def test_waits_are_bounded(self, redis_client):
        redis_client.set("k", "someone", px=5000)
        sleeps = []
        ticks = iter([0.0, 0.1, 0.2, 0.3])

        acquired = acquire_within(
            RedisLockService(redis_client),
            "k",
            ttl_seconds=5,
            wait_seconds=0.25,
            poll_seconds=0.1,
            sleep=sleeps.append,
            clock=lambda: next(ticks),
        )
        assert acquired is None
        assert sleeps == [0.1, 0.1]

    def test_null_lock_always_grants(self):
        assert acquire_within(NullLockService(), "k", ttl_seconds=1, wait_seconds=0)


class TestLease:
    def test_lease_releases_on_exit(self, redis_client):
        locks = RedisLockService(redis_client)
        with lease(locks, "k", ttl_seconds=5, wait_seconds=0):
            assert redis_client.get("k") is not None
        assert redis_client.get("k") is None

    def test_lease_releases_on_error(self, redis_client):
        locks = RedisLockService(redis_client)
        with pytest.raises(RuntimeError):
            with lease(locks, "k", ttl_seconds=5, wait_seconds=0):
                raise RuntimeError("boom")
        assert redis_client.get("k") is None

    def test_busy_lease_raises_custom_error(self, redis_client):
        redis_client.set("k", "someone", px=5000)
        with pytest.raises(LookupError):
            with lease(
                RedisLockService(redis_client), "k",
                ttl_seconds=5, wait_seconds=0, on_busy=lambda: LookupError("busy"),
            ):
                pass

    def test_lease_yields_holder_token(self, redis_client):
        locks = RedisLockService(redis_client)
        with lease(locks, "k", ttl_seconds=5, wait_seconds=0) as token:
            assert redis_client.get("k") == token

    def test_expired_lease_leaves_successor_alone(self, redis_client):
        locks = RedisLockService(redis_client)
        with lease(locks, "k", ttl_seconds=5, wait_seconds=0):
            redis_client.delete("k")  # TTL elapsed
            successor = locks.try_lease("k", 5)
        assert redis_client.get("k") == successor

    def test_fail_open_lease_releases_quietly(self):
        client = MagicMock()
        client.set.side_effect = RedisConnectionError("down")
        locks = RedisLockService(client)
        with lease(locks, "k", ttl_seconds=5, wait_seconds=0) as token:
            assert token == NULL_TOKEN
        client.pipeline.assert_not_called()
