"""
Distributed lock service.

Short-lived leases over Redis ``SET key token NX PX ttl``. If Redis is
unreachable ``acquire`` grants the lease anyway (fail-open): quota
operations stay available and the storage layer's conditional update keeps
``used <= limit``, at the cost of losing mutual exclusion.

Each lease carries its own token and release compares against it, so a
holder whose lease expired cannot free the key for the next holder.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError, WatchError

logger = logging.getLogger("ecoscore.locks")


# Token for leases granted without Redis; releasing it is a no-op
NULL_TOKEN = "-"


class LockService(Protocol):
    def try_lease(self, key: str, ttl_seconds: float) -> Optional[str]:
        ...

    def acquire(self, key: str, ttl_seconds: float) -> bool:
        ...

    def release(self, key: str, token: Optional[str] = None) -> None:
        ...


class NullLockService:
    """No cache configured: every lease is granted, nothing is excluded."""

    def try_lease(self, key: str, ttl_seconds: float) -> Optional[str]:
        return NULL_TOKEN

    def acquire(self, key: str, ttl_seconds: float) -> bool:
        return True

    def release(self, key: str, token: Optional[str] = None) -> None:
        return None


class RedisLockService:
    def __init__(self, client: Redis, *, token_factory: Callable[[], str] = lambda: uuid.uuid4().hex):
        self._client = client
        self._token_factory = token_factory
        # (key, thread id) -> token, for callers of acquire()/release(key)
        self._tokens: Dict[Tuple[str, int], str] = {}

    def try_lease(self, key: str, ttl_seconds: float) -> Optional[str]:
        """Take ``key`` and return the holder's token, or None if someone else holds it."""
        token = self._token_factory()
        try:
            granted = self._client.set(key, token, nx=True, px=max(1, int(ttl_seconds * 1000)))
        except RedisError:
            logger.warning("lock backend unavailable, failing open", extra={"lock_key": key}, exc_info=True)
            return NULL_TOKEN
        return token if granted else None

    def acquire(self, key: str, ttl_seconds: float) -> bool:
        token = self.try_lease(key, ttl_seconds)
        if token is None:
            return False
        if token != NULL_TOKEN:
            self._tokens[(key, threading.get_ident())] = token
        return True

    def release(self, key: str, token: Optional[str] = None) -> None:
        """Delete ``key`` only while it still holds ``token``."""
        if token is None:
            token = self._tokens.pop((key, threading.get_ident()), None)
        if not token or token == NULL_TOKEN:
            return
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(key)
                if pipe.get(key) == token:
                    pipe.multi()
                    pipe.delete(key)
                    pipe.execute()
                else:
                    # Expired and re-acquired by someone else
                    pipe.unwatch()
        except WatchError:
            logger.info("lock changed during release", extra={"lock_key": key})
        except RedisError:
            logger.warning("lock release failed; lease will expire", extra={"lock_key": key}, exc_info=True)


def acquire_within(
    locks: LockService,
    key: str,
    *,
    ttl_seconds: float,
    wait_seconds: float,
    poll_seconds: float = 0.025,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[str]:
    """Try to take ``key`` until ``wait_seconds`` elapse; the holder's token or None. Never waits indefinitely."""
    deadline = clock() + max(0.0, wait_seconds)
    while True:
        token = locks.try_lease(key, ttl_seconds)
        if token is not None:
            return token
        if clock() >= deadline:
            return None
        sleep(poll_seconds)


@contextmanager
def lease(
    locks: LockService,
    key: str,
    *,
    ttl_seconds: float,
    wait_seconds: float,
    poll_seconds: float = 0.025,
    on_busy: Optional[Callable[[], Exception]] = None,
) -> Iterator[str]:
    """Hold ``key`` for the body of the with-block; raise ``on_busy()`` if not acquired."""
    token = acquire_within(locks, key, ttl_seconds=ttl_seconds, wait_seconds=wait_seconds, poll_seconds=poll_seconds)
    if token is None:
        if on_busy is not None:
            raise on_busy()
        raise TimeoutError(f"lease {key} busy")
    try:
        yield token
    finally:
        locks.release(key, token)
