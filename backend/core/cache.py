"""
Shared key-value cache connection.

Quota leases and usage counters live in Redis. When REDIS_URL is unset the
callers fall back to their degraded modes, so no client is created.
"""

import logging
from typing import Optional

from redis import Redis

from backend.core.config import Settings, settings

logger = logging.getLogger("ecoscore.cache")


def get_redis_conn(cfg: Optional[Settings] = None) -> Optional[Redis]:
    """Build a Redis client from settings, or None when caching is not configured.

    from_url does not connect; an unreachable server surfaces as RedisError on
    first use, which every caller treats as a degraded mode.
    """
    cfg = cfg or settings
    if not cfg.REDIS_URL:
        logger.warning("REDIS_URL not configured; quota leases and usage stats disabled")
        return None
    return Redis.from_url(
        cfg.REDIS_URL,
        decode_responses=True,
        socket_timeout=cfg.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=cfg.REDIS_SOCKET_TIMEOUT_SECONDS,
    )
