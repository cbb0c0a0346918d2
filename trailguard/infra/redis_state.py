from __future__ import annotations

import logging
import os
from functools import lru_cache

from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "1.0"))


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True, socket_timeout=REDIS_SOCKET_TIMEOUT)


@lru_cache(maxsize=1)
def get_async_redis() -> AsyncRedis:
    # holds rate-limit counters; used from middleware running on the event loop
    return AsyncRedis.from_url(REDIS_URL, decode_responses=True, socket_timeout=REDIS_SOCKET_TIMEOUT)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except RedisError:
        logger.warning("redis readiness probe failed", exc_info=True)
        return False
