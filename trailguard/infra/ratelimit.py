from __future__ import annotations

import logging
import os
import time

from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from trailguard.infra import redis_state

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "1").strip().lower() in {"1", "true", "yes", "on"}
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "200"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "1"))
EXEMPT_PATHS = {"/healthz", "/readyz"}


class FixedWindowRateLimiter:
    """Per-caller request budget stored in Redis.

    Each caller gets one counter per window. Counters expire with their
    window, so the key space only ever holds callers seen in the current
    and previous window.
    """

    def __init__(self, *, limit: int, window_seconds: int) -> None:
        self.limit = limit
        self.window_seconds = max(window_seconds, 1)

    def _key(self, caller: str, now: float) -> str:
        window = int(now // self.window_seconds)
        return f"ratelimit:{caller}:{window}"

    async def allow(self, caller: str, now: float | None = None) -> bool:
        redis = redis_state.get_async_redis()
        key = self._key(caller, time.time() if now is None else now)
        # counter and TTL land in one MULTI so no key is left without an expiry
        async with redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, self.window_seconds * 2)
            count, _ = await pipe.execute()
        return int(count) <= self.limit


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, limiter: FixedWindowRateLimiter | None = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self._limiter = limiter or FixedWindowRateLimiter(
            limit=RATE_LIMIT_REQUESTS,
            window_seconds=RATE_LIMIT_WINDOW_SECONDS,
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not RATE_LIMIT_ENABLED or request.url.path in EXEMPT_PATHS:
            return await call_next(request)
        caller = request.client.host if request.client is not None else "unknown"
        try:
            allowed = await self._limiter.allow(caller)
        except RedisError:
            # Limiter outage fails open.
            logger.warning("rate limiter unavailable, admitting %s", caller)
            allowed = True
        if not allowed:
            logger.info("rate limit exceeded for %s", caller)
            return JSONResponse(status_code=429, content={"detail": "rate limit exceeded"})
        return await call_next(request)
