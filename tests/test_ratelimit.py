from __future__ import annotations

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from trailguard.infra import ratelimit, redis_state
from trailguard.infra.ratelimit import FixedWindowRateLimiter, RateLimitMiddleware


def _limited_app(limiter: FixedWindowRateLimiter) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, limiter=limiter)

    @app.get("/ping")
    def ping() -> dict[str, str]:
        return {"status": "pong"}

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app


def test_fixed_window_counts_per_caller_and_window(fake_async_redis, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(redis_state, "get_async_redis", lambda: fake_async_redis)
    limiter = FixedWindowRateLimiter(limit=2, window_seconds=10)

    assert asyncio.run(limiter.allow("10.0.0.1", now=100.0))
    assert asyncio.run(limiter.allow("10.0.0.1", now=101.0))
    assert not asyncio.run(limiter.allow("10.0.0.1", now=102.0))
    assert asyncio.run(limiter.allow("10.0.0.2", now=102.0))
    # next window starts fresh
    assert asyncio.run(limiter.allow("10.0.0.1", now=110.0))
    assert fake_async_redis.counters["ratelimit:10.0.0.1:10"] == 3
    assert fake_async_redis.counters["ratelimit:10.0.0.1:11"] == 1


def test_every_counter_gets_ttl_in_same_transaction(fake_async_redis, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(redis_state, "get_async_redis", lambda: fake_async_redis)
    limiter = FixedWindowRateLimiter(limit=5, window_seconds=10)

    for now in (100.0, 101.0, 115.0):
        asyncio.run(limiter.allow("10.0.0.1", now=now))

    assert fake_async_redis.transactions == [True, True, True]
    assert set(fake_async_redis.expirations) == set(fake_async_redis.counters)
    assert set(fake_async_redis.expirations.values()) == {20}


def test_middleware_returns_429_over_budget(fake_async_redis, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(redis_state, "get_async_redis", lambda: fake_async_redis)
    monkeypatch.setattr(ratelimit, "RATE_LIMIT_ENABLED", True)
    client = TestClient(_limited_app(FixedWindowRateLimiter(limit=2, window_seconds=3600)))

    assert client.get("/ping").status_code == 200
    assert client.get("/ping").status_code == 200
    blocked = client.get("/ping")
    assert blocked.status_code == 429
    assert blocked.json() == {"detail": "rate limit exceeded"}
    assert client.get("/healthz").status_code == 200


def test_middleware_fails_open_when_redis_down(monkeypatch: pytest.MonkeyPatch) -> None:
    class BrokenPipeline:
        async def __aenter__(self) -> BrokenPipeline:
            return self

        async def __aexit__(self, *exc_info: object) -> None:
            return None

        def incr(self, key: str) -> BrokenPipeline:
            return self

        def expire(self, key: str, seconds: int) -> BrokenPipeline:
            return self

        async def execute(self) -> list[int]:
            raise RedisConnectionError("down")

    class BrokenRedis:
        def pipeline(self, transaction: bool = True) -> BrokenPipeline:
            return BrokenPipeline()

    monkeypatch.setattr(redis_state, "get_async_redis", lambda: BrokenRedis())
    monkeypatch.setattr(ratelimit, "RATE_LIMIT_ENABLED", True)
    client = TestClient(_limited_app(FixedWindowRateLimiter(limit=1, window_seconds=60)))

    assert client.get("/ping").status_code == 200
    assert client.get("/ping").status_code == 200
