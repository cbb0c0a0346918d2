from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from trailguard.domain.models import User
from trailguard.domain.permissions import Actor, Role
from trailguard.infra import audit, auth, db, events, ratelimit, redis_state


class FakeRedis:
    def ping(self) -> bool:
        return True


class FakePipeline:
    def __init__(self, redis: FakeAsyncRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[str, str, int]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._commands.clear()

    def incr(self, key: str) -> FakePipeline:
        self._commands.append(("incr", key, 0))
        return self

    def expire(self, key: str, seconds: int) -> FakePipeline:
        self._commands.append(("expire", key, seconds))
        return self

    async def execute(self) -> list[int | bool]:
        results: list[int | bool] = []
        for command, key, seconds in self._commands:
            if command == "incr":
                self._redis.counters[key] = self._redis.counters.get(key, 0) + 1
                results.append(self._redis.counters[key])
            else:
                self._redis.expirations[key] = seconds
                results.append(True)
        self._commands.clear()
        return results


class FakeAsyncRedis:
    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.expirations: dict[str, int] = {}
        self.transactions: list[bool] = []

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        self.transactions.append(transaction)
        return FakePipeline(self)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def fake_async_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis()


@pytest.fixture()
def test_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    fake_redis: FakeRedis,
    fake_async_redis: FakeAsyncRedis,
) -> Engine:
    db_path = tmp_path / "trailguard_test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)

    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(audit, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake_redis)
    monkeypatch.setattr(redis_state, "get_async_redis", lambda: fake_async_redis)
    monkeypatch.setattr(auth, "PASSWORD_HASH_ITERATIONS", 1000)
    return engine


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 6, 1, 9, 0, tzinfo=UTC))


@pytest.fixture()
def make_user(test_engine: Engine) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(role: Role = Role.GUIDE, *, is_active: bool = True, password: str = "secret-pass") -> User:
        counter["n"] += 1
        user = User(
            email=f"{role}-{counter['n']}@example.com",
            password_hash=auth.hash_password(password),
            full_name=f"{role} {counter['n']}",
            role=role,
            is_active=is_active,
        )
        with Session(test_engine, expire_on_commit=False) as session:
            session.add(user)
            session.commit()
            session.refresh(user)
        return user

    return _make


@pytest.fixture()
def admin(make_user: Callable[..., User]) -> Actor:
    user = make_user(Role.ADMIN)
    return Actor(user_id=user.id, role=Role.ADMIN)


@pytest.fixture()
def api_client(test_engine: Engine, monkeypatch: pytest.MonkeyPatch) -> Generator[TestClient, None, None]:
    from trailguard import main as app_main

    monkeypatch.setattr(ratelimit, "RATE_LIMIT_ENABLED", False)
    client = TestClient(app_main.app)
    yield client
    client.close()
