from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

# Point the module-level engine at a throwaway database before agentrun imports it.
_DB_PATH = Path(tempfile.mkdtemp(prefix="agentrun-tests-")) / "agentrun.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("EPHEMERAL_BACKEND", "memory")
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("AGENT_EXECUTION_MODE", "inline")

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from agentrun.core.config import Settings, get_settings
from agentrun.domain.models import Base
from agentrun.domain.state import AccessRole, Actor
from agentrun.persistence.db import SessionLocal, engine
from agentrun.services.context_builder import ContextBuilder
from agentrun.services.ephemeral import InMemoryEphemeralStore, RedisEphemeralStore, reset_ephemeral_store
from agentrun.services.governance import Governor
from agentrun.services.orchestrator import RunOrchestrator
from agentrun.services.streaming import (
    InMemoryEventPublisher,
    RedisEventPublisher,
    StreamingCoordinator,
    reset_event_publisher,
)


class FakeClock:
    """Manually advanced clock for the monotonic and wall-clock time sources."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings and in-process singletons must not leak between tests.
    get_settings.cache_clear()
    reset_ephemeral_store()
    reset_event_publisher()
    yield
    get_settings.cache_clear()
    reset_ephemeral_store()
    reset_event_publisher()


@pytest.fixture
async def database() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
async def session(database):
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryEphemeralStore:
    return InMemoryEphemeralStore(time_source=clock)


@pytest.fixture
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
async def fake_redis():
    # One isolated fake server per test; the Lua extra backs the store's scripts.
    redis = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield redis
    await redis.aclose()


@pytest.fixture(params=["memory", "redis"])
def backend_store(request, fake_redis):
    # Real-time stores for semantics shared by both backends.
    if request.param == "memory":
        return InMemoryEphemeralStore()
    return RedisEphemeralStore(fake_redis, prefix="agentrun-test")


@pytest.fixture(params=["memory", "redis"])
def backend_publisher(request, fake_redis):
    if request.param == "memory":
        return InMemoryEventPublisher()
    return RedisEventPublisher(fake_redis)


@pytest.fixture
def actor() -> Actor:
    return Actor(user_id="u1", tenant_id="t1", role=AccessRole.TEAM)


@pytest.fixture
def make_orchestrator(store, publisher, clock):
    def _make(provider, *, settings: Settings | None = None, **builder_kwargs) -> RunOrchestrator:
        resolved = settings or Settings()
        return RunOrchestrator(
            governor=Governor(
                store,
                settings=resolved,
                time_source=clock,
                clock=lambda: datetime.now(timezone.utc),
            ),
            streaming=StreamingCoordinator(store, publisher, settings=resolved),
            context_builder=ContextBuilder(settings=resolved, **builder_kwargs),
            provider=provider,
            settings=resolved,
        )

    return _make
