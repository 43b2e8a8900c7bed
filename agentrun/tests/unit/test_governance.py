from __future__ import annotations

import asyncio
import logging

import pytest

from agentrun.core.config import ModelPrice, Settings
from agentrun.domain.state import Audience, BreakerState
from agentrun.persistence.repos import runs as runs_repo
from agentrun.persistence.repos import threads as threads_repo
from agentrun.services.ephemeral import RedisEphemeralStore
from agentrun.services.governance import (
    BudgetTracker,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    Governor,
    RateLimiter,
    calculate_cost,
    rate_limit_headers,
)


@pytest.mark.asyncio
async def test_rate_limit_blocks_at_ceiling_and_resets_on_expiry(store, clock) -> None:
    limiter = RateLimiter(store, settings=Settings(rl_per_user_minute=2, rl_per_user_day=10))
    assert await limiter.can_proceed("u1", "t1") is True
    await limiter.record_request("u1", "t1")
    assert await limiter.can_proceed("u1", "t1") is True
    await limiter.record_request("u1", "t1")
    assert await limiter.can_proceed("u1", "t1") is False
    # Other users keep their own windows.
    assert await limiter.can_proceed("u2", "t1") is True

    clock.advance(61)
    assert await limiter.can_proceed("u1", "t1") is True
    usage = {window.name: window for window in await limiter.snapshot("u1", "t1")}
    assert usage["user_minute"].count == 0
    assert usage["user_day"].count == 2
    assert usage["tenant_day"].count == 2


@pytest.mark.asyncio
async def test_checking_never_increments(store) -> None:
    limiter = RateLimiter(store, settings=Settings())
    for _ in range(10):
        await limiter.can_proceed("u1", "t1")
    assert all(window.count == 0 for window in await limiter.snapshot("u1", "t1"))


@pytest.mark.asyncio
async def test_tenant_ceiling_spans_users(store) -> None:
    limiter = RateLimiter(store, settings=Settings(rl_per_tenant_day=3))
    for user in ("a", "b", "c"):
        await limiter.record_request(user, "t1")
    assert await limiter.can_proceed("d", "t1") is False
    assert await limiter.can_proceed("d", "t2") is True


@pytest.mark.asyncio
async def test_rate_limit_headers_report_tightest_window(store) -> None:
    limiter = RateLimiter(store, settings=Settings(rl_per_user_minute=5))
    await limiter.record_request("u1", "t1")
    headers = rate_limit_headers(await limiter.snapshot("u1", "t1"))
    assert headers == {
        "X-RateLimit-Window": "user_minute",
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "4",
    }
    assert rate_limit_headers([]) == {}


async def _costed_run(session, thread_id: str, cents: int, *, user_id: str = "u1") -> None:
    run = await runs_repo.create_run(
        session,
        thread_id=thread_id,
        tenant_id="t1",
        user_id=user_id,
        provider="fake",
        model="gpt-4o-mini",
    )
    await runs_repo.finalize_usage(session, run, tokens_in=10, tokens_out=10, cost_cents=cents)
    await session.commit()


@pytest.mark.asyncio
async def test_budget_warning_cache_and_degradation(session, store) -> None:
    thread = await threads_repo.create_thread(
        session, tenant_id="t1", project_id="p1", audience=Audience.PARTICIPANT, created_by="u1"
    )
    settings = Settings(budget_user_daily_cents=100, budget_tenant_monthly_cents=1000)
    tracker = BudgetTracker(store, settings=settings)

    await _costed_run(session, thread.id, 85)
    status = await tracker.check_budget(session, "u1", "t1")
    assert status.user.usage == 85
    assert status.user.percentage == 85.0
    assert status.user.warning is True
    assert status.user.over_budget is False
    assert status.tenant.warning is False
    assert status.can_proceed is True
    assert status.should_degrade is False

    await _costed_run(session, thread.id, 20)
    # Cached sum is served until the cache is invalidated.
    assert (await tracker.check_budget(session, "u1", "t1")).user.usage == 85

    await tracker.invalidate_usage_cache("u1", "t1")
    status = await tracker.check_budget(session, "u1", "t1")
    assert status.user.usage == 105
    assert status.user.over_budget is True
    assert status.can_proceed is False
    assert status.should_degrade is True
    assert status.as_dict()["user"]["budget"] == 100

    strict = BudgetTracker(store, settings=Settings(budget_user_daily_cents=100, budget_graceful_degradation=False))
    status = await strict.check_budget(session, "u1", "t1")
    assert status.can_proceed is False
    assert status.should_degrade is False


@pytest.mark.asyncio
async def test_tenant_budget_sums_all_users(session, store) -> None:
    thread = await threads_repo.create_thread(
        session, tenant_id="t1", project_id="p1", audience=Audience.PARTICIPANT, created_by="u1"
    )
    await _costed_run(session, thread.id, 30, user_id="u1")
    await _costed_run(session, thread.id, 30, user_id="u2")
    tracker = BudgetTracker(store, settings=Settings(budget_tenant_monthly_cents=60))
    status = await tracker.check_budget(session, "u3", "t1")
    assert status.user.usage == 0
    assert status.tenant.usage == 60
    assert status.tenant.over_budget is True


def _breaker(store, clock) -> CircuitBreaker:
    config = CircuitBreakerConfig(failure_threshold=3, recovery_timeout_s=60, success_threshold=2, state_ttl_s=3600)
    return CircuitBreaker(store, config=config, time_source=clock)


@pytest.mark.asyncio
async def test_circuit_breaker_full_cycle(store, clock) -> None:
    breaker = _breaker(store, clock)
    assert await breaker.can_use_provider("openai") is True

    await breaker.record_failure("openai")
    await breaker.record_failure("openai")
    assert await breaker.can_use_provider("openai") is True
    opened = await breaker.record_failure("openai")
    assert opened.state == BreakerState.OPEN
    assert opened.opened_at == clock.now
    assert await breaker.can_use_provider("openai") is False

    clock.advance(59)
    assert await breaker.can_use_provider("openai") is False
    clock.advance(2)
    assert await breaker.can_use_provider("openai") is True
    assert (await breaker.state("openai")).state == BreakerState.HALF_OPEN

    await breaker.record_success("openai")
    assert (await breaker.state("openai")).state == BreakerState.HALF_OPEN
    closed = await breaker.record_success("openai")
    assert closed == CircuitBreakerState()
    assert await breaker.can_use_provider("openai") is True


@pytest.mark.asyncio
async def test_availability_check_does_not_promote_open_breaker(store, clock) -> None:
    breaker = _breaker(store, clock)
    for _ in range(3):
        await breaker.record_failure("openai")
    assert await breaker.is_available("openai") is False

    clock.advance(61)
    assert await breaker.is_available("openai") is True
    assert await breaker.is_available("openai") is True
    assert (await breaker.state("openai")).state == BreakerState.OPEN

    assert await breaker.can_use_provider("openai") is True
    assert (await breaker.state("openai")).state == BreakerState.HALF_OPEN


@pytest.mark.asyncio
async def test_half_open_failure_reopens(store, clock) -> None:
    breaker = _breaker(store, clock)
    for _ in range(3):
        await breaker.record_failure("anthropic")
    clock.advance(61)
    assert await breaker.can_use_provider("anthropic") is True

    reopened = await breaker.record_failure("anthropic")
    assert reopened.state == BreakerState.OPEN
    assert reopened.opened_at == clock.now
    assert await breaker.can_use_provider("anthropic") is False
    # Other providers are unaffected.
    assert await breaker.can_use_provider("openai") is True


@pytest.mark.asyncio
async def test_breaker_cycle_and_rate_window_on_redis(fake_redis, clock) -> None:
    store = RedisEphemeralStore(fake_redis, prefix="agentrun-test")
    breaker = _breaker(store, clock)
    for _ in range(3):
        await breaker.record_failure("openai")
    assert (await breaker.state("openai")).state == BreakerState.OPEN
    assert await breaker.can_use_provider("openai") is False

    clock.advance(61)
    assert await breaker.can_use_provider("openai") is True
    await breaker.record_success("openai")
    closed = await breaker.record_success("openai")
    assert closed == CircuitBreakerState()

    limiter = RateLimiter(store, settings=Settings(rl_per_user_minute=2))
    for _ in range(2):
        await limiter.record_request("u1", "t1")
    assert await limiter.can_proceed("u1", "t1") is False
    usage = {window.name: window for window in await limiter.snapshot("u1", "t1")}
    assert usage["user_minute"].count == 2


@pytest.mark.asyncio
async def test_concurrent_failures_are_all_counted_on_redis(fake_redis, clock) -> None:
    store = RedisEphemeralStore(fake_redis, prefix="agentrun-test")
    config = CircuitBreakerConfig(failure_threshold=10, recovery_timeout_s=60, success_threshold=2, state_ttl_s=3600)
    breaker = CircuitBreaker(store, config=config, time_source=clock)
    await asyncio.gather(*(breaker.record_failure("openai") for _ in range(5)))
    assert (await breaker.state("openai")).failure_count == 5


@pytest.mark.asyncio
async def test_success_while_closed_is_ignored(store, clock) -> None:
    breaker = _breaker(store, clock)
    await breaker.record_failure("openai")
    state = await breaker.record_success("openai")
    assert state.state == BreakerState.CLOSED
    assert state.failure_count == 1


def test_breaker_state_round_trips_through_json() -> None:
    state = CircuitBreakerState(BreakerState.HALF_OPEN, 4, 123.5, 1)
    assert CircuitBreakerState.loads(state.dumps()) == state
    assert CircuitBreakerState.loads(None) == CircuitBreakerState()


def test_calculate_cost_rounds_half_up() -> None:
    prices = {"m": ModelPrice(input=1.0, output=2.0)}
    # 5000 input tokens at $1/M = 0.5 cents, rounded up.
    assert calculate_cost("m", 5_000, 0, prices=prices) == 1
    assert calculate_cost("m", 4_999, 0, prices=prices) == 0
    # 1M in + 1M out = $3.
    assert calculate_cost("m", 1_000_000, 1_000_000, prices=prices) == 300


def test_calculate_cost_default_table() -> None:
    # gpt-4o: $5/M in, $15/M out -> 0.5 + 1.5 = 2 cents.
    assert calculate_cost("gpt-4o", 1_000, 1_000) == 2


def test_unknown_model_costs_nothing(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="agentrun.services.governance.pricing"):
        assert calculate_cost("mystery-model", 10_000, 10_000) == 0
    assert "cost_unknown_model" in caplog.text


@pytest.mark.asyncio
async def test_governor_keeps_mechanisms_independent(session, store, clock) -> None:
    governor = Governor(store, settings=Settings(rl_per_user_minute=1, cb_failure_threshold=1), time_source=clock)
    await governor.record_request("u1", "t1")
    assert await governor.can_proceed("u1", "t1") is False
    assert await governor.can_use_provider("fake") is True
    await governor.record_failure("fake")
    assert await governor.can_use_provider("fake") is False
    status = await governor.check_budget(session, "u1", "t1")
    assert status.can_proceed is True
    assert governor.calculate_cost("gpt-4o-mini", 0, 0) == 0
