from __future__ import annotations

import pytest

from agentrun.core.errors import (
    InvalidRunTransitionError,
    ProviderAuthError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
    RunAlreadyFinalizedError,
)
from agentrun.domain.state import Audience, RunStatus, can_transition, ensure_transition
from agentrun.persistence.repos import runs as runs_repo
from agentrun.persistence.repos import threads as threads_repo
from agentrun.services.resilience import RetryPolicy, is_retryable


def test_transition_table() -> None:
    assert can_transition(RunStatus.QUEUED, RunStatus.RUNNING)
    assert can_transition(RunStatus.QUEUED, RunStatus.CANCELLED)
    assert can_transition(RunStatus.RUNNING, RunStatus.COMPLETED)
    assert not can_transition(RunStatus.RUNNING, RunStatus.QUEUED)
    for terminal in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
        assert terminal.is_terminal
        for target in RunStatus:
            assert not can_transition(terminal, target)
    with pytest.raises(InvalidRunTransitionError):
        ensure_transition(RunStatus.COMPLETED, RunStatus.FAILED)


def test_retry_classification() -> None:
    assert is_retryable(ProviderError("502 from upstream")) is True
    assert is_retryable(ProviderTimeoutError("slow")) is True
    assert is_retryable(ProviderUnavailableError("circuit open")) is True
    assert is_retryable(TimeoutError()) is True
    assert is_retryable(ConnectionResetError()) is True
    assert is_retryable(RateLimitedError("slow down")) is False
    assert is_retryable(ProviderAuthError("bad key")) is False
    assert is_retryable(ValueError("bug")) is False


def test_retry_policy_schedule() -> None:
    policy = RetryPolicy()
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [10, 30, 60, 60]
    assert policy.should_retry(ProviderError("x"), 1) is True
    assert policy.should_retry(ProviderError("x"), 2) is True
    assert policy.should_retry(ProviderError("x"), 3) is False
    assert policy.should_retry(RateLimitedError("x"), 1) is False
    assert RetryPolicy(backoff_seconds=()).delay_for(2) == 0


async def _run(session):
    thread = await threads_repo.create_thread(
        session, tenant_id="t1", project_id="p1", audience=Audience.PARTICIPANT, created_by="u1"
    )
    run = await runs_repo.create_run(
        session,
        thread_id=thread.id,
        tenant_id="t1",
        user_id="u1",
        provider="fake",
        model="gpt-4o-mini",
    )
    await session.commit()
    return thread, run


@pytest.mark.asyncio
async def test_runs_cannot_be_created_terminal(session) -> None:
    thread = await threads_repo.create_thread(
        session, tenant_id="t1", project_id="p1", audience=Audience.PARTICIPANT, created_by="u1"
    )
    with pytest.raises(InvalidRunTransitionError):
        await runs_repo.create_run(
            session,
            thread_id=thread.id,
            tenant_id="t1",
            user_id="u1",
            provider="fake",
            model="m",
            status=RunStatus.COMPLETED,
        )


@pytest.mark.asyncio
async def test_usage_is_write_once(session) -> None:
    _, run = await _run(session)
    await runs_repo.finalize_usage(session, run, tokens_in=12, tokens_out=4, cost_cents=1)
    await session.commit()
    assert (run.tokens_in, run.tokens_out, run.cost_cents) == (12, 4, 1)

    with pytest.raises(RunAlreadyFinalizedError):
        await runs_repo.finalize_usage(session, run, tokens_in=99, tokens_out=99, cost_cents=99)
    await session.rollback()
    stored = await runs_repo.get_run(session, run.id)
    await session.refresh(stored)
    assert stored.cost_cents == 1


@pytest.mark.asyncio
async def test_transition_sets_finish_time_once(session) -> None:
    _, run = await _run(session)
    await runs_repo.transition(session, run, RunStatus.COMPLETED)
    await session.commit()
    assert run.status == RunStatus.COMPLETED
    assert run.finished_at is not None

    with pytest.raises(InvalidRunTransitionError):
        await runs_repo.transition(session, run, RunStatus.FAILED, error="late failure")


@pytest.mark.asyncio
async def test_stale_instance_cannot_overwrite_external_cancel(session) -> None:
    thread, run = await _run(session)
    cancelled = await runs_repo.cancel_active_runs(session, thread.id, reason="cancelled by user")
    await session.commit()
    assert cancelled == [run.id]
    # The in-memory instance still believes the run is running.
    assert run.status == RunStatus.RUNNING

    with pytest.raises(InvalidRunTransitionError):
        await runs_repo.transition(session, run, RunStatus.COMPLETED)
    assert run.status == RunStatus.CANCELLED
    assert run.error == "cancelled by user"
    assert await runs_repo.cancel_active_runs(session, thread.id, reason="again") == []
