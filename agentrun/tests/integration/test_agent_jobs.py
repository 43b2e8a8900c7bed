from __future__ import annotations

import pytest
from arq import Retry

from agentrun.core.config import Settings
from agentrun.core.errors import ProviderAuthError, ProviderError
from agentrun.domain.state import Audience, RunStatus
from agentrun.persistence.db import SessionLocal
from agentrun.persistence.repos import runs as runs_repo
from agentrun.providers.llm.fake import FakeLLMProvider
from agentrun.services.agent_queue import AgentJobPayload, process_agent_job
from agentrun.services.resilience import RetryPolicy
from agentrun.workers import agent_worker


def _payload(thread_id: str, **overrides) -> AgentJobPayload:
    data = {
        "thread_id": thread_id,
        "tenant_id": "t1",
        "user_id": "u1",
        "text": "Hello",
        "request_id": "req-1",
    }
    data.update(overrides)
    return AgentJobPayload(**data)


async def _thread_id(orchestrator, session, actor) -> str:
    thread = await orchestrator.create_thread(session, actor=actor, project_id="p1", audience=Audience.PARTICIPANT)
    return thread.id


@pytest.mark.asyncio
async def test_job_runs_to_completion(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("done"))
    thread_id = await _thread_id(orchestrator, session, actor)

    run_id = await process_agent_job(
        _payload(thread_id),
        orchestrator=orchestrator,
        policy=RetryPolicy(),
        job_id="job-1",
        attempt=1,
        session_factory=SessionLocal,
    )

    run = await runs_repo.get_run(session, run_id)
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_transient_failure_is_deferred_by_policy(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("x", fail_with=ProviderError("502")))
    thread_id = await _thread_id(orchestrator, session, actor)

    with pytest.raises(Retry):
        await process_agent_job(
            _payload(thread_id),
            orchestrator=orchestrator,
            policy=RetryPolicy(max_attempts=3, backoff_seconds=(10, 30, 60)),
            job_id="job-2",
            attempt=1,
            session_factory=SessionLocal,
        )

    # The failed attempt still leaves a terminal run behind.
    [run] = await runs_repo.list_runs(session, thread_id)
    assert run.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_last_attempt_gives_up(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("x", fail_with=ProviderError("502")))
    thread_id = await _thread_id(orchestrator, session, actor)
    result = await process_agent_job(
        _payload(thread_id),
        orchestrator=orchestrator,
        policy=RetryPolicy(max_attempts=3),
        job_id="job-3",
        attempt=3,
        session_factory=SessionLocal,
    )
    assert result is None


@pytest.mark.asyncio
async def test_non_retryable_errors_are_not_deferred(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("x", fail_with=ProviderAuthError("bad key")))
    thread_id = await _thread_id(orchestrator, session, actor)
    result = await process_agent_job(
        _payload(thread_id),
        orchestrator=orchestrator,
        policy=RetryPolicy(),
        job_id="job-4",
        attempt=1,
        session_factory=SessionLocal,
    )
    assert result is None


@pytest.mark.asyncio
async def test_gate_rejection_is_dropped_without_retry(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("ok"), settings=Settings(rl_per_user_minute=0))
    thread_id = await _thread_id(orchestrator, session, actor)
    result = await process_agent_job(
        _payload(thread_id),
        orchestrator=orchestrator,
        policy=RetryPolicy(),
        job_id="job-5",
        attempt=1,
        session_factory=SessionLocal,
    )
    assert result is None
    assert await runs_repo.list_runs(session, thread_id) == []


@pytest.mark.asyncio
async def test_threads_are_scoped_to_the_job_tenant(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("ok"))
    thread_id = await _thread_id(orchestrator, session, actor)
    result = await process_agent_job(
        _payload(thread_id, tenant_id="t2"),
        orchestrator=orchestrator,
        policy=RetryPolicy(),
        job_id="job-6",
        attempt=1,
        session_factory=SessionLocal,
    )
    assert result is None


@pytest.mark.asyncio
async def test_worker_entrypoint_uses_context_collaborators(session, actor, make_orchestrator) -> None:
    orchestrator = make_orchestrator(FakeLLMProvider("ok"))
    thread_id = await _thread_id(orchestrator, session, actor)
    ctx = {"orchestrator": orchestrator, "retry_policy": RetryPolicy(), "job_id": "job-7", "job_try": 1}

    run_id = await agent_worker.process_agent_message(ctx, _payload(thread_id).model_dump(mode="json"))

    assert (await runs_repo.get_run(session, run_id)).status == RunStatus.COMPLETED
    assert agent_worker.WorkerSettings.functions == [agent_worker.process_agent_message]
