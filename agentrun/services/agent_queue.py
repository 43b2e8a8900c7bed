from __future__ import annotations

import asyncio
import logging

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentrun.core.config import get_settings
from agentrun.core.errors import GateRejectedError, NotFoundError
from agentrun.domain.state import AccessRole, Actor
from agentrun.persistence.db import SessionLocal
from agentrun.persistence.repos import threads as threads_repo
from agentrun.services.orchestrator import RunOrchestrator
from agentrun.services.resilience import RetryPolicy


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()

AGENT_JOB_FUNCTION = "process_agent_message"


class AgentJobPayload(BaseModel):
    # Schema handed from the API to the worker; one job per inbound user message.
    thread_id: str
    tenant_id: str
    user_id: str
    role: AccessRole = AccessRole.TEAM
    text: str = Field(min_length=1)
    request_id: str

    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, tenant_id=self.tenant_id, role=self.role)


async def get_redis_pool():
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.agent_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def enqueue_agent_job(payload: AgentJobPayload) -> str:
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        AGENT_JOB_FUNCTION,
        payload.model_dump(mode="json"),
        _job_id=payload.request_id,
        _queue_name=settings.agent_queue_name,
    )
    # arq returns None for a duplicate job id; keep tracing with the same id.
    return job.job_id if job else payload.request_id


async def process_agent_job(
    payload: AgentJobPayload,
    *,
    orchestrator: RunOrchestrator,
    policy: RetryPolicy,
    job_id: str,
    attempt: int,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> str | None:
    """Run one attempt; returns the run id, or None when the job is dropped."""
    try:
        async with (session_factory or SessionLocal)() as session:
            thread = await threads_repo.get_thread(session, payload.thread_id, tenant_id=payload.tenant_id)
            run = await orchestrator.process_message(session, thread, payload.text, payload.actor())
            logger.info(
                "agent_job_completed job_id=%s run_id=%s attempt=%s cost_cents=%s",
                job_id,
                run.id,
                attempt,
                run.cost_cents,
            )
            return run.id
    except (GateRejectedError, NotFoundError) as exc:
        # Gate rejections are final: never handed to the retry schedule.
        logger.warning("agent_job_rejected job_id=%s code=%s", job_id, getattr(exc, "code", "unknown"))
        return None
    except Exception as exc:  # noqa: BLE001 - classified by the retry policy
        if policy.should_retry(exc, attempt):
            delay = policy.delay_for(attempt)
            logger.warning(
                "agent_job_retry job_id=%s attempt=%s defer_s=%s error=%s",
                job_id,
                attempt,
                delay,
                type(exc).__name__,
            )
            raise Retry(defer=delay) from exc
        logger.error(
            "agent_job_failed job_id=%s attempt=%s error=%s",
            job_id,
            attempt,
            type(exc).__name__,
        )
        return None
