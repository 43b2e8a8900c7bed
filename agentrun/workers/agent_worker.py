from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from agentrun.core.config import get_settings
from agentrun.core.logging import configure_logging
from agentrun.persistence.db import SessionLocal
from agentrun.services.agent_queue import AgentJobPayload, process_agent_job
from agentrun.services.orchestrator import get_orchestrator
from agentrun.services.resilience import default_retry_policy
from agentrun.services.streaming import get_event_publisher
from agentrun.services.summaries import SummaryService


logger = logging.getLogger(__name__)


async def process_agent_message(ctx, payload: dict) -> str | None:
    # Parse and validate payloads in the worker to enforce the job schema.
    job_payload = AgentJobPayload.model_validate(payload)
    return await process_agent_job(
        job_payload,
        orchestrator=ctx["orchestrator"],
        policy=ctx["retry_policy"],
        job_id=ctx.get("job_id") or job_payload.request_id,
        attempt=ctx.get("job_try", 1),
    )


async def _summary_service(ctx) -> SummaryService:
    return SummaryService(ctx["orchestrator"], await get_event_publisher())


async def generate_daily_summaries(ctx) -> int:
    if not get_settings().summaries_enabled:
        return 0
    service = await _summary_service(ctx)
    async with SessionLocal() as session:
        return len(await service.generate_daily(session))


async def generate_weekly_summaries(ctx) -> int:
    if not get_settings().summaries_enabled:
        return 0
    service = await _summary_service(ctx)
    async with SessionLocal() as session:
        return len(await service.generate_weekly(session))


async def _startup(ctx) -> None:
    # Build collaborators once per worker; provider config errors fail the boot.
    configure_logging()
    ctx["orchestrator"] = await get_orchestrator()
    ctx["retry_policy"] = default_retry_policy()
    logger.info("agent_worker_started queue=%s", get_settings().agent_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("agent_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.agent_queue_name
    max_tries = settings.agent_max_attempts
    job_timeout = settings.agent_job_timeout_s
    functions = [process_agent_message]
    # Daily digests at 01:00 UTC; weekly rollups on Sundays (weekday 6) at 02:00 UTC.
    cron_jobs = [
        cron(
            generate_daily_summaries,
            hour=1,
            minute=0,
            timeout=settings.summary_job_timeout_s,
            max_tries=2,
        ),
        cron(
            generate_weekly_summaries,
            weekday=6,
            hour=2,
            minute=0,
            timeout=settings.summary_job_timeout_s * 2,
            max_tries=3,
        ),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
