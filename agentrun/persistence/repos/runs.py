from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from agentrun.core.errors import InvalidRunTransitionError, NotFoundError, RunAlreadyFinalizedError
from agentrun.domain.models import Run
from agentrun.domain.state import RunStatus, can_transition, ensure_transition


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _sources_for(target: RunStatus) -> list[RunStatus]:
    return [status for status in RunStatus if can_transition(status, target)]


async def create_run(
    session: AsyncSession,
    *,
    thread_id: str,
    tenant_id: str,
    user_id: str,
    provider: str,
    model: str,
    status: RunStatus = RunStatus.RUNNING,
) -> Run:
    # Runs start in queued or running only; terminal rows are never created directly.
    if status.is_terminal:
        raise InvalidRunTransitionError(f"run cannot be created as {status.value}")
    run = Run(
        thread_id=thread_id,
        tenant_id=tenant_id,
        user_id=user_id,
        provider=provider,
        model=model,
        status=status,
        started_at=_utc_now(),
    )
    session.add(run)
    await session.flush()
    return run


async def get_run(session: AsyncSession, run_id: str) -> Run:
    result = await session.execute(select(Run).where(Run.id == run_id))
    run = result.scalar_one_or_none()
    if run is None:
        raise NotFoundError(f"run {run_id} not found")
    return run


async def list_runs(session: AsyncSession, thread_id: str) -> list[Run]:
    result = await session.execute(
        select(Run).where(Run.thread_id == thread_id).order_by(Run.started_at.asc())
    )
    return list(result.scalars().all())


async def transition(
    session: AsyncSession,
    run: Run,
    target: RunStatus,
    *,
    error: str | None = None,
) -> Run:
    # Conditional UPDATE so an external cancel cannot be overwritten by a stale in-memory status.
    ensure_transition(run.status, target)
    values: dict[str, Any] = {"status": target}
    if target.is_terminal:
        values["finished_at"] = _utc_now()
    if error is not None:
        values["error"] = error
    result = await session.execute(
        update(Run)
        .where(Run.id == run.id, Run.status.in_(_sources_for(target)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.refresh(run)
        raise InvalidRunTransitionError(
            f"run {run.id} cannot move from {run.status.value} to {target.value}"
        )
    for key, value in values.items():
        # Mirror the written values without marking the instance dirty.
        set_committed_value(run, key, value)
    return run


async def finalize_usage(
    session: AsyncSession,
    run: Run,
    *,
    tokens_in: int,
    tokens_out: int,
    cost_cents: int,
) -> Run:
    # Usage and cost are write-once: the guard is the NULL cost column.
    result = await session.execute(
        update(Run)
        .where(Run.id == run.id, Run.cost_cents.is_(None))
        .values(tokens_in=tokens_in, tokens_out=tokens_out, cost_cents=cost_cents)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise RunAlreadyFinalizedError(f"run {run.id} usage already recorded")
    for key, value in (("tokens_in", tokens_in), ("tokens_out", tokens_out), ("cost_cents", cost_cents)):
        set_committed_value(run, key, value)
    return run


async def set_context_snapshot(session: AsyncSession, run: Run, snapshot: dict[str, Any]) -> Run:
    run.context_json = snapshot
    await session.flush()
    return run


async def cancel_active_runs(session: AsyncSession, thread_id: str, *, reason: str) -> list[str]:
    # Cancellation is an external state change; in-flight units notice at finalization.
    result = await session.execute(
        select(Run.id).where(
            Run.thread_id == thread_id,
            Run.status.in_([RunStatus.QUEUED, RunStatus.RUNNING]),
        )
    )
    run_ids = [row[0] for row in result.all()]
    if not run_ids:
        return []
    await session.execute(
        update(Run)
        .where(Run.id.in_(run_ids), Run.status.in_([RunStatus.QUEUED, RunStatus.RUNNING]))
        .values(status=RunStatus.CANCELLED, finished_at=_utc_now(), error=reason)
        .execution_options(synchronize_session=False)
    )
    return run_ids


async def sum_user_cost(session: AsyncSession, user_id: str, *, start: datetime, end: datetime) -> int:
    result = await session.execute(
        select(func.coalesce(func.sum(Run.cost_cents), 0)).where(
            Run.user_id == user_id,
            Run.started_at >= start,
            Run.started_at < end,
        )
    )
    return int(result.scalar_one() or 0)


async def sum_tenant_cost(session: AsyncSession, tenant_id: str, *, start: datetime, end: datetime) -> int:
    result = await session.execute(
        select(func.coalesce(func.sum(Run.cost_cents), 0)).where(
            Run.tenant_id == tenant_id,
            Run.started_at >= start,
            Run.started_at < end,
        )
    )
    return int(result.scalar_one() or 0)
