from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.domain.models import Message, Run, Thread
from agentrun.domain.state import MessageRole, RunStatus


@dataclass(frozen=True)
class ProjectActivity:
    tenant_id: str
    project_id: str
    project_name: str
    tenant_name: str
    messages_sent: int = 0
    active_users: int = 0
    runs: int = 0
    runs_completed: int = 0


@dataclass(frozen=True)
class UsageLine:
    name: str
    runs: int
    tokens: int
    cost_cents: int


@dataclass(frozen=True)
class TenantUsage:
    tenant_id: str
    tenant_name: str
    total_runs: int
    total_tokens: int
    total_cost_cents: int
    projects: list[UsageLine] = field(default_factory=list)
    providers: list[UsageLine] = field(default_factory=list)


async def project_activity(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    exclude_titles: Collection[str] = (),
) -> list[ProjectActivity]:
    """Per-project user traffic and runs in ``[start, end)``, busiest first."""
    scope = (Thread.tenant_id, Thread.project_id)
    message_rows = await session.execute(
        select(
            *scope,
            func.max(Thread.project_name),
            func.max(Thread.tenant_name),
            func.count(Message.id),
            func.count(distinct(Message.created_by)),
        )
        .join(Thread, Message.thread_id == Thread.id)
        .where(
            Message.role == MessageRole.USER,
            Message.created_at >= start,
            Message.created_at < end,
            Thread.title.notin_(list(exclude_titles)),
        )
        .group_by(*scope)
    )
    run_rows = await session.execute(
        select(
            *scope,
            func.count(Run.id),
            func.coalesce(func.sum(case((Run.status == RunStatus.COMPLETED, 1), else_=0)), 0),
        )
        .join(Thread, Run.thread_id == Thread.id)
        .where(
            Run.started_at >= start,
            Run.started_at < end,
            Thread.title.notin_(list(exclude_titles)),
        )
        .group_by(*scope)
    )
    runs = {(tenant_id, project_id): (total, completed) for tenant_id, project_id, total, completed in run_rows.all()}
    activity = [
        ProjectActivity(
            tenant_id=tenant_id,
            project_id=project_id,
            project_name=project_name or "",
            tenant_name=tenant_name or "",
            messages_sent=int(messages),
            active_users=int(users),
            runs=int(runs.get((tenant_id, project_id), (0, 0))[0]),
            runs_completed=int(runs.get((tenant_id, project_id), (0, 0))[1]),
        )
        for tenant_id, project_id, project_name, tenant_name, messages, users in message_rows.all()
    ]
    activity.sort(key=lambda item: (-item.messages_sent, item.tenant_id, item.project_id))
    return activity


async def tenant_usage(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    exclude_titles: Collection[str] = (),
) -> list[TenantUsage]:
    """Run volume, tokens and cost per tenant in ``[start, end)`` with project and provider breakdowns."""
    tokens = func.coalesce(Run.tokens_in, 0) + func.coalesce(Run.tokens_out, 0)
    rows = await session.execute(
        select(
            Thread.tenant_id,
            func.max(Thread.tenant_name),
            Thread.project_id,
            func.max(Thread.project_name),
            Run.provider,
            func.count(Run.id),
            func.coalesce(func.sum(tokens), 0),
            func.coalesce(func.sum(Run.cost_cents), 0),
        )
        .join(Thread, Run.thread_id == Thread.id)
        .where(
            Run.started_at >= start,
            Run.started_at < end,
            Thread.title.notin_(list(exclude_titles)),
        )
        .group_by(Thread.tenant_id, Thread.project_id, Run.provider)
    )

    names: dict[str, str] = {}
    projects: dict[str, dict[str, list[int]]] = {}
    providers: dict[str, dict[str, list[int]]] = {}
    for tenant_id, tenant_name, project_id, project_name, provider, count, token_sum, cost in rows.all():
        names[tenant_id] = names.get(tenant_id) or tenant_name or ""
        for bucket, key in ((projects, project_name or project_id), (providers, provider)):
            totals = bucket.setdefault(tenant_id, {}).setdefault(key, [0, 0, 0])
            totals[0] += int(count)
            totals[1] += int(token_sum)
            totals[2] += int(cost)

    def _lines(bucket: dict[str, list[int]]) -> list[UsageLine]:
        lines = [UsageLine(name, *totals) for name, totals in bucket.items()]
        return sorted(lines, key=lambda line: (-line.runs, line.name))

    usage = []
    for tenant_id in sorted(names):
        project_lines = _lines(projects[tenant_id])
        usage.append(
            TenantUsage(
                tenant_id=tenant_id,
                tenant_name=names[tenant_id],
                total_runs=sum(line.runs for line in project_lines),
                total_tokens=sum(line.tokens for line in project_lines),
                total_cost_cents=sum(line.cost_cents for line in project_lines),
                projects=project_lines,
                providers=_lines(providers[tenant_id]),
            )
        )
    return usage
