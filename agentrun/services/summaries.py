"""Scheduled project digests.

Daily summaries are written by the model through the normal run lifecycle, so
they are gated, budgeted and accounted like any other run. Weekly rollups are
computed from run accounting and need no provider call.

Both kinds are stored in admin threads and announced with
``agent.summary.ready``. A summary thread remembers the last period it covered,
so a retried job does not write the same digest twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.core.config import Settings, get_settings
from agentrun.core.errors import AgentRunError
from agentrun.domain.events import EVENT_SUMMARY_READY, SummaryEvent, project_channel, tenant_channel
from agentrun.domain.models import Message, Thread
from agentrun.domain.state import AccessRole, Actor, Audience, MessageRole
from agentrun.persistence.repos import activity as activity_repo
from agentrun.persistence.repos import messages as messages_repo
from agentrun.persistence.repos import threads as threads_repo
from agentrun.persistence.repos.activity import ProjectActivity, TenantUsage
from agentrun.services.orchestrator import RunOrchestrator
from agentrun.services.streaming import EventPublisher


logger = logging.getLogger(__name__)

DAILY_THREAD_TITLE = "Daily Project Summaries"
WEEKLY_THREAD_TITLE = "Weekly Agent Summaries"
SUMMARY_THREAD_TITLES = (DAILY_THREAD_TITLE, WEEKLY_THREAD_TITLE)
# Weekly rollups cover a whole tenant, so their thread has no real project.
TENANT_SCOPE = "_tenant"

SummaryKind = Literal["daily", "weekly"]


@dataclass(frozen=True)
class SummaryResult:
    kind: SummaryKind
    tenant_id: str
    project_id: str | None
    thread_id: str
    message_id: int
    run_id: str | None = None


def day_window(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def previous_week(today: date) -> date:
    # Monday of the week before the one containing ``today``.
    return today - timedelta(days=today.weekday() + 7)


def build_daily_prompt(activity: ProjectActivity, day: date) -> str:
    name = activity.project_name or activity.project_id
    return (
        f"Generate a daily project summary for {name} for {day:%A}, {day.isoformat()}.\n\n"
        "**Context:**\n"
        f"- Messages sent: {activity.messages_sent}\n"
        f"- Team members active: {activity.active_users}\n"
        f"- Agent runs: {activity.runs} ({activity.runs_completed} completed)\n\n"
        "**Please provide:**\n"
        "1. **Key Accomplishments** - What was completed today\n"
        "2. **Team Activity** - Who contributed and how\n"
        "3. **Outstanding Items** - What needs attention\n"
        "4. **Tomorrow's Focus** - Suggested priorities\n\n"
        "Keep it concise but informative. This will be visible to all project participants.\n\n"
        "Format as clean markdown with proper headings and bullet points."
    )


def _dollars(cents: int) -> str:
    return f"${cents / 100:,.2f}"


def format_weekly_report(usage: TenantUsage, week_start: date) -> str:
    week_end = week_start + timedelta(days=6)
    average = round(usage.total_cost_cents / usage.total_runs) if usage.total_runs else 0
    lines = [
        f"**Weekly AI Agent Summary** ({week_start:%b} {week_start.day} - {week_end:%b} {week_end.day}, {week_end.year})",
        "",
        f"**Workspace:** {usage.tenant_name or usage.tenant_id}",
        "",
        "**Overall Activity:**",
        f"- {usage.total_runs} agent runs",
        f"- {usage.total_tokens} tokens processed",
        f"- {_dollars(usage.total_cost_cents)} total cost",
        f"- {_dollars(average)} average cost per run",
    ]
    if usage.projects:
        lines += ["", "**Top Projects:**"]
        lines += [
            f"- **{line.name}**: {line.runs} runs, {line.tokens} tokens, {_dollars(line.cost_cents)}"
            for line in usage.projects[:5]
        ]
    if usage.providers:
        lines += ["", "**AI Provider Usage:**"]
        lines += [f"- **{line.name}**: {line.runs} runs, {_dollars(line.cost_cents)}" for line in usage.providers]
    return "\n".join(lines)


class SummaryService:
    def __init__(
        self,
        orchestrator: RunOrchestrator,
        publisher: EventPublisher,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.publisher = publisher
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _actor(self, tenant_id: str) -> Actor:
        return Actor(user_id=self.settings.summary_user_id, tenant_id=tenant_id, role=AccessRole.ADMIN)

    async def _summary_thread(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        project_id: str,
        title: str,
        project_name: str = "",
        tenant_name: str = "",
    ) -> Thread:
        thread = await threads_repo.find_thread(
            session, tenant_id=tenant_id, project_id=project_id, audience=Audience.ADMIN, title=title
        )
        if thread is not None:
            return thread
        return await self.orchestrator.create_thread(
            session,
            actor=self._actor(tenant_id),
            project_id=project_id,
            audience=Audience.ADMIN,
            title=title,
            project_name=project_name,
            tenant_name=tenant_name,
            metadata={"summary_thread": True},
        )

    async def generate_daily(self, session: AsyncSession, day: date | None = None) -> list[SummaryResult]:
        day = day or self._clock().date() - timedelta(days=1)
        start, end = day_window(day)
        projects = await activity_repo.project_activity(
            session, start=start, end=end, exclude_titles=SUMMARY_THREAD_TITLES
        )
        logger.info("daily_summaries_started date=%s projects=%s", day.isoformat(), len(projects))
        results: list[SummaryResult] = []
        for activity in projects:
            result = await self._daily_for_project(session, activity, day)
            if result is not None:
                results.append(result)
        logger.info("daily_summaries_completed date=%s generated=%s", day.isoformat(), len(results))
        return results

    async def _daily_for_project(
        self, session: AsyncSession, activity: ProjectActivity, day: date
    ) -> SummaryResult | None:
        thread = await self._summary_thread(
            session,
            tenant_id=activity.tenant_id,
            project_id=activity.project_id,
            title=DAILY_THREAD_TITLE,
            project_name=activity.project_name,
            tenant_name=activity.tenant_name,
        )
        if (thread.metadata_json or {}).get("last_daily") == day.isoformat():
            logger.info("daily_summary_exists project_id=%s date=%s", activity.project_id, day.isoformat())
            return None
        try:
            run = await self.orchestrator.process_message(
                session, thread, build_daily_prompt(activity, day), self._actor(activity.tenant_id)
            )
        except AgentRunError as exc:
            # A rejected or failed project does not hold up the rest of the batch.
            logger.warning(
                "daily_summary_skipped project_id=%s date=%s code=%s",
                activity.project_id,
                day.isoformat(),
                exc.code,
            )
            return None

        reply = await messages_repo.get_run_reply(session, run.id)
        if reply is None:
            logger.warning("daily_summary_missing_reply project_id=%s run_id=%s", activity.project_id, run.id)
            return None
        metadata = {"summary_type": "daily", "summary_date": day.isoformat(), "project_id": activity.project_id}
        await messages_repo.update_metadata(session, reply, metadata)
        await threads_repo.update_metadata(session, thread, {"last_daily": day.isoformat()})
        await session.commit()
        logger.info("daily_summary_generated project_id=%s run_id=%s", activity.project_id, run.id)

        await self._announce(project_channel(activity.project_id), activity.project_id, "daily", reply)
        return SummaryResult(
            kind="daily",
            tenant_id=activity.tenant_id,
            project_id=activity.project_id,
            thread_id=thread.id,
            message_id=reply.id,
            run_id=run.id,
        )

    async def generate_weekly(self, session: AsyncSession, week_start: date | None = None) -> list[SummaryResult]:
        week_start = week_start or previous_week(self._clock().date())
        start = datetime.combine(week_start, time.min, tzinfo=timezone.utc)
        tenants = await activity_repo.tenant_usage(session, start=start, end=start + timedelta(days=7))
        logger.info("weekly_summaries_started week_start=%s tenants=%s", week_start.isoformat(), len(tenants))
        results: list[SummaryResult] = []
        for usage in tenants:
            thread = await self._summary_thread(
                session,
                tenant_id=usage.tenant_id,
                project_id=TENANT_SCOPE,
                title=WEEKLY_THREAD_TITLE,
                tenant_name=usage.tenant_name,
            )
            if (thread.metadata_json or {}).get("last_weekly") == week_start.isoformat():
                logger.info("weekly_summary_exists tenant_id=%s week_start=%s", usage.tenant_id, week_start.isoformat())
                continue
            metadata: dict[str, Any] = {
                "summary_type": "weekly",
                "summary_date": week_start.isoformat(),
                "date_range": {
                    "start": week_start.isoformat(),
                    "end": (week_start + timedelta(days=6)).isoformat(),
                },
                "total_runs": usage.total_runs,
                "total_tokens": usage.total_tokens,
                "total_cost_cents": usage.total_cost_cents,
            }
            # Stored as an assistant turn so admins can ask follow-up questions in the same thread.
            message = await messages_repo.add_message(
                session,
                thread.id,
                MessageRole.ASSISTANT,
                format_weekly_report(usage, week_start),
                created_by=self.settings.summary_user_id,
                metadata=metadata,
            )
            await threads_repo.update_metadata(session, thread, {"last_weekly": week_start.isoformat()})
            await session.commit()
            logger.info(
                "weekly_summary_generated tenant_id=%s runs=%s cost_cents=%s",
                usage.tenant_id,
                usage.total_runs,
                usage.total_cost_cents,
            )
            await self._announce(tenant_channel(usage.tenant_id), None, "weekly", message)
            results.append(
                SummaryResult(
                    kind="weekly",
                    tenant_id=usage.tenant_id,
                    project_id=None,
                    thread_id=thread.id,
                    message_id=message.id,
                )
            )
        return results

    async def _announce(self, channel: str, project_id: str | None, kind: SummaryKind, message: Message) -> None:
        event: SummaryEvent = {
            "project_id": project_id,
            "type": kind,
            "content": message.content,
            "metadata": dict(message.metadata_json or {}),
            "created_at": message.created_at.isoformat() if message.created_at else None,
            "timestamp": self._clock().isoformat(),
        }
        try:
            await self.publisher.publish(channel, EVENT_SUMMARY_READY, dict(event))
        except Exception as exc:  # noqa: BLE001 - the summary is already stored
            logger.warning("summary_publish_failed channel=%s kind=%s error=%s", channel, kind, type(exc).__name__)
