from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.core.config import ContextRatios, Settings, get_settings
from agentrun.domain.context import TASK_BUCKETS, Context, ContextMessage, FileSection, TaskSection
from agentrun.domain.models import Thread
from agentrun.domain.state import Actor, Audience, MessageRole
from agentrun.persistence.repos import messages as messages_repo
from agentrun.services.redaction import PIIRedactor


logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    async def fetch_tasks(self, project_id: str) -> dict[str, list[dict[str, Any]]]:
        """Return tasks grouped by bucket (recent, overdue, blocked, completed), most relevant first."""
        ...


class FileSource(Protocol):
    async def fetch_files(self, project_id: str) -> list[dict[str, Any]]:
        ...

    async def fetch_project_meta(self, project_id: str) -> dict[str, Any]:
        ...


def estimate_tokens(text: str) -> int:
    # Cheap heuristic: one token per four bytes of UTF-8.
    return math.ceil(len(text.encode("utf-8")) / 4)


def _item_tokens(item: dict[str, Any]) -> int:
    return estimate_tokens(json.dumps(item, sort_keys=True, default=str))


def allocate_budget(max_tokens: int, ratios: ContextRatios, safety_buffer_ratio: float) -> dict[str, int]:
    """Split a model budget into per-section sub-budgets.

    Each section gets ``floor(available * ratio)``, so the three never sum past
    ``available`` as long as the ratios sum to at most one.
    """
    max_tokens = max(0, max_tokens)
    available = max_tokens - math.floor(max_tokens * safety_buffer_ratio)
    return {
        "available": available,
        "messages": math.floor(available * ratios.messages),
        "tasks": math.floor(available * ratios.tasks),
        "files": math.floor(available * ratios.files),
    }


def context_tokens(context: Context) -> int:
    total = estimate_tokens(context.system_prompt)
    total += sum(estimate_tokens(message.content) for message in context.messages)
    return total + context.tasks.token_usage + context.files.token_usage


def build_system_prompt(thread: Thread, *, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    is_admin = thread.audience == Audience.ADMIN
    if is_admin:
        base = "You are an AI assistant for workspace administrators with access to all workspace data."
    else:
        base = "You are an AI assistant for project participants with access only to this project's data."
    lines = [
        base,
        "",
        f"Project: {thread.project_name or thread.project_id}",
        f"Workspace: {thread.tenant_name or thread.tenant_id}",
        f"Current Date: {current.strftime('%Y-%m-%d %H:%M %Z')}",
        "",
        "Guidelines:",
        "- Provide concise, actionable responses",
        "- Focus on recent activities and current priorities",
        "- Highlight blockers and risks when relevant",
        "- Maintain professional tone",
        "- Respect data scoping based on user permissions",
    ]
    if not is_admin:
        lines.extend(
            [
                "",
                "IMPORTANT: You can only access data from the current project. "
                "Do not reference other projects or workspace-wide information.",
            ]
        )
    return "\n".join(lines)


class ContextBuilder:
    def __init__(
        self,
        *,
        redactor: PIIRedactor | None = None,
        task_source: TaskSource | None = None,
        file_source: FileSource | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.redactor = redactor or PIIRedactor(
            self.settings.pii_rules,
            replacement=self.settings.pii_replacement,
            enabled=self.settings.pii_redaction_enabled,
        )
        self.task_source = task_source
        self.file_source = file_source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def build_context(
        self,
        session: AsyncSession,
        thread: Thread,
        max_tokens: int,
        actor: Actor,
    ) -> Context:
        allocations = allocate_budget(
            max_tokens,
            self.settings.context_ratios,
            self.settings.context_safety_buffer_ratio,
        )
        context = Context(
            system_prompt=build_system_prompt(thread, now=self._clock()),
            messages=await self._build_messages(session, thread.id, allocations["messages"]),
            tasks=await self._build_tasks(thread.project_id, allocations["tasks"]),
            files=await self._build_files(thread.project_id, allocations["files"]),
            metadata=self._build_metadata(thread),
            budgets=allocations,
        )
        context = self.redactor.redact_context(context, actor.role)
        logger.info(
            "context_built thread_id=%s audience=%s max_tokens=%s available=%s tokens=%s messages=%s tasks=%s files=%s",
            thread.id,
            thread.audience.value,
            max_tokens,
            allocations["available"],
            context_tokens(context),
            len(context.messages),
            sum(len(getattr(context.tasks, bucket)) for bucket in TASK_BUCKETS),
            len(context.files.recent_files),
        )
        return context

    def needs_refresh(self, context: Context, max_tokens: int) -> bool:
        return context_tokens(context) > max_tokens * self.settings.context_refresh_threshold

    async def _build_messages(self, session: AsyncSession, thread_id: str, budget: int) -> list[ContextMessage]:
        selected: list[ContextMessage] = []
        used = 0
        for message in await messages_repo.list_messages_newest_first(session, thread_id):
            if message.role == MessageRole.SYSTEM:
                # The seeded prompt is rebuilt fresh as context.system_prompt.
                continue
            cost = estimate_tokens(message.content)
            if used + cost > budget:
                # Drop the overflowing message whole and stop; never truncate.
                break
            selected.append(
                ContextMessage(
                    role=message.role.value,
                    content=message.content,
                    created_at=message.created_at.isoformat() if message.created_at else None,
                    id=message.id,
                )
            )
            used += cost
        selected.reverse()
        return selected

    async def _build_tasks(self, project_id: str, budget: int) -> TaskSection:
        section = TaskSection()
        if self.task_source is None:
            return section
        try:
            grouped = await self.task_source.fetch_tasks(project_id)
        except Exception as exc:
            logger.warning("context_tasks_unavailable project_id=%s error=%s", project_id, type(exc).__name__)
            return section
        used = 0
        exhausted = False
        for bucket in TASK_BUCKETS:
            kept: list[dict[str, Any]] = []
            for task in grouped.get(bucket, []):
                if exhausted:
                    break
                cost = _item_tokens(task)
                if used + cost > budget:
                    exhausted = True
                    break
                kept.append(dict(task))
                used += cost
            setattr(section, bucket, kept)
        section.token_usage = used
        return section

    async def _build_files(self, project_id: str, budget: int) -> FileSection:
        section = FileSection()
        if self.file_source is None:
            return section
        try:
            project_meta = await self.file_source.fetch_project_meta(project_id)
            files = await self.file_source.fetch_files(project_id)
        except Exception as exc:
            logger.warning("context_files_unavailable project_id=%s error=%s", project_id, type(exc).__name__)
            return section
        used = 0
        if project_meta:
            cost = _item_tokens(project_meta)
            if cost <= budget:
                section.project_meta = dict(project_meta)
                used = cost
        for file in files:
            cost = _item_tokens(file)
            if used + cost > budget:
                break
            section.recent_files.append(dict(file))
            used += cost
        section.token_usage = used
        return section

    def _build_metadata(self, thread: Thread) -> dict[str, Any]:
        return {
            "thread": {
                "id": thread.id,
                "title": thread.title,
                "audience": thread.audience.value,
                "created_at": thread.created_at.isoformat() if thread.created_at else None,
            },
            "project": {"id": thread.project_id, "name": thread.project_name},
            "tenant": {"id": thread.tenant_id, "name": thread.tenant_name},
        }
