"""Run lifecycle: gate, persist, build context, stream, finalize.

One call to :meth:`RunOrchestrator.process_message` is one unit of work. The
run row always reaches a terminal status before an exception escapes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.core.config import Settings, get_settings
from agentrun.core.errors import (
    BudgetExceededError,
    InvalidRunTransitionError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    UnauthorizedError,
)
from agentrun.domain.context import Context
from agentrun.domain.models import Message, Run, Thread
from agentrun.domain.state import Actor, Audience, MessageRole, RunStatus
from agentrun.persistence.repos import messages as messages_repo
from agentrun.persistence.repos import runs as runs_repo
from agentrun.persistence.repos import threads as threads_repo
from agentrun.providers.llm.base import LLMProvider, Usage
from agentrun.providers.llm.factory import get_llm_provider
from agentrun.services.context_builder import ContextBuilder, build_system_prompt
from agentrun.services.ephemeral import get_ephemeral_store
from agentrun.services.governance import BudgetStatus, Governor
from agentrun.services.streaming import StreamingCoordinator, get_event_publisher


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    text: str
    usage: Usage


def build_provider_messages(context: Context, user_message: Message, user_text: str) -> list[dict[str, str]]:
    """Flatten a context into provider chat turns.

    Project info goes ahead of the current user turn so the question is the
    last thing the model reads. The user turn is appended only when the
    message budget dropped it from the history.
    """
    messages: list[dict[str, str]] = []
    if context.system_prompt:
        messages.append({"role": "system", "content": context.system_prompt})
    current: dict[str, str] | None = None
    for message in context.messages:
        if message.id == user_message.id:
            current = {"role": message.role, "content": message.content}
            continue
        messages.append({"role": message.role, "content": message.content})
    info_parts: list[str] = []
    if context.tasks.recent_tasks:
        info_parts.append("Recent Tasks:\n" + json.dumps(context.tasks.recent_tasks, indent=2, default=str))
    if context.files.recent_files:
        info_parts.append("Recent Files:\n" + json.dumps(context.files.recent_files, indent=2, default=str))
    if context.files.project_meta:
        info_parts.append("Project Info:\n" + json.dumps(context.files.project_meta, indent=2, default=str))
    if info_parts:
        messages.append({"role": "system", "content": "\n\n".join(info_parts)})
    messages.append(current or {"role": "user", "content": user_text})
    return messages


class RunOrchestrator:
    def __init__(
        self,
        *,
        governor: Governor,
        streaming: StreamingCoordinator,
        context_builder: ContextBuilder,
        provider: LLMProvider,
        settings: Settings | None = None,
    ) -> None:
        self.governor = governor
        self.streaming = streaming
        self.context_builder = context_builder
        self.provider = provider
        self.settings = settings or get_settings()

    @property
    def provider_name(self) -> str:
        return self.provider.name

    @property
    def model(self) -> str:
        return self.settings.llm_model

    def model_max_tokens(self, model: str | None = None) -> int:
        # Leave room for the reply inside the model's context window.
        limits = self.settings.model_limits.get(model or self.model)
        if limits is None:
            return self.settings.llm_max_tokens
        return min(self.settings.llm_max_tokens, limits.context_window - limits.max_output_tokens)

    async def _gate(self, session: AsyncSession, thread: Thread, actor: Actor) -> BudgetStatus:
        if actor.tenant_id != thread.tenant_id:
            raise UnauthorizedError("actor cannot use a thread outside its tenant")
        if not await self.governor.can_proceed(actor.user_id, actor.tenant_id):
            raise RateLimitedError("Rate limit exceeded. Please try again later.")
        budget = await self.governor.check_budget(session, actor.user_id, actor.tenant_id)
        if not budget.can_proceed and not budget.should_degrade:
            raise BudgetExceededError("Budget limit exceeded. Please contact your administrator.")
        if not await self.governor.can_use_provider(self.provider_name):
            raise ProviderUnavailableError("AI service is temporarily unavailable. Please try again later.")
        await self.governor.record_request(actor.user_id, actor.tenant_id)
        return budget

    async def process_message(self, session: AsyncSession, thread: Thread, text: str, actor: Actor) -> Run:
        logger.info(
            "agent_run_requested thread_id=%s user_id=%s message_length=%s",
            thread.id,
            actor.user_id,
            len(text),
        )
        budget = await self._gate(session, thread, actor)

        run = await runs_repo.create_run(
            session,
            thread_id=thread.id,
            tenant_id=thread.tenant_id,
            user_id=actor.user_id,
            provider=self.provider_name,
            model=self.model,
            status=RunStatus.RUNNING,
        )
        # Commit immediately so cancellation and failure marking can see the row.
        await session.commit()
        try:
            user_message = await messages_repo.add_message(
                session,
                thread.id,
                MessageRole.USER,
                text,
                run_id=run.id,
                created_by=actor.user_id,
            )
            await session.commit()

            max_tokens = self.model_max_tokens(run.model)
            context = await self.context_builder.build_context(session, thread, max_tokens, actor)
            snapshot: dict[str, Any] = context.to_snapshot()
            if not budget.can_proceed:
                snapshot["degraded"] = True
            await runs_repo.set_context_snapshot(session, run, snapshot)
            await session.commit()

            provider_messages = build_provider_messages(
                context, user_message, self.context_builder.redactor.redact_text(text)
            )
            completion = await self._stream_completion(thread, run, provider_messages)
            await self._finalize(session, thread, run, actor, completion)
        except (Exception, asyncio.CancelledError) as exc:
            # Timeouts and job cancellation arrive as CancelledError; the row must still leave RUNNING.
            await asyncio.shield(self._fail_run(session, run, exc))
            raise
        return run

    async def _stream_completion(self, thread: Thread, run: Run, messages: list[dict[str, str]]) -> Completion:
        stream_id = self.streaming.stream_id_for_run(run.id)
        parts: list[str] = []
        usage: Usage | None = None
        try:
            async for chunk in self.provider.chat_completion(run, messages, stream=True):
                if chunk.type == "token":
                    parts.append(chunk.content)
                    await self.streaming.stream_token(thread.id, run.id, stream_id, chunk.content)
                elif chunk.type == "complete":
                    usage = chunk.usage or Usage(input_tokens=0, output_tokens=0)
                    break
            if usage is None:
                raise ProviderError(f"{self.provider_name} stream ended without a completion chunk")
        except (Exception, asyncio.CancelledError) as exc:
            # Provider health is recorded at the call site, whether or not the run is retried.
            await asyncio.shield(self._abort_stream(thread, run, stream_id, exc))
            raise
        await self.governor.record_success(self.provider_name)
        full_response = "".join(parts)
        if not await self.streaming.end_stream(thread.id, run.id, stream_id, full_response):
            logger.info("stream_end_skipped run_id=%s stream_id=%s", run.id, stream_id)
        return Completion(text=full_response, usage=usage)

    async def _abort_stream(self, thread: Thread, run: Run, stream_id: str, exc: BaseException) -> None:
        await self.governor.record_failure(self.provider_name)
        await self.streaming.stream_error(thread.id, run.id, stream_id, type(exc).__name__)
        logger.warning(
            "llm_request_failed run_id=%s provider=%s error=%s",
            run.id,
            self.provider_name,
            type(exc).__name__,
        )

    async def _finalize(
        self,
        session: AsyncSession,
        thread: Thread,
        run: Run,
        actor: Actor,
        completion: Completion,
    ) -> None:
        await messages_repo.add_message(
            session,
            thread.id,
            MessageRole.ASSISTANT,
            completion.text,
            run_id=run.id,
            metadata={"run_id": run.id, "model": run.model, "provider": run.provider},
        )
        cost = self.governor.calculate_cost(
            run.model,
            completion.usage.input_tokens,
            completion.usage.output_tokens,
        )
        await runs_repo.finalize_usage(
            session,
            run,
            tokens_in=completion.usage.input_tokens,
            tokens_out=completion.usage.output_tokens,
            cost_cents=cost,
        )
        try:
            await runs_repo.transition(session, run, RunStatus.COMPLETED)
        except InvalidRunTransitionError:
            # Cancelled externally mid-stream: keep the cancellation, still account for usage.
            logger.info("agent_run_cancelled_during_stream run_id=%s status=%s", run.id, run.status.value)
        await session.commit()
        await self.governor.invalidate_usage_cache(actor.user_id, actor.tenant_id)
        logger.info(
            "agent_run_completed run_id=%s status=%s tokens_in=%s tokens_out=%s cost_cents=%s",
            run.id,
            run.status.value,
            completion.usage.input_tokens,
            completion.usage.output_tokens,
            cost,
        )

    async def _fail_run(self, session: AsyncSession, run: Run, exc: BaseException) -> None:
        await session.rollback()
        await session.refresh(run)
        if run.status.is_terminal:
            logger.info("agent_run_already_terminal run_id=%s status=%s", run.id, run.status.value)
            return
        if isinstance(exc, asyncio.CancelledError):
            error = "run interrupted by timeout or cancellation"
        else:
            error = str(exc) or type(exc).__name__
        try:
            await runs_repo.transition(session, run, RunStatus.FAILED, error=error)
            await session.commit()
        except InvalidRunTransitionError:
            await session.rollback()
            logger.info("agent_run_terminal_race run_id=%s", run.id)
            return
        logger.error("agent_run_failed run_id=%s error_type=%s", run.id, type(exc).__name__)

    async def create_thread(
        self,
        session: AsyncSession,
        *,
        actor: Actor,
        project_id: str,
        audience: Audience,
        title: str = "",
        project_name: str = "",
        tenant_name: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Thread:
        thread = await threads_repo.create_thread(
            session,
            tenant_id=actor.tenant_id,
            project_id=project_id,
            audience=audience,
            created_by=actor.user_id,
            title=title,
            project_name=project_name,
            tenant_name=tenant_name,
            metadata=metadata,
        )
        # Seed the conversation with the scoping prompt in force at creation time.
        await messages_repo.add_message(session, thread.id, MessageRole.SYSTEM, build_system_prompt(thread))
        await session.commit()
        logger.info(
            "agent_thread_created thread_id=%s project_id=%s audience=%s user_id=%s",
            thread.id,
            project_id,
            audience.value,
            actor.user_id,
        )
        return thread

    async def cancel_active_runs(self, session: AsyncSession, thread_id: str, *, reason: str = "cancelled") -> list[str]:
        run_ids = await runs_repo.cancel_active_runs(session, thread_id, reason=reason)
        await session.commit()
        for run_id in run_ids:
            # Whichever terminal outcome commits first wins the stream.
            await self.streaming.cancel_stream(
                thread_id, run_id, self.streaming.stream_id_for_run(run_id), reason
            )
        if run_ids:
            logger.info("agent_runs_cancelled thread_id=%s count=%s", thread_id, len(run_ids))
        return run_ids


async def get_orchestrator(provider: LLMProvider | None = None) -> RunOrchestrator:
    # Wire the default collaborators from settings.
    settings = get_settings()
    store = await get_ephemeral_store()
    return RunOrchestrator(
        governor=Governor(store, settings=settings),
        streaming=StreamingCoordinator(store, await get_event_publisher(), settings=settings),
        context_builder=ContextBuilder(settings=settings),
        provider=provider or get_llm_provider(),
        settings=settings,
    )
