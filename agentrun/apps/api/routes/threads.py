from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncGenerator
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import StreamingResponse

from agentrun.apps.api.deps import get_actor, get_db, get_publisher, get_run_orchestrator, get_scoped_thread
from agentrun.apps.api.response import success_response
from agentrun.core.config import get_settings
from agentrun.core.errors import RateLimitedError
from agentrun.domain.events import StreamEnvelope, TERMINAL_EVENTS, thread_channel
from agentrun.domain.models import Thread
from agentrun.domain.state import Actor, Audience, MessageRole, RunStatus
from agentrun.persistence.repos import messages as messages_repo
from agentrun.persistence.repos import runs as runs_repo
from agentrun.services.agent_queue import AgentJobPayload, enqueue_agent_job
from agentrun.services.governance import rate_limit_headers
from agentrun.services.orchestrator import RunOrchestrator
from agentrun.services.streaming import EventPublisher, SequenceBuffer


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/threads", tags=["threads"])


class ThreadCreateRequest(BaseModel):
    project_id: str = Field(min_length=1)
    audience: Audience = Audience.PARTICIPANT
    title: str = ""
    project_name: str = ""
    tenant_name: str = ""
    metadata: dict[str, Any] | None = None


class MessageCreateRequest(BaseModel):
    text: str = Field(min_length=1, max_length=20000)


class ThreadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    project_id: str
    project_name: str
    title: str
    audience: Audience
    created_by: str
    created_at: datetime


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    thread_id: str
    run_id: str | None
    role: MessageRole
    content: str
    metadata_json: dict[str, Any] | None
    created_at: datetime


class RunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    thread_id: str
    status: RunStatus
    provider: str
    model: str
    tokens_in: int | None
    tokens_out: int | None
    cost_cents: int | None
    started_at: datetime
    finished_at: datetime | None
    error: str | None


def _sse_frame(envelope: StreamEnvelope) -> str:
    # One SSE frame per event; the id lets clients spot gaps across reconnects.
    data = envelope["data"]
    body = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"id: {data['stream_id']}:{data['seq']}\nevent: {envelope['event']}\ndata: {body}\n\n"


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_thread(
    payload: ThreadCreateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    orchestrator: RunOrchestrator = Depends(get_run_orchestrator),
) -> dict:
    thread = await orchestrator.create_thread(
        db,
        actor=actor,
        project_id=payload.project_id,
        audience=payload.audience,
        title=payload.title,
        project_name=payload.project_name,
        tenant_name=payload.tenant_name,
        metadata=payload.metadata,
    )
    return success_response(request=request, data=ThreadOut.model_validate(thread))


@router.get("/{thread_id}")
async def get_thread(
    request: Request,
    thread: Thread = Depends(get_scoped_thread),
    db: AsyncSession = Depends(get_db),
) -> dict:
    runs = await runs_repo.list_runs(db, thread.id)
    data = ThreadOut.model_validate(thread).model_dump(mode="json")
    data["runs"] = [RunOut.model_validate(run).model_dump(mode="json") for run in runs]
    return success_response(request=request, data=data)


@router.get("/{thread_id}/messages")
async def list_messages(
    request: Request,
    thread: Thread = Depends(get_scoped_thread),
    db: AsyncSession = Depends(get_db),
) -> dict:
    messages = await messages_repo.list_messages(db, thread.id)
    data = [MessageOut.model_validate(message).model_dump(mode="json") for message in messages]
    return success_response(request=request, data=data)


@router.post("/{thread_id}/messages")
async def post_message(
    payload: MessageCreateRequest,
    request: Request,
    thread: Thread = Depends(get_scoped_thread),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    orchestrator: RunOrchestrator = Depends(get_run_orchestrator),
) -> Response:
    settings = get_settings()
    if settings.agent_execution_mode == "inline":
        # Inline mode runs the whole unit in the request; errors map straight to HTTP codes.
        run = await orchestrator.process_message(db, thread, payload.text, actor)
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content=success_response(request=request, data=RunOut.model_validate(run)),
        )

    # Read-only pre-check so obviously rejected requests never reach the queue.
    usage = await orchestrator.governor.rate_limit_snapshot(actor.user_id, actor.tenant_id)
    if any(window.exhausted for window in usage):
        raise RateLimitedError("Rate limit exceeded. Please try again later.")
    job_id = await enqueue_agent_job(
        AgentJobPayload(
            thread_id=thread.id,
            tenant_id=actor.tenant_id,
            user_id=actor.user_id,
            role=actor.role,
            text=payload.text,
            request_id=str(uuid4()),
        )
    )
    logger.info("agent_job_enqueued job_id=%s thread_id=%s", job_id, thread.id)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=success_response(
            request=request,
            data={"job_id": job_id, "thread_id": thread.id, "status": RunStatus.QUEUED.value},
        ),
        headers=rate_limit_headers(usage),
    )


@router.post("/{thread_id}/cancel")
async def cancel_thread_runs(
    request: Request,
    thread: Thread = Depends(get_scoped_thread),
    db: AsyncSession = Depends(get_db),
    orchestrator: RunOrchestrator = Depends(get_run_orchestrator),
) -> dict:
    run_ids = await orchestrator.cancel_active_runs(db, thread.id, reason="cancelled by user")
    return success_response(request=request, data={"thread_id": thread.id, "cancelled_run_ids": run_ids})


@router.get("/{thread_id}/stream")
async def stream_thread(
    thread: Thread = Depends(get_scoped_thread),
    publisher: EventPublisher = Depends(get_publisher),
    until_done: bool = Query(default=False),
) -> StreamingResponse:
    settings = get_settings()
    channel = thread_channel(thread.id)

    async def event_stream() -> AsyncGenerator[str, None]:
        # Reorder per stream before writing; the transport may deliver out of order.
        buffer = SequenceBuffer()
        subscription = publisher.subscribe(channel, idle_timeout_s=float(settings.sse_heartbeat_s))
        try:
            async for envelope in subscription:
                if envelope is None:
                    yield ": ping\n\n"
                    continue
                for item in buffer.push(envelope):
                    yield _sse_frame(item)
                    if until_done and item["event"] in TERMINAL_EVENTS:
                        return
        except asyncio.CancelledError:
            logger.info("sse_client_disconnected thread_id=%s", thread.id)
            raise
        finally:
            await subscription.aclose()

    return StreamingResponse(event_stream(), media_type="text/event-stream")
