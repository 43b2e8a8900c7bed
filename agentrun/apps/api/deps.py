from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.domain.models import Thread
from agentrun.domain.state import AccessRole, Actor
from agentrun.persistence.db import get_session
from agentrun.persistence.repos import threads as threads_repo
from agentrun.services.orchestrator import RunOrchestrator, get_orchestrator
from agentrun.services.streaming import EventPublisher, get_event_publisher


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_actor(
    x_user_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
    x_role: str | None = Header(default=None),
) -> Actor:
    # Dev identity headers; real authentication sits in front of this service.
    if not x_user_id or not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "X-User-Id and X-Tenant-Id headers are required"},
        )
    try:
        role = AccessRole((x_role or AccessRole.TEAM.value).lower())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": f"unknown role: {x_role}"},
        ) from exc
    return Actor(user_id=x_user_id, tenant_id=x_tenant_id, role=role)


async def get_run_orchestrator(request: Request) -> RunOrchestrator:
    # Build once per app; provider config errors surface on the first request that needs it.
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = await get_orchestrator()
        request.app.state.orchestrator = orchestrator
    return orchestrator


async def get_publisher() -> EventPublisher:
    return await get_event_publisher()


async def get_scoped_thread(
    thread_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> Thread:
    # Threads from other tenants resolve as missing.
    return await threads_repo.get_thread(db, thread_id, tenant_id=actor.tenant_id)
