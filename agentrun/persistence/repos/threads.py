from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.core.errors import NotFoundError
from agentrun.domain.models import Thread
from agentrun.domain.state import Audience


async def create_thread(
    session: AsyncSession,
    *,
    tenant_id: str,
    project_id: str,
    audience: Audience,
    created_by: str,
    title: str = "",
    project_name: str = "",
    tenant_name: str = "",
    metadata: dict[str, Any] | None = None,
) -> Thread:
    thread = Thread(
        tenant_id=tenant_id,
        project_id=project_id,
        project_name=project_name,
        tenant_name=tenant_name,
        title=title,
        audience=audience,
        created_by=created_by,
        metadata_json=metadata,
    )
    session.add(thread)
    await session.flush()
    return thread


async def get_thread(session: AsyncSession, thread_id: str, *, tenant_id: str | None = None) -> Thread:
    stmt = select(Thread).where(Thread.id == thread_id)
    # Tenant scoping: a thread id from another tenant behaves like a missing row.
    if tenant_id is not None:
        stmt = stmt.where(Thread.tenant_id == tenant_id)
    result = await session.execute(stmt)
    thread = result.scalar_one_or_none()
    if thread is None:
        raise NotFoundError(f"thread {thread_id} not found")
    return thread


async def update_metadata(session: AsyncSession, thread: Thread, metadata: dict[str, Any]) -> Thread:
    # Metadata is the only mutable part of a thread.
    thread.metadata_json = {**(thread.metadata_json or {}), **metadata}
    await session.flush()
    return thread


async def find_thread(
    session: AsyncSession,
    *,
    tenant_id: str,
    project_id: str,
    audience: Audience,
    title: str,
) -> Thread | None:
    result = await session.execute(
        select(Thread)
        .where(
            Thread.tenant_id == tenant_id,
            Thread.project_id == project_id,
            Thread.audience == audience,
            Thread.title == title,
        )
        .order_by(Thread.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()
