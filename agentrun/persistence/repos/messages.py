from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.domain.models import Message
from agentrun.domain.state import MessageRole


async def add_message(
    session: AsyncSession,
    thread_id: str,
    role: MessageRole,
    content: str,
    *,
    run_id: str | None = None,
    created_by: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Message:
    message = Message(
        thread_id=thread_id,
        role=role,
        content=content,
        run_id=run_id,
        created_by=created_by,
        metadata_json=metadata,
    )
    session.add(message)
    # Flush so the id (ordering tie-breaker) is assigned immediately.
    await session.flush()
    return message


async def list_messages(session: AsyncSession, thread_id: str) -> list[Message]:
    result = await session.execute(
        select(Message)
        .where(Message.thread_id == thread_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
    )
    return list(result.scalars().all())


async def list_messages_newest_first(
    session: AsyncSession, thread_id: str, *, limit: int | None = None
) -> list[Message]:
    stmt = (
        select(Message)
        .where(Message.thread_id == thread_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_messages(session: AsyncSession, thread_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Message).where(Message.thread_id == thread_id)
    )
    return int(result.scalar_one())


async def get_run_reply(session: AsyncSession, run_id: str) -> Message | None:
    result = await session.execute(
        select(Message)
        .where(Message.run_id == run_id, Message.role == MessageRole.ASSISTANT)
        .order_by(Message.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_metadata(session: AsyncSession, message: Message, metadata: dict[str, Any]) -> Message:
    # Merge rather than replace; run/model tags written at finalization are kept.
    message.metadata_json = {**(message.metadata_json or {}), **metadata}
    await session.flush()
    return message
