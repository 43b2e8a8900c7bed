from __future__ import annotations

from typing import Any, Literal, NotRequired, TypedDict


# Event names published on a thread channel.
EVENT_TOKEN = "agent.token"
EVENT_COMPLETED = "agent.stream.completed"
EVENT_CANCELLED = "agent.stream.cancelled"
EVENT_ERROR = "agent.stream.error"

# Published on project and tenant channels when a scheduled summary is stored.
EVENT_SUMMARY_READY = "agent.summary.ready"


TERMINAL_EVENTS = frozenset({EVENT_COMPLETED, EVENT_CANCELLED, EVENT_ERROR})

StreamEventName = Literal[
    "agent.token",
    "agent.stream.completed",
    "agent.stream.cancelled",
    "agent.stream.error",
]


class StreamEvent(TypedDict):
    token: str | None
    seq: int
    stream_id: str
    run_id: str
    done: bool
    full_response: NotRequired[str]
    reason: NotRequired[str]


class StreamEnvelope(TypedDict):
    # Wire framing on the pub/sub channel: event name plus payload.
    event: StreamEventName
    data: StreamEvent


def thread_channel(thread_id: str) -> str:
    return f"agent.thread.{thread_id}"


def project_channel(project_id: str) -> str:
    return f"agent.project.{project_id}"


def tenant_channel(tenant_id: str) -> str:
    return f"agent.tenant.{tenant_id}"


class SummaryEvent(TypedDict):
    project_id: str | None
    type: Literal["daily", "weekly"]
    content: str
    metadata: dict[str, Any]
    created_at: str | None
    timestamp: str
