from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agentrun.core.errors import InvalidRunTransitionError


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})

# Every allowed edge of the run lifecycle; terminal states have no exits.
_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, *_TERMINAL}),
    RunStatus.RUNNING: _TERMINAL,
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in _TRANSITIONS[current]


def ensure_transition(current: RunStatus, target: RunStatus) -> RunStatus:
    # Reject edges outside the lifecycle table instead of silently overwriting status.
    if not can_transition(current, target):
        raise InvalidRunTransitionError(f"run cannot move from {current.value} to {target.value}")
    return target


class Audience(str, Enum):
    PARTICIPANT = "participant"
    ADMIN = "admin"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class AccessRole(str, Enum):
    ADMIN = "admin"
    CONSULTANT = "consultant"
    TEAM = "team"
    CLIENT = "client"

    @property
    def is_most_restricted(self) -> bool:
        return self is AccessRole.CLIENT


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class Actor:
    # Caller identity threaded explicitly into gating and redaction.
    user_id: str
    tenant_id: str
    role: AccessRole = AccessRole.TEAM
