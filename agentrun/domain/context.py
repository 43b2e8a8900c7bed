from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any


TASK_BUCKETS = ("recent_tasks", "overdue_tasks", "blocked_tasks", "completed_tasks")


@dataclass
class ContextMessage:
    role: str
    content: str
    created_at: str | None = None
    id: int | None = None


@dataclass
class TaskSection:
    recent_tasks: list[dict[str, Any]] = field(default_factory=list)
    overdue_tasks: list[dict[str, Any]] = field(default_factory=list)
    blocked_tasks: list[dict[str, Any]] = field(default_factory=list)
    completed_tasks: list[dict[str, Any]] = field(default_factory=list)
    token_usage: int = 0

    def is_empty(self) -> bool:
        return not any(getattr(self, bucket) for bucket in TASK_BUCKETS)


@dataclass
class FileSection:
    recent_files: list[dict[str, Any]] = field(default_factory=list)
    project_meta: dict[str, Any] = field(default_factory=dict)
    token_usage: int = 0

    def is_empty(self) -> bool:
        return not self.recent_files and not self.project_meta


@dataclass
class Context:
    system_prompt: str
    messages: list[ContextMessage] = field(default_factory=list)
    tasks: TaskSection = field(default_factory=TaskSection)
    files: FileSection = field(default_factory=FileSection)
    metadata: dict[str, Any] = field(default_factory=dict)
    # Sub-budgets the builder worked with, kept for audit snapshots.
    budgets: dict[str, int] = field(default_factory=dict)

    def to_snapshot(self) -> dict[str, Any]:
        # JSON-safe copy; collaborator payloads may carry datetimes.
        return json.loads(json.dumps(asdict(self), default=str))
