from __future__ import annotations

from dataclasses import dataclass, field

from agentrun.core.config import get_settings
from agentrun.core.errors import AgentRunError


TransientException = (TimeoutError, OSError)


def is_retryable(exc: BaseException) -> bool:
    # Domain errors carry their own flag; bare network failures count as transient.
    if isinstance(exc, AgentRunError):
        return exc.retryable
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    # Injected into the worker so deployments can swap schedules without code changes.
    max_attempts: int = 3
    backoff_seconds: tuple[int, ...] = field(default=(10, 30, 60))

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """``attempt`` is the 1-based number of the attempt that just failed."""
        return attempt < max(self.max_attempts, 1) and is_retryable(exc)

    def delay_for(self, attempt: int) -> int:
        if not self.backoff_seconds:
            return 0
        index = min(max(attempt, 1), len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.agent_max_attempts,
        backoff_seconds=tuple(settings.agent_retry_backoff_s),
    )
