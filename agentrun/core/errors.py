from __future__ import annotations


class AgentRunError(Exception):
    """Base error for agentrun."""

    code = "AGENT_ERROR"
    # Background jobs consult this flag before scheduling another attempt.
    retryable = False


class GateRejectedError(AgentRunError):
    """A governance gate refused to start a run."""


class RateLimitedError(GateRejectedError):
    """Per-user or per-tenant request ceiling reached."""

    code = "RATE_LIMITED"


class BudgetExceededError(GateRejectedError):
    """Spend ceiling reached and graceful degradation is disabled."""

    code = "BUDGET_EXCEEDED"


class UnauthorizedError(GateRejectedError):
    """Actor may not use the requested thread."""

    code = "UNAUTHORIZED"


class ProviderUnavailableError(AgentRunError):
    """Circuit breaker is open for the configured provider."""

    code = "SERVICE_UNAVAILABLE"
    retryable = True


class ProviderError(AgentRunError):
    """Provider request failed (network, API or server error)."""

    code = "PROVIDER_ERROR"
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Provider stream exceeded its time budget."""

    code = "PROVIDER_TIMEOUT"


class ProviderAuthError(AgentRunError):
    """Provider rejected the configured credentials."""

    code = "PROVIDER_AUTH_ERROR"


class ProviderConfigError(AgentRunError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_MISSING"


class RedactionConfigError(AgentRunError):
    """Invalid PII redaction configuration."""

    code = "REDACTION_CONFIG_INVALID"

    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues))
        self.issues = issues


class InvalidRunTransitionError(AgentRunError):
    """Run status change not allowed by the run state machine."""

    code = "INVALID_RUN_TRANSITION"


class RunAlreadyFinalizedError(AgentRunError):
    """Run usage and cost were already written."""

    code = "RUN_ALREADY_FINALIZED"


class NotFoundError(AgentRunError):
    """Requested thread or run does not exist in the caller's tenant."""

    code = "NOT_FOUND"
