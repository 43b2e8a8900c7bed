from __future__ import annotations

# Re-export governance services for centralized imports.

from agentrun.services.governance.budget import BudgetStatus, BudgetTracker, ScopeBudget
from agentrun.services.governance.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerState
from agentrun.services.governance.governor import Governor
from agentrun.services.governance.pricing import calculate_cost
from agentrun.services.governance.rate_limiter import RateLimiter, WindowUsage, rate_limit_headers

__all__ = [
    "BudgetStatus",
    "BudgetTracker",
    "ScopeBudget",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "Governor",
    "calculate_cost",
    "RateLimiter",
    "WindowUsage",
    "rate_limit_headers",
]
