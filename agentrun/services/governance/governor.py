from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.core.config import Settings, get_settings
from agentrun.services.ephemeral import EphemeralStore
from agentrun.services.governance.budget import BudgetStatus, BudgetTracker
from agentrun.services.governance.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
)
from agentrun.services.governance.pricing import calculate_cost
from agentrun.services.governance.rate_limiter import RateLimiter, WindowUsage


logger = logging.getLogger(__name__)


class Governor:
    """Single entry point for the gates that decide whether a run may start.

    The three mechanisms share one ephemeral store but keep independent keys.
    """

    def __init__(
        self,
        store: EphemeralStore,
        *,
        settings: Settings | None = None,
        time_source: Callable[[], float] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.rate_limiter = RateLimiter(store, settings=self.settings)
        self.budget = BudgetTracker(store, settings=self.settings, clock=clock)
        self.breaker = CircuitBreaker(
            store,
            config=CircuitBreakerConfig.from_settings(self.settings),
            time_source=time_source,
        )

    async def can_proceed(self, user_id: str, tenant_id: str) -> bool:
        return await self.rate_limiter.can_proceed(user_id, tenant_id)

    async def record_request(self, user_id: str, tenant_id: str) -> None:
        await self.rate_limiter.record_request(user_id, tenant_id)

    async def rate_limit_snapshot(self, user_id: str, tenant_id: str) -> list[WindowUsage]:
        return await self.rate_limiter.snapshot(user_id, tenant_id)

    async def check_budget(self, session: AsyncSession, user_id: str, tenant_id: str) -> BudgetStatus:
        return await self.budget.check_budget(session, user_id, tenant_id)

    async def invalidate_usage_cache(self, user_id: str, tenant_id: str) -> None:
        await self.budget.invalidate_usage_cache(user_id, tenant_id)

    async def can_use_provider(self, provider: str) -> bool:
        return await self.breaker.can_use_provider(provider)

    async def provider_available(self, provider: str) -> bool:
        return await self.breaker.is_available(provider)

    async def record_success(self, provider: str) -> CircuitBreakerState:
        return await self.breaker.record_success(provider)

    async def record_failure(self, provider: str) -> CircuitBreakerState:
        return await self.breaker.record_failure(provider)

    async def breaker_state(self, provider: str) -> CircuitBreakerState:
        return await self.breaker.state(provider)

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> int:
        return calculate_cost(model, input_tokens, output_tokens, prices=self.settings.model_prices)
