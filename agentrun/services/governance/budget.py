from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from agentrun.core.config import Settings, get_settings
from agentrun.persistence.repos import runs as runs_repo
from agentrun.services.ephemeral import EphemeralStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopeBudget:
    budget: int
    usage: int
    percentage: float
    over_budget: bool
    warning: bool


@dataclass(frozen=True)
class BudgetStatus:
    # Derived on demand from summed run costs; never persisted.
    user: ScopeBudget
    tenant: ScopeBudget
    can_proceed: bool
    should_degrade: bool

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def _scope(budget: int, usage: int, warning_threshold: float) -> ScopeBudget:
    percentage = usage / max(budget, 1) * 100
    return ScopeBudget(
        budget=budget,
        usage=usage,
        percentage=round(percentage, 2),
        over_budget=usage >= budget,
        warning=percentage >= warning_threshold * 100,
    )


class BudgetTracker:
    def __init__(
        self,
        store: EphemeralStore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now

    def _user_key(self, user_id: str, now: datetime) -> str:
        return f"usage:user:{user_id}:{now.strftime('%Y-%m-%d')}"

    def _tenant_key(self, tenant_id: str, now: datetime) -> str:
        return f"usage:tenant:{tenant_id}:{now.strftime('%Y-%m')}"

    async def _cached_sum(self, key: str, load: Callable[[], Any]) -> int:
        # Serve summed costs from the short-lived cache before hitting the database.
        cached = await self._store.get(key)
        if cached is not None:
            return int(cached)
        value = int(await load())
        await self._store.set(key, str(value), ttl_s=self._settings.budget_usage_cache_ttl_s)
        return value

    async def user_daily_usage(self, session: AsyncSession, user_id: str) -> int:
        now = self._clock()
        start, end = day_bounds(now)
        return await self._cached_sum(
            self._user_key(user_id, now),
            lambda: runs_repo.sum_user_cost(session, user_id, start=start, end=end),
        )

    async def tenant_monthly_usage(self, session: AsyncSession, tenant_id: str) -> int:
        now = self._clock()
        start, end = month_bounds(now)
        return await self._cached_sum(
            self._tenant_key(tenant_id, now),
            lambda: runs_repo.sum_tenant_cost(session, tenant_id, start=start, end=end),
        )

    async def check_budget(self, session: AsyncSession, user_id: str, tenant_id: str) -> BudgetStatus:
        settings = self._settings
        user_usage = await self.user_daily_usage(session, user_id)
        tenant_usage = await self.tenant_monthly_usage(session, tenant_id)
        user = _scope(settings.budget_user_daily_cents, user_usage, settings.budget_warning_threshold)
        tenant = _scope(settings.budget_tenant_monthly_cents, tenant_usage, settings.budget_warning_threshold)
        over = user.over_budget or tenant.over_budget
        status = BudgetStatus(
            user=user,
            tenant=tenant,
            can_proceed=not over,
            should_degrade=over and settings.budget_graceful_degradation,
        )
        if user.warning or tenant.warning:
            logger.warning(
                "budget_warning user_id=%s tenant_id=%s user_pct=%s tenant_pct=%s degrade=%s",
                user_id,
                tenant_id,
                user.percentage,
                tenant.percentage,
                status.should_degrade,
            )
        return status

    async def invalidate_usage_cache(self, user_id: str, tenant_id: str) -> None:
        # Drop cached sums after a run is costed so the next check re-reads the database.
        now = self._clock()
        await self._store.delete(self._user_key(user_id, now))
        await self._store.delete(self._tenant_key(tenant_id, now))
