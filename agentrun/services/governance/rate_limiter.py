from __future__ import annotations

import logging
from dataclasses import dataclass

from agentrun.core.config import Settings, get_settings
from agentrun.services.ephemeral import EphemeralStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateWindow:
    # One independently expiring counter: scope + window name + ceiling.
    key: str
    name: str
    limit: int
    ttl_s: int


@dataclass(frozen=True)
class WindowUsage:
    name: str
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit


class RateLimiter:
    """Windowed request ceilings per user and per tenant.

    Checking never mutates counters; recording is a separate atomic increment
    whose TTL is fixed when the window's key is first created.
    """

    def __init__(self, store: EphemeralStore, *, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    def windows(self, user_id: str, tenant_id: str) -> list[RateWindow]:
        settings = self._settings
        return [
            RateWindow(
                key=f"rl:user:{user_id}:minute",
                name="user_minute",
                limit=settings.rl_per_user_minute,
                ttl_s=settings.rl_minute_window_s,
            ),
            RateWindow(
                key=f"rl:user:{user_id}:day",
                name="user_day",
                limit=settings.rl_per_user_day,
                ttl_s=settings.rl_day_window_s,
            ),
            RateWindow(
                key=f"rl:tenant:{tenant_id}:day",
                name="tenant_day",
                limit=settings.rl_per_tenant_day,
                ttl_s=settings.rl_day_window_s,
            ),
        ]

    async def snapshot(self, user_id: str, tenant_id: str) -> list[WindowUsage]:
        usage: list[WindowUsage] = []
        for window in self.windows(user_id, tenant_id):
            raw = await self._store.get(window.key)
            usage.append(WindowUsage(name=window.name, count=int(raw or 0), limit=window.limit))
        return usage

    async def can_proceed(self, user_id: str, tenant_id: str) -> bool:
        for window in await self.snapshot(user_id, tenant_id):
            if window.exhausted:
                logger.warning(
                    "rate_limit_exceeded user_id=%s tenant_id=%s window=%s count=%s limit=%s",
                    user_id,
                    tenant_id,
                    window.name,
                    window.count,
                    window.limit,
                )
                return False
        return True

    async def record_request(self, user_id: str, tenant_id: str) -> None:
        for window in self.windows(user_id, tenant_id):
            # Natural expiry is the only reset; the TTL is never extended.
            await self._store.incr(window.key, ttl_s=window.ttl_s)


def rate_limit_headers(usage: list[WindowUsage]) -> dict[str, str]:
    # Expose the tightest window so clients can back off before a 429.
    if not usage:
        return {}
    tightest = min(usage, key=lambda window: window.remaining)
    return {
        "X-RateLimit-Window": tightest.name,
        "X-RateLimit-Limit": str(tightest.limit),
        "X-RateLimit-Remaining": str(tightest.remaining),
    }
