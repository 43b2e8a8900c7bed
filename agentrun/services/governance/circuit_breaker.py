from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from typing import Callable

from agentrun.core.config import Settings, get_settings
from agentrun.domain.state import BreakerState
from agentrun.services.ephemeral import EphemeralStore


logger = logging.getLogger(__name__)

# Bound optimistic retries when concurrent units race on the same provider.
_CAS_ATTEMPTS = 8


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    recovery_timeout_s: int
    success_threshold: int
    state_ttl_s: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout_s=settings.cb_recovery_timeout_s,
            success_threshold=settings.cb_success_threshold,
            state_ttl_s=settings.cb_state_ttl_s,
        )


@dataclass(frozen=True)
class CircuitBreakerState:
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    opened_at: float | None = None
    half_open_success_count: int = 0

    def dumps(self) -> str:
        payload = asdict(self)
        payload["state"] = self.state.value
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def loads(cls, raw: str | None) -> "CircuitBreakerState":
        if not raw:
            return cls()
        data = json.loads(raw)
        return cls(
            state=BreakerState(data.get("state", BreakerState.CLOSED.value)),
            failure_count=int(data.get("failure_count", 0)),
            opened_at=float(data["opened_at"]) if data.get("opened_at") is not None else None,
            half_open_success_count=int(data.get("half_open_success_count", 0)),
        )


class CircuitBreaker:
    """Per-provider health gate shared through the ephemeral store.

    Every transition is a compare-and-set against the previously read JSON, so
    two units recording outcomes concurrently cannot lose an update.
    """

    def __init__(
        self,
        store: EphemeralStore,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._config = config or CircuitBreakerConfig.from_settings(get_settings())
        # Wall clock: opened_at is compared across processes.
        self._time = time_source or time.time

    @staticmethod
    def _key(provider: str) -> str:
        return f"cb:{provider}"

    async def state(self, provider: str) -> CircuitBreakerState:
        return CircuitBreakerState.loads(await self._store.get(self._key(provider)))

    async def _mutate(
        self,
        provider: str,
        step: Callable[[CircuitBreakerState], CircuitBreakerState | None],
    ) -> CircuitBreakerState:
        key = self._key(provider)
        current = CircuitBreakerState()
        for _ in range(_CAS_ATTEMPTS):
            raw = await self._store.get(key)
            current = CircuitBreakerState.loads(raw)
            target = step(current)
            if target is None or target == current:
                return current
            if await self._store.compare_and_set(key, raw, target.dumps(), ttl_s=self._config.state_ttl_s):
                if target.state != current.state:
                    logger.warning(
                        "circuit_breaker_transition provider=%s from=%s to=%s failures=%s",
                        provider,
                        current.state.value,
                        target.state.value,
                        target.failure_count,
                    )
                return target
        logger.warning("circuit_breaker_contention provider=%s attempts=%s", provider, _CAS_ATTEMPTS)
        return current

    async def record_failure(self, provider: str) -> CircuitBreakerState:
        now = self._time()

        def step(state: CircuitBreakerState) -> CircuitBreakerState:
            failures = state.failure_count + 1
            if state.state == BreakerState.HALF_OPEN:
                # Any failed trial sends the breaker straight back to open.
                return CircuitBreakerState(BreakerState.OPEN, failures, now, 0)
            if state.state == BreakerState.CLOSED and failures >= self._config.failure_threshold:
                return CircuitBreakerState(BreakerState.OPEN, failures, now, 0)
            return replace(state, failure_count=failures)

        return await self._mutate(provider, step)

    async def record_success(self, provider: str) -> CircuitBreakerState:
        def step(state: CircuitBreakerState) -> CircuitBreakerState | None:
            # Successes only count while trial traffic is flowing.
            if state.state != BreakerState.HALF_OPEN:
                return None
            successes = state.half_open_success_count + 1
            if successes >= self._config.success_threshold:
                return CircuitBreakerState(BreakerState.CLOSED, 0, None, 0)
            return replace(state, half_open_success_count=successes)

        return await self._mutate(provider, step)

    def _recovery_due(self, state: CircuitBreakerState, now: float) -> bool:
        return state.opened_at is not None and now - state.opened_at >= self._config.recovery_timeout_s

    async def can_use_provider(self, provider: str) -> bool:
        now = self._time()

        def step(state: CircuitBreakerState) -> CircuitBreakerState | None:
            if state.state != BreakerState.OPEN or not self._recovery_due(state, now):
                return None
            return CircuitBreakerState(BreakerState.HALF_OPEN, state.failure_count, state.opened_at, 0)

        state = await self._mutate(provider, step)
        return state.state != BreakerState.OPEN

    async def is_available(self, provider: str) -> bool:
        # Same answer as can_use_provider, without promoting an expired open breaker.
        state = await self.state(provider)
        return state.state != BreakerState.OPEN or self._recovery_due(state, self._time())
