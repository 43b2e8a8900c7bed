"""Ordered token streaming with idempotent termination.

Producers number every event per stream through an atomic counter and commit
exactly one terminal outcome through a set-if-absent flag. Consumers restore
order with :class:`SequenceBuffer` because the transport may reorder.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict, deque
from typing import Any, AsyncIterator, Protocol

from redis.asyncio import Redis

from agentrun.core.config import Settings, get_settings
from agentrun.domain.events import (
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_ERROR,
    EVENT_TOKEN,
    TERMINAL_EVENTS,
    StreamEnvelope,
    StreamEvent,
    thread_channel,
)
from agentrun.services.ephemeral import EphemeralStore, get_redis


logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        ...

    def subscribe(self, channel: str, *, idle_timeout_s: float = 1.0) -> AsyncIterator[StreamEnvelope | None]:
        """Yield envelopes as they arrive, or None after each idle interval."""
        ...


class RedisEventPublisher:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        await self._redis.publish(channel, json.dumps({"event": event, "data": payload}))

    async def subscribe(self, channel: str, *, idle_timeout_s: float = 1.0) -> AsyncIterator[StreamEnvelope | None]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=idle_timeout_s)
                if message is None:
                    yield None
                    continue
                if message.get("type") != "message":
                    continue
                yield json.loads(message["data"])
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()


class InMemoryEventPublisher:
    """Process-local fan-out used by dev mode and tests.

    The most recent envelopes are kept in ``published`` for inspection; older
    ones fall off once ``history_size`` is reached.
    """

    def __init__(self, *, history_size: int = 1000) -> None:
        self.published: deque[tuple[str, StreamEnvelope]] = deque(maxlen=history_size)
        self._subscribers: dict[str, list[asyncio.Queue[StreamEnvelope]]] = defaultdict(list)

    async def publish(self, channel: str, event: str, payload: dict[str, Any]) -> None:
        envelope: StreamEnvelope = {"event": event, "data": payload}  # type: ignore[typeddict-item]
        self.published.append((channel, envelope))
        for queue in list(self._subscribers.get(channel, [])):
            # Unbounded queues: a slow consumer never blocks the producer.
            queue.put_nowait(envelope)

    def events_for(self, channel: str) -> list[StreamEnvelope]:
        return [envelope for name, envelope in self.published if name == channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def subscribe(self, channel: str, *, idle_timeout_s: float = 1.0) -> AsyncIterator[StreamEnvelope | None]:
        queue: asyncio.Queue[StreamEnvelope] = asyncio.Queue()
        self._subscribers[channel].append(queue)
        try:
            while True:
                try:
                    yield await asyncio.wait_for(queue.get(), timeout=idle_timeout_s)
                except asyncio.TimeoutError:
                    yield None
        finally:
            self._subscribers[channel].remove(queue)


class StreamingCoordinator:
    def __init__(
        self,
        store: EphemeralStore,
        publisher: EventPublisher,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._settings = settings or get_settings()

    @staticmethod
    def stream_id_for_run(run_id: str) -> str:
        # Deterministic so a retried attempt races on the same completion flag.
        return f"stream_{run_id}"

    @staticmethod
    def _seq_key(stream_id: str) -> str:
        return f"seq:{stream_id}"

    @staticmethod
    def _done_key(stream_id: str) -> str:
        return f"done:{stream_id}"

    async def _next_seq(self, stream_id: str) -> int:
        return await self._store.incr(
            self._seq_key(stream_id),
            ttl_s=self._settings.stream_seq_ttl_s,
            sliding=True,
        )

    async def _publish(self, thread_id: str, event: str, payload: StreamEvent) -> None:
        try:
            await self._publisher.publish(thread_channel(thread_id), event, dict(payload))
        except Exception as exc:  # noqa: BLE001 - transport delivery is best effort
            logger.warning(
                "stream_publish_failed thread_id=%s stream_id=%s event=%s error=%s",
                thread_id,
                payload["stream_id"],
                event,
                type(exc).__name__,
            )

    async def stream_token(self, thread_id: str, run_id: str, stream_id: str, token: str) -> int | None:
        # Nothing follows a terminal event; the counter is already gone.
        if await self.is_finished(stream_id) is not None:
            return None
        seq = await self._next_seq(stream_id)
        await self._publish(
            thread_id,
            EVENT_TOKEN,
            {"token": token, "seq": seq, "stream_id": stream_id, "run_id": run_id, "done": False},
        )
        return seq

    async def is_finished(self, stream_id: str) -> str | None:
        # Returns the committed outcome name, if any.
        return await self._store.get(self._done_key(stream_id))

    async def _terminate(
        self,
        thread_id: str,
        run_id: str,
        stream_id: str,
        *,
        event: str,
        outcome: str,
        extra: dict[str, Any],
    ) -> bool:
        committed = await self._store.set_if_absent(
            self._done_key(stream_id),
            outcome,
            ttl_s=self._settings.stream_done_ttl_s,
        )
        if not committed:
            logger.info("stream_already_finished stream_id=%s attempted=%s", stream_id, outcome)
            return False
        seq = await self._next_seq(stream_id)
        payload: StreamEvent = {
            "token": None,
            "seq": seq,
            "stream_id": stream_id,
            "run_id": run_id,
            "done": True,
            **extra,  # type: ignore[typeddict-item]
        }
        await self._publish(thread_id, event, payload)
        # The done flag outlives the counter and keeps answering "already finished".
        await self._store.delete(self._seq_key(stream_id))
        logger.info("stream_finished stream_id=%s run_id=%s outcome=%s seq=%s", stream_id, run_id, outcome, seq)
        return True

    async def end_stream(self, thread_id: str, run_id: str, stream_id: str, full_response: str) -> bool:
        return await self._terminate(
            thread_id,
            run_id,
            stream_id,
            event=EVENT_COMPLETED,
            outcome="completed",
            extra={"full_response": full_response},
        )

    async def cancel_stream(self, thread_id: str, run_id: str, stream_id: str, reason: str = "cancelled") -> bool:
        return await self._terminate(
            thread_id,
            run_id,
            stream_id,
            event=EVENT_CANCELLED,
            outcome="cancelled",
            extra={"reason": reason},
        )

    async def stream_error(self, thread_id: str, run_id: str, stream_id: str, error: str) -> bool:
        return await self._terminate(
            thread_id,
            run_id,
            stream_id,
            event=EVENT_ERROR,
            outcome="error",
            extra={"reason": error},
        )


class SequenceBuffer:
    """Consumer-side reordering of one thread channel.

    Events are tracked per stream id; anything ahead of the next expected
    sequence is held until the gap closes, and repeats are dropped.
    """

    def __init__(self, *, start: int = 1) -> None:
        self._start = start
        self._next: dict[str, int] = {}
        self._pending: dict[str, dict[int, StreamEnvelope]] = defaultdict(dict)
        self._finished: set[str] = set()

    def expected(self, stream_id: str) -> int:
        return self._next.get(stream_id, self._start)

    def pending(self, stream_id: str) -> int:
        return len(self._pending.get(stream_id, {}))

    def is_finished(self, stream_id: str) -> bool:
        return stream_id in self._finished

    def push(self, envelope: StreamEnvelope) -> list[StreamEnvelope]:
        data = envelope["data"]
        stream_id = data["stream_id"]
        seq = int(data["seq"])
        expected = self.expected(stream_id)
        pending = self._pending[stream_id]
        if stream_id in self._finished or seq < expected or seq in pending:
            return []
        pending[seq] = envelope
        released: list[StreamEnvelope] = []
        while expected in pending:
            item = pending.pop(expected)
            released.append(item)
            expected += 1
            if item["event"] in TERMINAL_EVENTS:
                self._finished.add(stream_id)
                pending.clear()
                break
        self._next[stream_id] = expected
        if not pending:
            self._pending.pop(stream_id, None)
        return released


_memory_publisher: InMemoryEventPublisher | None = None


async def get_event_publisher() -> EventPublisher:
    global _memory_publisher
    settings = get_settings()
    if settings.ephemeral_backend == "memory":
        if _memory_publisher is None:
            _memory_publisher = InMemoryEventPublisher(history_size=settings.stream_history_size)
        return _memory_publisher
    return RedisEventPublisher(await get_redis())


def reset_event_publisher() -> None:
    global _memory_publisher
    _memory_publisher = None
