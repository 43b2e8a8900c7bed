from __future__ import annotations

import asyncio
import random

import pytest

from agentrun.core.config import Settings, get_settings
from agentrun.domain.events import (
    EVENT_CANCELLED,
    EVENT_COMPLETED,
    EVENT_ERROR,
    EVENT_TOKEN,
    TERMINAL_EVENTS,
    thread_channel,
)
from agentrun.services.streaming import (
    InMemoryEventPublisher,
    SequenceBuffer,
    StreamingCoordinator,
    get_event_publisher,
)


def _coordinator(store, publisher) -> StreamingCoordinator:
    return StreamingCoordinator(store, publisher, settings=Settings())


def _envelope(event: str, seq: int, stream_id: str = "stream_r1") -> dict:
    return {"event": event, "data": {"token": str(seq), "seq": seq, "stream_id": stream_id, "run_id": "r1", "done": False}}


@pytest.mark.asyncio
async def test_tokens_are_numbered_from_one_and_completion_follows(store, publisher) -> None:
    coordinator = _coordinator(store, publisher)
    stream_id = coordinator.stream_id_for_run("r1")
    assert stream_id == "stream_r1"

    seqs = [await coordinator.stream_token("th1", "r1", stream_id, token) for token in ("Hel", "lo", "!")]
    assert seqs == [1, 2, 3]
    assert await coordinator.end_stream("th1", "r1", stream_id, "Hello!") is True

    events = publisher.events_for(thread_channel("th1"))
    assert [envelope["event"] for envelope in events] == [EVENT_TOKEN] * 3 + [EVENT_COMPLETED]
    assert [envelope["data"]["seq"] for envelope in events] == [1, 2, 3, 4]
    final = events[-1]["data"]
    assert final["done"] is True
    assert final["token"] is None
    assert final["full_response"] == "Hello!"
    assert await coordinator.is_finished(stream_id) == "completed"


@pytest.mark.asyncio
async def test_second_termination_is_a_noop(store, publisher) -> None:
    coordinator = _coordinator(store, publisher)
    await coordinator.stream_token("th1", "r1", "stream_r1", "a")
    assert await coordinator.end_stream("th1", "r1", "stream_r1", "a") is True
    assert await coordinator.end_stream("th1", "r1", "stream_r1", "a") is False
    assert await coordinator.cancel_stream("th1", "r1", "stream_r1") is False
    assert await coordinator.stream_error("th1", "r1", "stream_r1", "boom") is False

    terminal = [envelope for envelope in publisher.events_for(thread_channel("th1")) if envelope["data"]["done"]]
    assert len(terminal) == 1


@pytest.mark.asyncio
async def test_tokens_after_termination_are_not_published(store, publisher) -> None:
    coordinator = _coordinator(store, publisher)
    await coordinator.stream_token("th1", "r1", "stream_r1", "a")
    await coordinator.cancel_stream("th1", "r1", "stream_r1")
    assert await coordinator.stream_token("th1", "r1", "stream_r1", "b") is None
    assert [envelope["data"]["seq"] for envelope in publisher.events_for(thread_channel("th1"))] == [1, 2]


@pytest.mark.asyncio
async def test_cancel_wins_when_committed_first(store, publisher) -> None:
    coordinator = _coordinator(store, publisher)
    assert await coordinator.cancel_stream("th1", "r1", "stream_r1", reason="user left") is True
    assert await coordinator.end_stream("th1", "r1", "stream_r1", "late") is False

    events = publisher.events_for(thread_channel("th1"))
    assert [envelope["event"] for envelope in events] == [EVENT_CANCELLED]
    assert events[0]["data"]["reason"] == "user left"
    assert await coordinator.is_finished("stream_r1") == "cancelled"


@pytest.mark.asyncio
async def test_racing_terminations_commit_exactly_one(store, publisher) -> None:
    coordinator = _coordinator(store, publisher)
    results = await asyncio.gather(
        coordinator.end_stream("th1", "r1", "stream_r1", "done"),
        coordinator.cancel_stream("th1", "r1", "stream_r1"),
        coordinator.stream_error("th1", "r1", "stream_r1", "ProviderError"),
    )
    assert sorted(results) == [False, False, True]
    assert len(publisher.events_for(thread_channel("th1"))) == 1


@pytest.mark.asyncio
async def test_error_event_carries_reason(store, publisher) -> None:
    coordinator = _coordinator(store, publisher)
    await coordinator.stream_token("th1", "r1", "stream_r1", "par")
    await coordinator.stream_error("th1", "r1", "stream_r1", "ProviderTimeoutError")
    last = publisher.events_for(thread_channel("th1"))[-1]
    assert last["event"] == EVENT_ERROR
    assert last["data"]["reason"] == "ProviderTimeoutError"
    assert last["data"]["seq"] == 2


@pytest.mark.asyncio
async def test_counter_is_dropped_but_done_flag_survives(store, publisher, clock) -> None:
    coordinator = _coordinator(store, publisher)
    await coordinator.stream_token("th1", "r1", "stream_r1", "a")
    await coordinator.end_stream("th1", "r1", "stream_r1", "a")
    assert await store.get("seq:stream_r1") is None
    assert await store.get("done:stream_r1") == "completed"

    clock.advance(301)
    assert await coordinator.is_finished("stream_r1") is None


@pytest.mark.asyncio
async def test_publish_failures_are_swallowed(store) -> None:
    class FailingPublisher:
        async def publish(self, channel, event, payload):
            raise ConnectionError("transport down")

    coordinator = StreamingCoordinator(store, FailingPublisher(), settings=Settings())
    assert await coordinator.stream_token("th1", "r1", "stream_r1", "a") == 1
    assert await coordinator.end_stream("th1", "r1", "stream_r1", "a") is True


@pytest.mark.asyncio
async def test_subscribers_receive_published_events(publisher) -> None:
    channel = thread_channel("th1")
    subscription = publisher.subscribe(channel, idle_timeout_s=0.05)
    # First pull registers the subscriber and times out idle.
    assert await subscription.__anext__() is None
    assert publisher.subscriber_count(channel) == 1

    await publisher.publish(channel, EVENT_TOKEN, {"seq": 1, "stream_id": "s"})
    envelope = await subscription.__anext__()
    assert envelope["data"]["seq"] == 1
    await subscription.aclose()
    assert publisher.subscriber_count(channel) == 0


@pytest.mark.asyncio
async def test_memory_history_keeps_only_recent_envelopes() -> None:
    publisher = InMemoryEventPublisher(history_size=3)
    channel = thread_channel("th1")
    for seq in range(1, 6):
        await publisher.publish(channel, EVENT_TOKEN, {"seq": seq, "stream_id": "s"})

    assert len(publisher.published) == 3
    assert [envelope["data"]["seq"] for envelope in publisher.events_for(channel)] == [3, 4, 5]


@pytest.mark.asyncio
async def test_memory_publisher_history_follows_settings(monkeypatch) -> None:
    monkeypatch.setenv("STREAM_HISTORY_SIZE", "7")
    get_settings.cache_clear()
    publisher = await get_event_publisher()
    assert publisher.published.maxlen == 7


def test_sequence_buffer_reorders_and_drops_duplicates() -> None:
    buffer = SequenceBuffer()
    assert buffer.push(_envelope(EVENT_TOKEN, 2)) == []
    assert buffer.push(_envelope(EVENT_TOKEN, 3)) == []
    assert buffer.pending("stream_r1") == 2

    released = buffer.push(_envelope(EVENT_TOKEN, 1))
    assert [item["data"]["seq"] for item in released] == [1, 2, 3]
    assert buffer.expected("stream_r1") == 4

    assert buffer.push(_envelope(EVENT_TOKEN, 2)) == []
    assert buffer.push(_envelope(EVENT_TOKEN, 4))[0]["data"]["seq"] == 4


def test_sequence_buffer_finishes_on_terminal_event() -> None:
    buffer = SequenceBuffer()
    buffer.push(_envelope(EVENT_TOKEN, 1))
    released = buffer.push(_envelope(EVENT_COMPLETED, 2))
    assert [item["event"] for item in released] == [EVENT_COMPLETED]
    assert buffer.is_finished("stream_r1") is True
    assert buffer.push(_envelope(EVENT_TOKEN, 3)) == []


def test_sequence_buffer_tracks_streams_independently() -> None:
    buffer = SequenceBuffer()
    assert len(buffer.push(_envelope(EVENT_TOKEN, 1, "stream_a"))) == 1
    assert buffer.push(_envelope(EVENT_TOKEN, 2, "stream_b")) == []
    assert len(buffer.push(_envelope(EVENT_TOKEN, 1, "stream_b"))) == 2


def test_sequence_buffer_restores_any_permutation() -> None:
    envelopes = [_envelope(EVENT_TOKEN, seq) for seq in range(1, 21)]
    shuffled = envelopes[:]
    random.Random(7).shuffle(shuffled)
    buffer = SequenceBuffer()
    released = [item for envelope in shuffled for item in buffer.push(envelope)]
    assert [item["data"]["seq"] for item in released] == list(range(1, 21))


@pytest.mark.asyncio
async def test_stream_reaches_subscribers_on_each_backend(backend_store, backend_publisher) -> None:
    coordinator = StreamingCoordinator(backend_store, backend_publisher, settings=Settings())
    channel = thread_channel("th1")
    subscription = backend_publisher.subscribe(channel, idle_timeout_s=0.05)
    assert await subscription.__anext__() is None

    for token in ("Hel", "lo"):
        await coordinator.stream_token("th1", "r1", "stream_r1", token)
    assert await coordinator.end_stream("th1", "r1", "stream_r1", "Hello") is True
    assert await coordinator.cancel_stream("th1", "r1", "stream_r1") is False

    received: list = []
    while not received or received[-1]["event"] not in TERMINAL_EVENTS:
        envelope = await asyncio.wait_for(subscription.__anext__(), timeout=5)
        if envelope is not None:
            received.append(envelope)
    await subscription.aclose()

    assert [envelope["data"]["seq"] for envelope in received] == [1, 2, 3]
    assert received[-1]["event"] == EVENT_COMPLETED
    assert received[-1]["data"]["full_response"] == "Hello"
    assert await coordinator.is_finished("stream_r1") == "completed"
    assert await backend_store.get("seq:stream_r1") is None
