from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Protocol

import httpx

from agentrun.core.errors import ProviderAuthError, ProviderError
from agentrun.domain.models import Run


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class ProviderChunk:
    # Incremental "token" chunks, then exactly one "complete" chunk carrying usage.
    type: Literal["token", "complete"]
    content: str
    usage: Usage | None = None


class LLMProvider(Protocol):
    name: str

    def chat_completion(
        self,
        run: Run,
        messages: list[dict[str, str]],
        stream: bool = True,
    ) -> AsyncIterator[ProviderChunk]:
        ...


def estimated_usage(messages: list[dict[str, str]], completion: str) -> Usage:
    # Same four-bytes-per-token heuristic as the context builder; used when a provider omits usage.
    prompt_bytes = sum(len(message.get("content", "").encode("utf-8")) for message in messages)
    return Usage(
        input_tokens=math.ceil(prompt_bytes / 4),
        output_tokens=math.ceil(len(completion.encode("utf-8")) / 4),
    )


async def raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    if response.status_code in {401, 403}:
        raise ProviderAuthError(f"{provider} rejected credentials ({response.status_code})")
    raise ProviderError(f"{provider} error: {response.status_code}", status_code=response.status_code)


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[tuple[str | None, str]]:
    """Yield ``(event, data)`` pairs from a server-sent event stream."""
    event: str | None = None
    data_lines: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event, data_lines = None, []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    if data_lines:
        yield event, "\n".join(data_lines)


def decode_frame(data: str, provider: str) -> dict[str, Any]:
    # A truncated or garbled frame is an upstream fault, retryable like any other provider error.
    try:
        body = json.loads(data)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"{provider} sent a malformed stream frame") from exc
    if not isinstance(body, dict):
        raise ProviderError(f"{provider} sent a non-object stream frame")
    return body
