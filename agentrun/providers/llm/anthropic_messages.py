from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from agentrun.core.config import get_settings
from agentrun.core.errors import ProviderConfigError, ProviderError, ProviderTimeoutError
from agentrun.domain.models import Run
from agentrun.providers.llm.base import (
    ProviderChunk,
    Usage,
    decode_frame,
    estimated_usage,
    iter_sse_data,
    raise_for_status,
)


logger = logging.getLogger(__name__)


def split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Move system turns into the dedicated field and merge same-role neighbours.

    The messages API wants a user turn first and strictly alternating roles.
    """
    system_parts: list[str] = []
    turns: list[dict[str, str]] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            system_parts.append(content)
            continue
        role = "assistant" if role == "assistant" else "user"
        if turns and turns[-1]["role"] == role:
            turns[-1] = {"role": role, "content": f"{turns[-1]['content']}\n\n{content}"}
        else:
            turns.append({"role": role, "content": content})
    if turns and turns[0]["role"] != "user":
        turns.insert(0, {"role": "user", "content": "(conversation continues)"})
    return "\n\n".join(system_parts), turns


class AnthropicMessagesProvider:
    name = "anthropic"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        if not self._settings.anthropic_api_key:
            raise ProviderConfigError("ANTHROPIC_API_KEY is required for the anthropic provider")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=float(self._settings.llm_timeout_s))
        return self._client

    def _payload(self, run: Run, messages: list[dict[str, str]], stream: bool) -> dict[str, Any]:
        system, turns = split_system(messages)
        payload: dict[str, Any] = {
            "model": run.model,
            "messages": turns,
            "max_tokens": self._settings.llm_max_tokens,
            "temperature": self._settings.llm_temperature,
            "stream": stream,
        }
        if system:
            payload["system"] = system
        return payload

    async def chat_completion(
        self,
        run: Run,
        messages: list[dict[str, str]],
        stream: bool = True,
    ) -> AsyncIterator[ProviderChunk]:
        url = f"{self._settings.anthropic_base_url.rstrip('/')}/messages"
        headers = {
            "x-api-key": self._settings.anthropic_api_key or "",
            "anthropic-version": self._settings.anthropic_version,
        }
        parts: list[str] = []
        input_tokens: int | None = None
        output_tokens: int | None = None
        try:
            async with self._get_client().stream(
                "POST", url, json=self._payload(run, messages, stream), headers=headers
            ) as response:
                await raise_for_status(response, self.name)
                async for event, data in iter_sse_data(response):
                    body = decode_frame(data, self.name)
                    kind = body.get("type") or event
                    if kind == "message_start":
                        usage = (body.get("message") or {}).get("usage") or {}
                        input_tokens = usage.get("input_tokens", input_tokens)
                    elif kind == "content_block_delta":
                        delta = body.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            parts.append(delta["text"])
                            yield ProviderChunk(type="token", content=delta["text"])
                    elif kind == "message_delta":
                        usage = body.get("usage") or {}
                        output_tokens = usage.get("output_tokens", output_tokens)
                    elif kind == "error":
                        error = body.get("error") or {}
                        raise ProviderError(f"anthropic stream error: {error.get('type', 'unknown')}")
                    elif kind == "message_stop":
                        break
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("anthropic stream timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"anthropic request failed: {type(exc).__name__}") from exc
        text = "".join(parts)
        if input_tokens is None or output_tokens is None:
            logger.warning("llm_usage_missing provider=anthropic run_id=%s", run.id)
            fallback = estimated_usage(messages, text)
            input_tokens = fallback.input_tokens if input_tokens is None else input_tokens
            output_tokens = fallback.output_tokens if output_tokens is None else output_tokens
        yield ProviderChunk(
            type="complete",
            content=text,
            usage=Usage(input_tokens=int(input_tokens), output_tokens=int(output_tokens)),
        )
