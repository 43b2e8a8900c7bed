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


class OpenAIChatProvider:
    name = "openai"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        if not self._settings.openai_api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the openai provider")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=float(self._settings.llm_timeout_s))
        return self._client

    def _payload(self, run: Run, messages: list[dict[str, str]], stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": run.model,
            "messages": messages,
            "max_tokens": self._settings.llm_max_tokens,
            "temperature": self._settings.llm_temperature,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def chat_completion(
        self,
        run: Run,
        messages: list[dict[str, str]],
        stream: bool = True,
    ) -> AsyncIterator[ProviderChunk]:
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self._settings.openai_api_key}"}
        parts: list[str] = []
        usage: Usage | None = None
        try:
            async with self._get_client().stream(
                "POST", url, json=self._payload(run, messages, stream), headers=headers
            ) as response:
                await raise_for_status(response, self.name)
                async for _, data in iter_sse_data(response):
                    if data.strip() == "[DONE]":
                        break
                    chunk = decode_frame(data, self.name)
                    if chunk.get("usage"):
                        usage = Usage(
                            input_tokens=int(chunk["usage"].get("prompt_tokens", 0)),
                            output_tokens=int(chunk["usage"].get("completion_tokens", 0)),
                        )
                    for choice in chunk.get("choices") or []:
                        content = (choice.get("delta") or {}).get("content")
                        if content:
                            parts.append(content)
                            yield ProviderChunk(type="token", content=content)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("openai stream timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"openai request failed: {type(exc).__name__}") from exc
        text = "".join(parts)
        if usage is None:
            logger.warning("llm_usage_missing provider=openai run_id=%s", run.id)
            usage = estimated_usage(messages, text)
        yield ProviderChunk(type="complete", content=text, usage=usage)
