from __future__ import annotations

from typing import AsyncIterator

from agentrun.domain.models import Run
from agentrun.providers.llm.base import ProviderChunk, estimated_usage


class FakeLLMProvider:
    name = "fake"

    def __init__(
        self,
        response: str = "This is a fake response.",
        *,
        fail_with: Exception | None = None,
        fail_after: int = 0,
    ) -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self._fail_with = fail_with
        self._fail_after = fail_after
        self.calls: list[list[dict[str, str]]] = []

    async def chat_completion(
        self,
        run: Run,
        messages: list[dict[str, str]],
        stream: bool = True,
    ) -> AsyncIterator[ProviderChunk]:
        self.calls.append(messages)
        emitted: list[str] = []
        for index, word in enumerate(self._response.split()):
            if self._fail_with is not None and index >= self._fail_after:
                raise self._fail_with
            token = f"{word} "
            emitted.append(token)
            yield ProviderChunk(type="token", content=token)
        if self._fail_with is not None:
            raise self._fail_with
        text = "".join(emitted)
        yield ProviderChunk(type="complete", content=text, usage=estimated_usage(messages, text))
