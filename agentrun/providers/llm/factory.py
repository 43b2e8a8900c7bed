from __future__ import annotations

from agentrun.core.config import get_settings
from agentrun.core.errors import ProviderConfigError
from agentrun.providers.llm.anthropic_messages import AnthropicMessagesProvider
from agentrun.providers.llm.base import LLMProvider
from agentrun.providers.llm.fake import FakeLLMProvider
from agentrun.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider(name: str | None = None) -> LLMProvider:
    # Adapters validate credentials on construction so misconfiguration fails fast.
    provider = (name or get_settings().llm_provider or "openai").lower()
    if provider == "fake":
        return FakeLLMProvider()
    if provider == "openai":
        return OpenAIChatProvider()
    if provider == "anthropic":
        return AnthropicMessagesProvider()
    raise ProviderConfigError(f"unknown llm provider: {provider}")
