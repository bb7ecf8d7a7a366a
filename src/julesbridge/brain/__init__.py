"""
brain/__init__.py — JulesBridge LLM Brain
"""

from __future__ import annotations

from typing import Optional

from julesbridge.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from julesbridge.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    Provider,
    Role,
    TokenUsage,
)

__all__ = [
    "LLMClientFactory",
    "BaseLLMClient",
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMInvalidRequestError",
    "Message",
    "LLMConfig",
    "LLMResponse",
    "TokenUsage",
    "Role",
    "Provider",
    "FinishReason",
]


class LLMClientFactory:

    @staticmethod
    def create(
        provider: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> BaseLLMClient:

        provider = provider.lower().strip()

        if provider == "openai":
            if not api_key:
                raise LLMConnectionError("OPENAI_API_KEY is required", provider="openai")
            from julesbridge.brain.openai_client import OpenAIClient
            return OpenAIClient(api_key=api_key, base_url=base_url)

        elif provider == "gemini":
            if not api_key:
                raise LLMConnectionError("GEMINI_API_KEY is required", provider="gemini")
            from julesbridge.brain.gemini_client import GeminiClient
            return GeminiClient(api_key=api_key)

        else:
            raise ValueError(
                f"Unknown LLM provider: '{provider}'. Valid options: openai, gemini"
            )

    @staticmethod
    def from_settings(settings) -> BaseLLMClient:
        """Create the configured provider's client from Settings."""
        return LLMClientFactory.create(
            provider=settings.llm.provider,
            api_key=settings.llm_api_key,
        )
