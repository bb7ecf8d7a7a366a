"""
brain/llm_client.py — Abstract LLM Client

All provider implementations (OpenAI, Gemini) subclass BaseLLMClient and
implement generate(). Calls are made once with a network timeout; the
text transform service owns the fallback behaviour, so there is no retry
layer here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from julesbridge.brain.types import LLMConfig, LLMResponse, Message


class BaseLLMClient(ABC):
    """
    Abstract base for all LLM provider clients.

    Subclasses must implement:
      - generate() -> call the LLM, return normalised LLMResponse
    """

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        """Call the LLM and return a normalised response."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────────────────────


class LLMError(Exception):
    """Base exception for all LLM client errors."""
    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable, timed out, or authentication failed."""


class LLMRateLimitError(LLMError):
    """Rate limit hit."""
    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMInvalidRequestError(LLMError):
    """Bad request — invalid parameters or unsupported feature."""
