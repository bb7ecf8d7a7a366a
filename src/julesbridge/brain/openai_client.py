"""
brain/openai_client.py — OpenAI LLM Client

Supports GPT-4o family models and any OpenAI-compatible endpoint.
Handles JSON mode, token counting, and error normalisation.
"""

from __future__ import annotations

from typing import Optional

import openai
from openai import AsyncOpenAI

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
    TokenUsage,
)
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)


class OpenAIClient(BaseLLMClient):
    """
    OpenAI API client (also works with any OpenAI-compatible endpoint
    e.g. LiteLLM proxy, local vLLM, etc.).
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
    ):
        super().__init__(api_key=api_key, base_url=base_url)
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        log.debug("openai.generate.start", model=config.model, message_count=len(messages))

        try:
            response = await self._client.chat.completions.create(
                model=config.model,
                messages=[{"role": m.role.value, "content": m.content} for m in messages],
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                response_format=(
                    {"type": "json_object"} if config.json_mode else openai.NOT_GIVEN
                ),
                timeout=config.timeout_seconds,
            )
        except openai.AuthenticationError as e:
            raise LLMConnectionError(str(e), provider="openai", status_code=401) from e
        except openai.RateLimitError as e:
            raise LLMRateLimitError(str(e), provider="openai") from e
        except openai.BadRequestError as e:
            raise LLMInvalidRequestError(str(e), provider="openai") from e
        except openai.APIConnectionError as e:
            raise LLMConnectionError(str(e), provider="openai") from e
        except openai.APIError as e:
            raise LLMError(str(e), provider="openai", status_code=getattr(e, "status_code", None)) from e

        result = self._from_provider_response(response)
        log.debug(
            "openai.generate.complete",
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
        )
        return result

    # ── Private helpers ───────────────────────────────────────────────────────

    def _from_provider_response(self, response) -> LLMResponse:
        """Translate OpenAI ChatCompletion → internal LLMResponse."""
        choice = response.choices[0]
        finish_reason = {
            "stop": FinishReason.STOP,
            "length": FinishReason.LENGTH,
        }.get(choice.finish_reason or "stop", FinishReason.STOP)

        usage = TokenUsage(
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
        )
        return LLMResponse(
            content=choice.message.content,
            finish_reason=finish_reason,
            usage=usage,
            model=response.model,
            provider=Provider.OPENAI,
        )
