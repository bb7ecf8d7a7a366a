"""
brain/gemini_client.py — Google Gemini LLM Client

Supports gemini-2.0-flash, gemini-1.5-pro, gemini-1.5-flash, etc.
Uses the `google-genai` SDK (google.genai), not the deprecated
`google-generativeai` package.
"""

from __future__ import annotations

from typing import Optional

from google import genai
from google.genai import types as genai_types

from julesbridge.brain.llm_client import (
    BaseLLMClient,
    LLMConnectionError,
    LLMError,
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
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)


class GeminiClient(BaseLLMClient):
    """Google Gemini API client using the google-genai SDK."""

    def __init__(self, api_key: str):
        super().__init__(api_key=api_key)
        self._client = genai.Client(api_key=api_key)

    async def generate(self, messages: list[Message], config: LLMConfig) -> LLMResponse:
        system_instruction, contents = self._to_provider_messages(messages)

        log.debug("gemini.generate.start", model=config.model, message_count=len(messages))

        gen_config = genai_types.GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
            system_instruction=system_instruction,
            response_mime_type="application/json" if config.json_mode else None,
            http_options=genai_types.HttpOptions(timeout=int(config.timeout_seconds * 1000)),
        )

        try:
            response = await self._client.aio.models.generate_content(
                model=config.model,
                contents=contents,
                config=gen_config,
            )
        except Exception as e:
            self._raise_normalised(e)

        result = self._from_provider_response(response, config.model)
        log.debug("gemini.generate.complete", model=result.model, finish_reason=result.finish_reason)
        return result

    # ── Private helpers ───────────────────────────────────────────────────────

    def _to_provider_messages(
        self, messages: list[Message]
    ) -> tuple[Optional[str], list[genai_types.Content]]:
        """Translate internal Message list → Gemini Contents + system instruction."""
        system_instruction: Optional[str] = None
        contents: list[genai_types.Content] = []

        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_instruction = (
                    system_instruction + "\n\n" + msg.content
                ) if system_instruction else msg.content
            else:
                contents.append(genai_types.Content(
                    role="user" if msg.role == Role.USER else "model",
                    parts=[genai_types.Part(text=msg.content)],
                ))

        return system_instruction, contents

    def _from_provider_response(self, response, model_name: str) -> LLMResponse:
        """Translate Gemini GenerateContentResponse → internal LLMResponse."""
        finish_reason = FinishReason.STOP
        text_content: Optional[str] = None

        if response.candidates:
            candidate = response.candidates[0]
            if candidate.finish_reason and "MAX_TOKENS" in str(candidate.finish_reason).upper():
                finish_reason = FinishReason.LENGTH
            parts = candidate.content.parts if candidate.content else None
            text_content = "".join(p.text for p in parts or [] if p.text) or None

        usage = TokenUsage()
        if response.usage_metadata:
            um = response.usage_metadata
            usage = TokenUsage(
                input_tokens=um.prompt_token_count or 0,
                output_tokens=um.candidates_token_count or 0,
            )

        return LLMResponse(
            content=text_content,
            finish_reason=finish_reason,
            usage=usage,
            model=model_name,
            provider=Provider.GEMINI,
        )

    def _raise_normalised(self, exc: Exception) -> None:
        err_str = str(exc).lower()
        if "quota" in err_str or "rate" in err_str or "429" in err_str:
            raise LLMRateLimitError(str(exc), provider="gemini") from exc
        if "api key" in err_str or "403" in err_str or "401" in err_str:
            raise LLMConnectionError(str(exc), provider="gemini", status_code=403) from exc
        raise LLMError(str(exc), provider="gemini") from exc
