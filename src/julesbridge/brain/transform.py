"""
brain/transform.py — Text Transform Service

The two language-model capabilities the bridge uses:

  translate(text, target)        — translate between the user's language and
                                   the agent's language; returns the input
                                   unchanged when the model call fails.
  match_source(text, names)      — pick which source the user means, or ask a
                                   clarifying question; returns a fixed
                                   fallback clarification when the call or
                                   its JSON answer fails.

Failures are raised internally as TransformServiceError, logged, and
recovered here — callers never see them.
"""

from __future__ import annotations

import json
from typing import Optional

from pydantic import BaseModel, ValidationError

from julesbridge.brain.llm_client import BaseLLMClient, LLMError
from julesbridge.brain.types import LLMConfig, Message
from julesbridge.exceptions import TransformServiceError
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)

FALLBACK_CLARIFICATION = (
    "I couldn't work out which repository you meant. "
    "Reply with the number of the one I should use."
)

_TRANSLATE_PROMPT = (
    "Translate the user's text into {target}. Keep code, file paths, URLs, "
    "Markdown formatting and numbered lists exactly as they are. "
    "Reply with the translation only."
)

_MATCH_PROMPT = """\
You route requests for a coding agent to one of the user's repositories.

Repositories (zero-based index):
{catalog}

Decide which repository the user's message is about.
Reply with a JSON object and nothing else:
  {{"match_index": <int or null>, "reply": <string or null>}}

- If one repository is clearly meant, set match_index to its index and reply to null.
- Otherwise set match_index to null and put a short, friendly question in reply
  asking the user which repository to use, listing them numbered from 1.
"""


class SourceMatch(BaseModel):
    """Outcome of matching free text against the source list."""
    match_index: Optional[int] = None
    reply: Optional[str] = None


class TextTransformService:
    """Language-model backed translation and source matching."""

    def __init__(
        self,
        llm: BaseLLMClient,
        config: LLMConfig,
        user_language: str = "Korean",
        agent_language: str = "English",
    ):
        self._llm = llm
        self._config = config
        self.user_language = user_language
        self.agent_language = agent_language

    @classmethod
    def from_settings(cls, settings, llm: BaseLLMClient) -> "TextTransformService":
        return cls(
            llm=llm,
            config=LLMConfig(
                model=settings.llm.model,
                temperature=settings.llm.temperature,
                max_tokens=settings.llm.max_tokens,
                timeout_seconds=settings.llm.timeout_seconds,
            ),
            user_language=settings.translation.user_language,
            agent_language=settings.translation.agent_language,
        )

    # ── Translation ───────────────────────────────────────────────────────────

    async def translate(self, text: str, target_language: str) -> str:
        if not text.strip():
            return text
        try:
            return await self._translate(text, target_language)
        except TransformServiceError as e:
            log.warning("transform.translate_failed", target=target_language, error=str(e))
            return text

    async def to_user(self, text: str) -> str:
        return await self.translate(text, self.user_language)

    async def to_agent(self, text: str) -> str:
        return await self.translate(text, self.agent_language)

    async def _translate(self, text: str, target_language: str) -> str:
        content = await self._complete(
            [
                Message.system(_TRANSLATE_PROMPT.format(target=target_language)),
                Message.user(text),
            ],
            self._config,
        )
        return content.strip()

    # ── Source matching ───────────────────────────────────────────────────────

    async def match_source(self, instruction: str, source_names: list[str]) -> SourceMatch:
        try:
            return await self._match_source(instruction, source_names)
        except TransformServiceError as e:
            log.warning("transform.match_failed", error=str(e))
            return SourceMatch(match_index=None, reply=FALLBACK_CLARIFICATION)

    async def _match_source(self, instruction: str, source_names: list[str]) -> SourceMatch:
        catalog = "\n".join(f"{i}. {name}" for i, name in enumerate(source_names))
        content = await self._complete(
            [
                Message.system(_MATCH_PROMPT.format(catalog=catalog)),
                Message.user(instruction),
            ],
            self._config.model_copy(update={"json_mode": True}),
        )
        try:
            match = SourceMatch.model_validate(json.loads(_strip_fences(content)))
        except (json.JSONDecodeError, ValidationError) as e:
            raise TransformServiceError(f"Unparseable match answer: {content[:200]!r}") from e

        if match.match_index is not None and not (0 <= match.match_index < len(source_names)):
            raise TransformServiceError(f"match_index {match.match_index} out of range")
        if match.match_index is None and not (match.reply or "").strip():
            raise TransformServiceError("Neither match_index nor reply was given")
        return match

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _complete(self, messages: list[Message], config: LLMConfig) -> str:
        try:
            response = await self._llm.generate(messages, config)
        except LLMError as e:
            raise TransformServiceError(str(e)) from e
        if not response.content:
            raise TransformServiceError("Empty model response")
        return response.content


def _strip_fences(text: str) -> str:
    """Models sometimes wrap JSON in ```json fences despite being told not to."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    return text.strip()
