"""
agent/resolver.py — Source Resolver

Decides which connected repository a free-text request is about. A single
connected source is matched without asking the model; otherwise the text
transform service either names a source or supplies the clarifying
question to send back. Never raises.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from julesbridge.brain.transform import FALLBACK_CLARIFICATION, TextTransformService
from julesbridge.jules.types import Source
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class Resolution:
    match_index: Optional[int]
    reply: str = ""

    @property
    def matched(self) -> bool:
        return self.match_index is not None


class SourceResolver:

    def __init__(self, transform: TextTransformService):
        self._transform = transform

    async def resolve(self, instruction: str, sources: list[Source]) -> Resolution:
        if not sources:
            return Resolution(match_index=None, reply=FALLBACK_CLARIFICATION)
        # One source leaves nothing to choose between
        if len(sources) == 1:
            return Resolution(match_index=0)

        match = await self._transform.match_source(
            instruction, [s.display_name for s in sources]
        )
        if match.match_index is not None and 0 <= match.match_index < len(sources):
            log.info("resolver.matched", source=sources[match.match_index].name)
            return Resolution(match_index=match.match_index)

        log.info("resolver.ambiguous", candidates=len(sources))
        reply = (match.reply or "").strip()
        if not reply or reply == FALLBACK_CLARIFICATION:
            reply = f"{FALLBACK_CLARIFICATION}\n\n{numbered_sources(sources)}"
        return Resolution(match_index=None, reply=reply)


def numbered_sources(sources: list[Source]) -> str:
    return "\n".join(f"{i}. {s.display_name}" for i, s in enumerate(sources, start=1))
