"""
agent/router.py — Session Router

Owns every conversation's bridge state and decides where each inbound
message goes. A conversation is always in exactly one phase:

    NO_SESSION ──(match)──────────────► ACTIVE_SESSION
        │                                  ▲      │
        └─(ambiguous)─► PENDING_SELECTION ─┘      │
                          (valid number)          │
    NO_SESSION ◄──────────(session expired / reset)┘

The conversation → session binding, the pending source choice, and the
seen-set carried between monitor runs all live on one ConversationState
object; nothing outside the router touches them.

Concurrent inbound messages on the same conversation are not serialised
here. The Telegram transport hands updates over one at a time.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from julesbridge.agent.formatter import Notification
from julesbridge.agent.monitor import MonitorRegistry, SessionMonitor, Translator
from julesbridge.agent.resolver import SourceResolver, numbered_sources
from julesbridge.exceptions import NotFoundError, RemoteServiceError
from julesbridge.jules.client import JulesClient
from julesbridge.jules.types import Source
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)

NO_SOURCES_TEXT = (
    "I couldn't find any connected sources in your Jules account. "
    "Please connect a repository first."
)
EXPIRED_TEXT = (
    "⌛ That Jules session has expired. "
    "Send your request again to start a new one."
)
SENT_TEXT = "📨 Sent to Jules."


class ChatSink(Protocol):
    """One conversation's outbound channel."""

    async def send_text(self, text: str) -> None: ...

    async def send(self, notification: Notification) -> None: ...


MonitorFactory = Callable[[str, ChatSink, Optional[set[str]]], SessionMonitor]


class ConversationPhase(str, Enum):
    NO_SESSION = "no_session"
    PENDING_SELECTION = "pending_selection"
    ACTIVE_SESSION = "active_session"


@dataclass
class Session:
    session_id: str
    conversation_id: str
    source_name: str = ""
    created_at: float = field(default_factory=time.time)


@dataclass
class PendingSelection:
    candidates: list[Source]
    instruction: str


@dataclass
class ConversationState:
    """Session and pending selection are mutually exclusive by construction."""
    conversation_id: str
    session: Optional[Session] = None
    pending: Optional[PendingSelection] = None
    seen_ids: Optional[set[str]] = None
    monitor: Optional[SessionMonitor] = None

    @property
    def phase(self) -> ConversationPhase:
        if self.session is not None:
            return ConversationPhase.ACTIVE_SESSION
        if self.pending is not None:
            return ConversationPhase.PENDING_SELECTION
        return ConversationPhase.NO_SESSION

    def bind(self, session: Session, seen_ids: Optional[set[str]]) -> None:
        self.session = session
        self.pending = None
        self.seen_ids = seen_ids
        self.monitor = None

    def hold(self, pending: PendingSelection) -> None:
        self.session = None
        self.seen_ids = None
        self.monitor = None
        self.pending = pending

    def clear(self) -> None:
        self.session = None
        self.pending = None
        self.seen_ids = None
        self.monitor = None


class SessionRouter:
    """Per-conversation dispatcher between chat messages and Jules sessions."""

    def __init__(
        self,
        client: JulesClient,
        resolver: SourceResolver,
        monitors: MonitorRegistry,
        monitor_factory: MonitorFactory,
        to_agent: Optional[Translator] = None,
    ):
        self._client = client
        self._resolver = resolver
        self._monitors = monitors
        self._monitor_factory = monitor_factory
        self._to_agent = to_agent
        self._conversations: dict[str, ConversationState] = {}

    # ── Queries ───────────────────────────────────────────────────────────────

    def phase(self, conversation_id: str) -> ConversationPhase:
        return self._state(conversation_id).phase

    def session_for(self, conversation_id: str) -> Optional[Session]:
        return self._state(conversation_id).session

    def pending_for(self, conversation_id: str) -> Optional[PendingSelection]:
        return self._state(conversation_id).pending

    def is_monitoring(self, conversation_id: str) -> bool:
        session = self.session_for(conversation_id)
        return session is not None and self._monitors.is_running(session.session_id)

    # ── Inbound messages ──────────────────────────────────────────────────────

    async def handle_message(self, conversation_id: str, text: str, sink: ChatSink) -> None:
        state = self._state(conversation_id)
        phase = state.phase
        log.debug("router.message", conversation_id=conversation_id, phase=phase.value)

        if phase == ConversationPhase.ACTIVE_SESSION:
            await self._forward(state, text, sink)
        elif phase == ConversationPhase.PENDING_SELECTION:
            await self._select(state, text, sink)
        else:
            await self._begin(state, text, sink)

    async def approve_plan(self, session_id: str) -> None:
        """Unblock a plan-gated session. Raises RemoteServiceError on failure."""
        try:
            await self._client.approve_plan(session_id)
        except NotFoundError:
            for state in self._conversations.values():
                if state.session and state.session.session_id == session_id:
                    self._evict(state)
            raise

    async def resume(self, conversation_id: str, session_id: str, sink: ChatSink) -> bool:
        """
        Bind a conversation to an existing remote session. The monitor gets
        no seen-set, so it back-fills before reporting anything new.
        """
        try:
            await self._client.list_activities(session_id)
        except NotFoundError:
            await sink.send_text(f"I couldn't find a Jules session with id {session_id}.")
            return False
        except RemoteServiceError as e:
            await sink.send_text(_failure_text(e))
            return False

        state = self._state(conversation_id)
        self._evict(state)
        state.bind(Session(session_id=session_id, conversation_id=conversation_id), seen_ids=None)
        log.info("router.session_resumed", conversation_id=conversation_id, session_id=session_id)
        await sink.send_text(f"🔗 Following Jules session {session_id}. New activity will show up here.")
        self._start_monitor(state, sink)
        return True

    def reset(self, conversation_id: str) -> bool:
        """Forget the conversation's session or pending choice. True if anything was dropped."""
        state = self._state(conversation_id)
        had_state = state.phase != ConversationPhase.NO_SESSION
        self._evict(state)
        return had_state

    async def shutdown(self) -> None:
        await self._monitors.shutdown()

    # ── Phase handlers ────────────────────────────────────────────────────────

    async def _begin(self, state: ConversationState, text: str, sink: ChatSink) -> None:
        try:
            sources = await self._client.list_sources()
        except RemoteServiceError as e:
            await sink.send_text(_failure_text(e))
            return

        if not sources:
            await sink.send_text(NO_SOURCES_TEXT)
            return

        resolution = await self._resolver.resolve(text, sources)
        if resolution.matched:
            await self._create(state, sources[resolution.match_index], text, sink)
            return

        state.hold(PendingSelection(candidates=sources, instruction=text))
        log.info(
            "router.pending_selection",
            conversation_id=state.conversation_id,
            candidates=len(sources),
        )
        await sink.send_text(resolution.reply)

    async def _select(self, state: ConversationState, text: str, sink: ChatSink) -> None:
        pending = state.pending
        try:
            choice = int(text.strip())
        except ValueError:
            choice = 0

        if not 1 <= choice <= len(pending.candidates):
            await sink.send_text(
                f"Please reply with a number from 1 to {len(pending.candidates)}:\n\n"
                f"{numbered_sources(pending.candidates)}"
            )
            return

        state.clear()
        await self._create(state, pending.candidates[choice - 1], pending.instruction, sink)

    async def _create(
        self, state: ConversationState, source: Source, instruction: str, sink: ChatSink
    ) -> None:
        prompt = await self._to_agent(instruction) if self._to_agent else instruction
        try:
            remote = await self._client.create_session(source, prompt)
        except RemoteServiceError as e:
            await sink.send_text(_failure_text(e))
            return

        session = Session(
            session_id=remote.session_id,
            conversation_id=state.conversation_id,
            source_name=source.name,
        )
        # A brand-new session has no history worth hiding
        state.bind(session, seen_ids=set())
        log.info(
            "router.session_created",
            conversation_id=state.conversation_id,
            session_id=session.session_id,
            source=source.name,
        )
        await sink.send_text(
            f"🚀 Started a Jules session on {source.display_name}. I'll post updates here."
        )
        self._start_monitor(state, sink)

    async def _forward(self, state: ConversationState, text: str, sink: ChatSink) -> None:
        session = state.session
        prompt = await self._to_agent(text) if self._to_agent else text
        try:
            await self._client.send_message(session.session_id, prompt)
        except NotFoundError:
            log.info(
                "router.session_expired",
                conversation_id=state.conversation_id,
                session_id=session.session_id,
            )
            self._evict(state)
            await sink.send_text(EXPIRED_TEXT)
            return
        except RemoteServiceError as e:
            await sink.send_text(_failure_text(e))
            return

        await sink.send_text(SENT_TEXT)
        self._start_monitor(state, sink)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _state(self, conversation_id: str) -> ConversationState:
        conversation_id = str(conversation_id)
        state = self._conversations.get(conversation_id)
        if state is None:
            state = self._conversations[conversation_id] = ConversationState(conversation_id)
        return state

    def _start_monitor(self, state: ConversationState, sink: ChatSink) -> None:
        previous = state.monitor
        if state.seen_ids is None and previous is not None and previous.backfilled:
            # adopt the set only once a back-fill has completed
            state.seen_ids = previous.seen_ids
        monitor = self._monitor_factory(state.session.session_id, sink, state.seen_ids)
        state.monitor = monitor
        self._monitors.start(monitor)

    def _evict(self, state: ConversationState) -> None:
        if state.session is not None:
            self._monitors.cancel(state.session.session_id)
        state.clear()


def _failure_text(error: RemoteServiceError) -> str:
    if error.status:
        return f"⚠️ Jules couldn't handle that request (HTTP {error.status}). Please try again."
    return "⚠️ I couldn't reach Jules just now. Please try again in a moment."
