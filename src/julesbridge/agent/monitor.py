"""
agent/monitor.py — Session Monitor

Polls one Jules session's activity feed and turns new activities into chat
notifications.

States:
    BACKFILLING ──► POLLING ──► TERMINATED
    (only when no seen-set was supplied)

  - BACKFILLING walks the whole feed once and marks every activity as seen
    without emitting anything, so resuming an older session doesn't replay
    its history. If that walk fails it is retried on the next tick.
  - POLLING fetches from the last known page cursor every poll interval,
    emits unseen agent activities in feed order, and sends a filler line
    when the agent has been silent for longer than the idle threshold while
    it is expected to be working.
  - TERMINATED is reached after a session-completed (or failed)
    activity, or when the wall-clock budget runs out. Fetch errors are
    never terminal; they count as an empty page.

The waiting flag starts true and follows the kind of the last agent activity
observed, whether or not it produced a notification:
    progress → true    plan / outputs / message → false

MonitorRegistry tracks one running task per session id; starting a monitor
for a session that already has one cancels the old task first.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Optional, Protocol

from julesbridge.agent.formatter import Notification, NotificationKind, format_activity
from julesbridge.exceptions import PollError, RemoteServiceError
from julesbridge.jules.client import JulesClient
from julesbridge.jules.types import Activity, Originator, PayloadKind
from julesbridge.observability.logger import get_logger

log = get_logger(__name__)

Translator = Callable[[str], Awaitable[str]]

TIMEOUT_NOTICE = (
    "⏸️ I've stopped checking on this session for now. "
    "Send another message to pick it back up."
)

_DEFAULT_FILLERS = ("Still working on it…",)


class NotificationSink(Protocol):
    """Where a monitor delivers notifications (one chat conversation)."""

    async def send(self, notification: Notification) -> None: ...


class MonitorState(str, Enum):
    BACKFILLING = "backfilling"
    POLLING = "polling"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class MonitorResult:
    session_id: str
    reason: TerminationReason
    emitted: int
    seen: int


_WAITING_AFTER: dict[PayloadKind, bool] = {
    PayloadKind.PROGRESS: True,
    PayloadKind.PLAN: False,
    PayloadKind.OUTPUTS: False,
    PayloadKind.MESSAGE: False,
}

_TERMINAL_KINDS: dict[PayloadKind, TerminationReason] = {
    PayloadKind.COMPLETED: TerminationReason.COMPLETED,
    PayloadKind.FAILED: TerminationReason.FAILED,
}


class SessionMonitor:
    """
    Watches one session for one run. Instances are never shared between
    tasks; the seen-set passed in is mutated in place so the owner can hand
    it to the next run.
    """

    def __init__(
        self,
        client: JulesClient,
        session_id: str,
        sink: NotificationSink,
        seen_ids: Optional[set[str]] = None,
        translator: Optional[Translator] = None,
        poll_interval: float = 5.0,
        timeout: float = 600.0,
        idle_threshold: float = 60.0,
        filler_phrases: Optional[list[str]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._client = client
        self._session_id = session_id
        self._sink = sink
        self._seen: set[str] = seen_ids if seen_ids is not None else set()
        self._translator = translator
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._idle_threshold = idle_threshold
        self._fillers = list(filler_phrases or _DEFAULT_FILLERS)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._state = MonitorState.POLLING if seen_ids is not None else MonitorState.BACKFILLING
        self._waiting = True
        self._cursor: Optional[str] = None
        self._started_at: Optional[float] = None
        self._last_activity_at: float = clock()
        self._pending_termination: Optional[TerminationReason] = None
        self._reason: Optional[TerminationReason] = None
        self.emitted = 0

    @classmethod
    def from_settings(
        cls,
        settings,
        client: JulesClient,
        session_id: str,
        sink: NotificationSink,
        seen_ids: Optional[set[str]] = None,
        translator: Optional[Translator] = None,
    ) -> "SessionMonitor":
        cfg = settings.monitor
        return cls(
            client=client,
            session_id=session_id,
            sink=sink,
            seen_ids=seen_ids,
            translator=translator,
            poll_interval=cfg.poll_interval_seconds,
            timeout=cfg.timeout_seconds,
            idle_threshold=cfg.idle_threshold_seconds,
            filler_phrases=cfg.filler_phrases,
        )

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def waiting(self) -> bool:
        return self._waiting

    @property
    def seen_ids(self) -> set[str]:
        return self._seen

    @property
    def backfilled(self) -> bool:
        """True once the seen-set covers the whole history."""
        return self._state != MonitorState.BACKFILLING

    @property
    def reason(self) -> Optional[TerminationReason]:
        return self._reason

    # ── Run loop ──────────────────────────────────────────────────────────────

    async def run(self) -> MonitorResult:
        """Poll until the session completes or the time budget is spent."""
        self._started_at = self._clock()
        self._last_activity_at = self._started_at
        log.info(
            "monitor.started",
            session_id=self._session_id,
            resuming=self._state == MonitorState.POLLING,
            seen=len(self._seen),
        )

        while self._state != MonitorState.TERMINATED:
            if self._clock() - self._started_at >= self._timeout:
                self._terminate(TerminationReason.TIMEOUT)
                await self._emit(Notification(kind=NotificationKind.NOTICE, text=TIMEOUT_NOTICE))
                break

            try:
                await self._tick()
            except Exception as e:
                log.exception(
                    "monitor.tick_failed",
                    session_id=self._session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

            if self._state == MonitorState.TERMINATED:
                break
            await self._sleep(self._poll_interval)

        result = MonitorResult(
            session_id=self._session_id,
            reason=self._reason or TerminationReason.TIMEOUT,
            emitted=self.emitted,
            seen=len(self._seen),
        )
        log.info(
            "monitor.terminated",
            session_id=self._session_id,
            reason=result.reason.value,
            emitted=result.emitted,
        )
        return result

    async def backfill(self) -> int:
        """
        Walk the entire feed from the first page, mark everything seen, emit
        nothing. Returns the number of activities walked.
        """
        activities = await self._walk(None)
        self._seen.update(a.id for a in activities)
        if self._state == MonitorState.BACKFILLING:
            self._state = MonitorState.POLLING
        log.debug("monitor.backfilled", session_id=self._session_id, count=len(activities))
        return len(activities)

    async def poll_once(self) -> None:
        """One tick: fetch, emit what's new, maybe send a filler line."""
        try:
            activities = await self._walk(self._cursor)
        except RemoteServiceError as e:
            err = PollError(self._session_id, e)
            log.warning("monitor.poll_failed", session_id=self._session_id, status=e.status, error=str(err))
            activities = []

        observed = False
        for activity in activities:
            if activity.id in self._seen:
                continue
            self._seen.add(activity.id)
            observed = True
            await self._handle(activity)

        now = self._clock()
        if observed:
            self._last_activity_at = now
        elif self._waiting and now - self._last_activity_at >= self._idle_threshold:
            await self._emit(
                Notification(kind=NotificationKind.FILLER, text=self._rng.choice(self._fillers))
            )
            self._last_activity_at = now

        if self._pending_termination is not None:
            self._terminate(self._pending_termination)

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _tick(self) -> None:
        if self._state != MonitorState.BACKFILLING:
            await self.poll_once()
            return
        try:
            await self.backfill()
        except RemoteServiceError as e:
            log.warning(
                "monitor.backfill_failed",
                session_id=self._session_id,
                status=e.status,
                error=str(e),
            )

    async def _walk(self, start_token: Optional[str]) -> list[Activity]:
        """
        Fetch from `start_token` through the last available page. Leaves the
        cursor on the last page so the next tick starts there.
        """
        activities: list[Activity] = []
        token = start_token
        while True:
            page = await self._client.list_activities(self._session_id, page_token=token)
            activities.extend(page.activities)
            if not page.next_page_token or page.next_page_token == token:
                self._cursor = token
                return activities
            token = page.next_page_token

    async def _handle(self, activity: Activity) -> None:
        if activity.originator == Originator.USER:
            return
        kind = activity.kind
        if kind in _WAITING_AFTER:
            self._waiting = _WAITING_AFTER[kind]
        if kind in _TERMINAL_KINDS:
            self._pending_termination = _TERMINAL_KINDS[kind]

        notification = format_activity(activity)
        if notification is None:
            return
        if kind == PayloadKind.PLAN:
            notification.approval_session_id = self._session_id

        await self._emit(notification)

    async def _emit(self, notification: Notification) -> None:
        if self._translator is not None and notification.text:
            try:
                notification.text = await self._translator(notification.text)
            except Exception as e:
                log.warning(
                    "monitor.translate_failed",
                    session_id=self._session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        try:
            await self._sink.send(notification)
            self.emitted += 1
        except Exception as e:
            log.warning(
                "monitor.send_failed",
                session_id=self._session_id,
                kind=notification.kind.value,
                error=str(e),
            )

    def _terminate(self, reason: TerminationReason) -> None:
        self._state = MonitorState.TERMINATED
        self._reason = reason


# ─────────────────────────────────────────────────────────────────────────────
# Task registry
# ─────────────────────────────────────────────────────────────────────────────


class MonitorRegistry:
    """One monitor task per session id; a new start supersedes the old one."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, monitor: SessionMonitor) -> asyncio.Task:
        session_id = monitor.session_id
        if self.cancel(session_id):
            log.info("monitor.superseded", session_id=session_id)
        task = asyncio.create_task(monitor.run(), name=f"monitor:{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(partial(self._on_done, session_id))
        return task

    def cancel(self, session_id: str) -> bool:
        task = self._tasks.pop(session_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if task.cancelled():
            log.debug("monitor.cancelled", session_id=session_id)
            return
        exc = task.exception()
        if exc is not None:
            log.error(
                "monitor.crashed",
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )
