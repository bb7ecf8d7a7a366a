"""
tests/unit/test_monitor.py — Session monitor and task registry

The monitor runs against FakeJulesClient with a manual clock, so no test
here ever really sleeps.

Run with:
    pytest tests/unit/test_monitor.py -v
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from julesbridge.agent.formatter import NotificationKind
from julesbridge.agent.monitor import (
    TIMEOUT_NOTICE,
    MonitorRegistry,
    MonitorState,
    SessionMonitor,
    TerminationReason,
)
from julesbridge.config.settings import Settings
from julesbridge.exceptions import RemoteServiceError
from julesbridge.jules.client import JulesClient

from fakes import (
    FakeClock,
    FakeJulesClient,
    RecordingSink,
    activity,
    completed,
    plan,
    progress,
)


def make_monitor(client, sink, clock=None, seen_ids=None, **kwargs) -> SessionMonitor:
    clock = clock or FakeClock()
    kwargs.setdefault("poll_interval", 5.0)
    kwargs.setdefault("timeout", 600.0)
    kwargs.setdefault("idle_threshold", 60.0)
    return SessionMonitor(
        client=client,
        session_id="s-1",
        sink=sink,
        seen_ids=seen_ids,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


def outputs(activity_id: str):
    return activity(
        activity_id,
        outputs=[{"pullRequest": {"url": "https://github.com/o/r/pull/1", "title": "Fix"}}],
    )


# ─────────────────────────────────────────────────────────────────────────────
# Waiting flag and termination
# ─────────────────────────────────────────────────────────────────────────────


class TestWaitingFlag:
    @pytest.mark.asyncio
    async def test_progress_plan_outputs_completed_sequence(self):
        client = FakeJulesClient(pages=[[]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, seen_ids=set())
        assert monitor.waiting is True

        client.pages[0].append(progress("a1"))
        await monitor.poll_once()
        assert monitor.waiting is True

        client.pages[0].append(plan("a2", "Do it"))
        await monitor.poll_once()
        assert monitor.waiting is False

        client.pages[0].append(outputs("a3"))
        await monitor.poll_once()
        assert monitor.waiting is False
        assert monitor.state == MonitorState.POLLING

        client.pages[0].append(completed("a4"))
        await monitor.poll_once()
        assert monitor.state == MonitorState.TERMINATED
        assert monitor.reason == TerminationReason.COMPLETED
        assert sink.kinds() == [
            NotificationKind.PROGRESS,
            NotificationKind.PLAN,
            NotificationKind.OUTPUTS,
            NotificationKind.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_run_stops_after_completion(self):
        client = FakeJulesClient(pages=[[progress("a1"), plan("a2", "x"), outputs("a3"), completed("a4")]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, seen_ids=set())

        result = await monitor.run()

        assert result.reason == TerminationReason.COMPLETED
        assert result.emitted == 4
        assert sink.activity_ids() == ["a1", "a2", "a3", "a4"]
        assert len(client.activity_calls) == 1

    @pytest.mark.asyncio
    async def test_failed_session_terminates(self):
        client = FakeJulesClient(pages=[[activity("a1", sessionFailed={"reason": "oops"})]])
        sink = RecordingSink()
        result = await make_monitor(client, sink, seen_ids=set()).run()
        assert result.reason == TerminationReason.FAILED
        assert sink.kinds() == [NotificationKind.FAILED]

    @pytest.mark.asyncio
    async def test_plan_carries_session_for_approval(self):
        client = FakeJulesClient(pages=[[plan("a1", "Step one")]])
        sink = RecordingSink()
        await make_monitor(client, sink, seen_ids=set()).poll_once()
        assert sink.notifications[0].approval_session_id == "s-1"
        assert sink.notifications[0].needs_approval_control

    @pytest.mark.asyncio
    async def test_outputs_without_pull_request_stops_waiting(self):
        clock = FakeClock()
        client = FakeJulesClient(pages=[[progress("a1"), activity("a2", outputs=[{}])]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, clock=clock, seen_ids=set())

        await monitor.poll_once()
        assert monitor.waiting is False

        clock.now += 300
        await monitor.poll_once()
        assert sink.kinds() == [NotificationKind.PROGRESS]

    @pytest.mark.asyncio
    async def test_null_failure_body_still_terminates(self):
        client = FakeJulesClient(pages=[[activity("a1", sessionFailed=None)]])
        sink = RecordingSink()
        result = await make_monitor(client, sink, seen_ids=set()).run()
        assert result.reason == TerminationReason.FAILED


# ─────────────────────────────────────────────────────────────────────────────
# Back-fill, de-duplication and ordering
# ─────────────────────────────────────────────────────────────────────────────


class TestBackfill:
    @pytest.mark.asyncio
    async def test_backfill_marks_everything_seen_and_emits_nothing(self):
        client = FakeJulesClient(pages=[[progress("a1"), progress("a2")], [progress("a3")]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink)
        assert monitor.state == MonitorState.BACKFILLING

        walked = await monitor.backfill()

        assert walked == 3
        assert monitor.seen_ids == {"a1", "a2", "a3"}
        assert monitor.state == MonitorState.POLLING
        assert sink.notifications == []
        assert client.activity_calls == [None, "p1"]

    @pytest.mark.asyncio
    async def test_backfill_is_idempotent(self):
        client = FakeJulesClient(pages=[[progress("a1")], [progress("a2")]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink)

        await monitor.backfill()
        first = set(monitor.seen_ids)
        await monitor.backfill()

        assert monitor.seen_ids == first
        assert sink.notifications == []

    @pytest.mark.asyncio
    async def test_only_activity_after_backfill_is_emitted(self):
        client = FakeJulesClient(pages=[[progress("a1")], [progress("a2")]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink)
        await monitor.backfill()

        await monitor.poll_once()
        assert sink.notifications == []

        client.pages[1].append(progress("a3"))
        await monitor.poll_once()
        assert sink.activity_ids() == ["a3"]
        # polling resumes from the last page the walk reached
        assert client.activity_calls[-2:] == ["p1", "p1"]

    @pytest.mark.asyncio
    async def test_seen_ids_supplied_skip_backfill(self):
        monitor = make_monitor(FakeJulesClient(), RecordingSink(), seen_ids={"a1"})
        assert monitor.state == MonitorState.POLLING

    @pytest.mark.asyncio
    async def test_backfill_failure_is_retried_on_next_tick(self):
        client = FakeJulesClient(pages=[[progress("a1")]])
        client.fail_activities = RemoteServiceError(503, "unavailable")
        clock = FakeClock()
        sink = RecordingSink()
        monitor = make_monitor(client, sink, clock=clock, timeout=12.0)

        async def recover(seconds):
            await clock.sleep(seconds)
            client.fail_activities = None

        monitor._sleep = recover
        result = await monitor.run()

        assert result.reason == TerminationReason.TIMEOUT
        assert monitor.seen_ids == {"a1"}
        # the historical activity was never replayed
        assert sink.kinds() == [NotificationKind.NOTICE]


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_refetched_activities_are_not_emitted_twice(self):
        client = FakeJulesClient(pages=[[progress("a1"), progress("a2")]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, seen_ids=set())

        await monitor.poll_once()
        await monitor.poll_once()

        assert sink.activity_ids() == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_feed_order_preserved_across_pages(self):
        client = FakeJulesClient(pages=[[progress("a1"), progress("a2")], [progress("a3")]])
        sink = RecordingSink()
        await make_monitor(client, sink, seen_ids=set()).poll_once()
        assert sink.activity_ids() == ["a1", "a2", "a3"]

    @pytest.mark.asyncio
    async def test_user_activities_are_not_echoed(self):
        client = FakeJulesClient(pages=[[
            activity("u1", originator="user", agentMessaged={"agentMessage": "mine"}),
            progress("a1"),
        ]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, seen_ids=set())
        await monitor.poll_once()
        assert sink.activity_ids() == ["a1"]
        assert "u1" in monitor.seen_ids

    @pytest.mark.asyncio
    async def test_seen_set_is_shared_with_caller(self):
        seen: set[str] = set()
        client = FakeJulesClient(pages=[[progress("a1")]])
        await make_monitor(client, RecordingSink(), seen_ids=seen).poll_once()
        assert seen == {"a1"}


# ─────────────────────────────────────────────────────────────────────────────
# Filler lines, timeouts and failures
# ─────────────────────────────────────────────────────────────────────────────


class TestFiller:
    @pytest.mark.asyncio
    async def test_filler_after_idle_threshold_while_waiting(self):
        clock = FakeClock()
        sink = RecordingSink()
        monitor = make_monitor(
            FakeJulesClient(), sink, clock=clock, seen_ids=set(),
            filler_phrases=["Still on it"],
        )

        await monitor.poll_once()
        assert sink.notifications == []

        clock.now += 60
        await monitor.poll_once()
        assert sink.kinds() == [NotificationKind.FILLER]
        assert sink.notifications[0].text == "Still on it"

        # idle timer restarts after a filler
        await monitor.poll_once()
        assert len(sink.notifications) == 1

    @pytest.mark.asyncio
    async def test_no_filler_while_waiting_for_the_user(self):
        clock = FakeClock()
        client = FakeJulesClient(pages=[[plan("a1", "x")]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, clock=clock, seen_ids=set())

        await monitor.poll_once()
        clock.now += 300
        await monitor.poll_once()

        assert sink.kinds() == [NotificationKind.PLAN]

    @pytest.mark.asyncio
    async def test_new_activity_resets_idle_timer(self):
        clock = FakeClock()
        client = FakeJulesClient(pages=[[]])
        sink = RecordingSink()
        monitor = make_monitor(client, sink, clock=clock, seen_ids=set())

        clock.now += 50
        client.pages[0].append(progress("a1"))
        await monitor.poll_once()
        clock.now += 30
        await monitor.poll_once()

        assert sink.kinds() == [NotificationKind.PROGRESS]


class TestTimeoutAndErrors:
    @pytest.mark.asyncio
    async def test_timeout_emits_notice(self):
        clock = FakeClock()
        client = FakeJulesClient()
        sink = RecordingSink()
        monitor = make_monitor(
            client, sink, clock=clock, seen_ids=set(), timeout=20.0, idle_threshold=1000.0
        )

        result = await monitor.run()

        assert result.reason == TerminationReason.TIMEOUT
        assert monitor.state == MonitorState.TERMINATED
        assert sink.notifications[-1].kind == NotificationKind.NOTICE
        assert sink.notifications[-1].text == TIMEOUT_NOTICE
        assert len(client.activity_calls) == 4
        assert clock.sleeps == [5.0, 5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_poll_error_counts_as_empty_page(self):
        client = FakeJulesClient(pages=[[progress("a1")]])
        client.fail_activities = RemoteServiceError(500, "boom")
        sink = RecordingSink()
        monitor = make_monitor(client, sink, seen_ids=set())

        await monitor.poll_once()
        assert monitor.state == MonitorState.POLLING
        assert sink.notifications == []

        client.fail_activities = None
        await monitor.poll_once()
        assert sink.activity_ids() == ["a1"]

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_polling(self):
        client = FakeJulesClient(pages=[[progress("a1")]])
        monitor = make_monitor(client, RecordingSink(fail=True), seen_ids=set())
        await monitor.poll_once()
        assert monitor.emitted == 0
        assert "a1" in monitor.seen_ids

    @pytest.mark.asyncio
    async def test_translator_applied_before_send(self):
        translator = AsyncMock(side_effect=lambda text: f"[ko] {text}")
        client = FakeJulesClient(pages=[[progress("a1", "Working")]])
        sink = RecordingSink()
        await make_monitor(client, sink, seen_ids=set(), translator=translator).poll_once()
        assert sink.notifications[0].text == "[ko] ⏳ Working"

    @pytest.mark.asyncio
    async def test_malformed_activities_do_not_end_monitor(self):
        body = {"activities": [
            {"id": "a1", "progressUpdated": {"title": None, "description": "Cloning"}},
            "garbage",
            {"id": "a2", "artifacts": [{"bashOutput": "not-an-object"}]},
            {"id": "a3", "sessionCompleted": {}},
        ]}
        client = JulesClient(
            api_key="k",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)),
        )
        sink = RecordingSink()

        result = await make_monitor(client, sink, seen_ids=set()).run()
        await client.close()

        assert result.reason == TerminationReason.COMPLETED
        assert sink.activity_ids() == ["a1", "a3"]
        assert sink.notifications[0].text == "⏳ Cloning"

    @pytest.mark.asyncio
    async def test_malformed_page_counts_as_empty_page(self):
        responses = [
            {"activities": {"unexpected": "shape"}},
            {"activities": [{"id": "a1", "progressUpdated": {"title": "Working"}}]},
        ]
        client = JulesClient(
            api_key="k",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=responses.pop(0))),
        )
        sink = RecordingSink()
        monitor = make_monitor(client, sink, seen_ids=set())

        await monitor.poll_once()
        assert monitor.state == MonitorState.POLLING
        assert sink.notifications == []

        await monitor.poll_once()
        await client.close()
        assert sink.activity_ids() == ["a1"]

    @pytest.mark.asyncio
    async def test_unexpected_tick_error_is_retried(self):
        clock = FakeClock()
        client = FakeJulesClient(pages=[[completed("a1")]])
        client.fail_activities = RuntimeError("unexpected")

        async def sleep(seconds):
            await clock.sleep(seconds)
            client.fail_activities = None

        sink = RecordingSink()
        monitor = SessionMonitor(
            client=client, session_id="s-1", sink=sink, seen_ids=set(),
            clock=clock, sleep=sleep,
        )

        result = await monitor.run()

        assert result.reason == TerminationReason.COMPLETED
        assert len(client.activity_calls) == 2
        assert sink.kinds() == [NotificationKind.COMPLETED]

    @pytest.mark.asyncio
    async def test_translator_failure_sends_original_text(self):
        translator = AsyncMock(side_effect=RuntimeError("model offline"))
        client = FakeJulesClient(pages=[[progress("a1", "Working")]])
        sink = RecordingSink()
        await make_monitor(client, sink, seen_ids=set(), translator=translator).poll_once()
        assert sink.notifications[0].text == "⏳ Working"


class TestFromSettings:
    def test_uses_monitor_section(self):
        settings = Settings(monitor={"poll_interval_seconds": 2, "timeout_seconds": 30})
        monitor = SessionMonitor.from_settings(
            settings, client=FakeJulesClient(), session_id="s-9", sink=RecordingSink()
        )
        assert monitor.session_id == "s-9"
        assert monitor._poll_interval == 2
        assert monitor._timeout == 30
        assert monitor.state == MonitorState.BACKFILLING


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


class BlockingMonitor:
    def __init__(self, session_id: str):
        self.session_id = session_id
        self.release = asyncio.Event()

    async def run(self):
        await self.release.wait()


class TestMonitorRegistry:
    @pytest.mark.asyncio
    async def test_start_supersedes_running_task(self):
        registry = MonitorRegistry()
        first = registry.start(BlockingMonitor("s-1"))
        second = registry.start(BlockingMonitor("s-1"))

        await asyncio.gather(first, return_exceptions=True)

        assert first.cancelled()
        assert not second.done()
        assert len(registry) == 1
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_independent_sessions_run_side_by_side(self):
        registry = MonitorRegistry()
        registry.start(BlockingMonitor("s-1"))
        registry.start(BlockingMonitor("s-2"))
        assert registry.is_running("s-1") and registry.is_running("s-2")
        assert len(registry) == 2
        await registry.shutdown()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_finished_task_is_forgotten(self):
        registry = MonitorRegistry()
        monitor = BlockingMonitor("s-1")
        task = registry.start(monitor)
        monitor.release.set()
        await task
        await asyncio.sleep(0)
        assert not registry.is_running("s-1")
        assert registry.cancel("s-1") is False

    @pytest.mark.asyncio
    async def test_cancel(self):
        registry = MonitorRegistry()
        task = registry.start(BlockingMonitor("s-1"))
        assert registry.cancel("s-1") is True
        await asyncio.gather(task, return_exceptions=True)
        assert task.cancelled()
        assert not registry.is_running("s-1")
