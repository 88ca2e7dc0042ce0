"""
Tests for focus-loss counting and the auto-submit threshold
"""
import asyncio

import pytest

from app.proctor.integrity import IntegrityMonitor
from app.proctor.state import SessionStateStore, violation_key
from app.schemas.proctoring import Severity
from tests.conftest import InMemoryCache


class ThresholdRecorder:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


def make_monitor(store, clock, **kwargs):
    return IntegrityMonitor("exam-1", "student-1", store, clock=clock, threshold=3, **kwargs)


class TestCounting:
    """The violation counter only moves up and is persisted on every increment"""

    @pytest.mark.asyncio
    async def test_count_increments_and_persists(self, clock):
        cache = InMemoryCache()
        monitor = make_monitor(SessionStateStore(cache), clock)
        await monitor.start("session-1")

        await monitor.record_focus_loss("tab-switch")
        await monitor.record_focus_loss("window-blur")

        assert monitor.count == 2
        assert cache.get(violation_key("exam-1", "student-1")) == 2
        assert [e.severity for e in monitor.events] == [Severity.MEDIUM, Severity.MEDIUM]

    @pytest.mark.asyncio
    async def test_inactive_monitor_ignores_events(self, store, clock):
        monitor = make_monitor(store, clock)

        assert await monitor.record_focus_loss() is None
        assert monitor.count == 0

        await monitor.start("session-1")
        monitor.stop()
        assert await monitor.record_focus_loss() is None

    @pytest.mark.asyncio
    async def test_low_severity_events_do_not_count(self, store, clock, fake_api):
        monitor = make_monitor(store, clock, api=fake_api)
        await monitor.start("session-1")

        event = await monitor.record_event("context-menu", "Right-click blocked")

        assert event.counts_toward_threshold is False
        assert monitor.count == 0
        assert fake_api.activities == [{"type": "context-menu", "counts": False, "severity": Severity.LOW}]

    @pytest.mark.asyncio
    async def test_warning_callback_gets_running_count(self, store, clock):
        warnings = []
        monitor = make_monitor(store, clock, on_warning=lambda description, count: warnings.append(count))
        await monitor.start("session-1")

        await monitor.record_focus_loss()
        await monitor.record_focus_loss("fullscreen-exit")

        assert warnings == [1, 2]

    @pytest.mark.asyncio
    async def test_reporting_failures_do_not_block_counting(self, store, clock, fake_api, fake_relay):
        fake_api.fail_activity = True
        fake_relay.fail = True
        monitor = make_monitor(store, clock, api=fake_api, relay=fake_relay)
        await monitor.start("session-1")

        await monitor.record_focus_loss()

        assert monitor.count == 1

    @pytest.mark.asyncio
    async def test_activity_is_broadcast_with_count(self, store, clock, fake_relay):
        monitor = make_monitor(store, clock, relay=fake_relay, student_name="Ada")
        await monitor.start("session-1")

        await monitor.record_focus_loss()

        data = fake_relay.events("student-activity")[0]
        assert data["type"] == "tab-switch"
        assert data["count"] == 1
        assert data["severity"] == "medium"
        assert data["studentName"] == "Ada"


class TestThreshold:
    """Reaching the threshold fires exactly once"""

    @pytest.mark.asyncio
    async def test_fires_on_third_event(self, store, clock):
        on_threshold = ThresholdRecorder()
        monitor = make_monitor(store, clock, on_threshold=on_threshold)
        await monitor.start("session-1")

        await monitor.record_focus_loss()
        await monitor.record_focus_loss()
        assert on_threshold.calls == 0

        await monitor.record_focus_loss()
        await monitor.record_focus_loss()
        assert on_threshold.calls == 1

    @pytest.mark.asyncio
    async def test_rapid_events_fire_once(self, store, clock):
        on_threshold = ThresholdRecorder()
        monitor = make_monitor(store, clock, on_threshold=on_threshold)
        await monitor.start("session-1")

        await asyncio.gather(*(monitor.record_focus_loss() for _ in range(10)))

        assert monitor.count == 10
        assert on_threshold.calls == 1

    @pytest.mark.asyncio
    async def test_count_survives_reload(self, clock):
        cache = InMemoryCache()
        first = make_monitor(SessionStateStore(cache), clock)
        await first.start("session-1")
        await first.record_focus_loss()
        await first.record_focus_loss()

        on_threshold = ThresholdRecorder()
        reloaded = make_monitor(SessionStateStore(cache), clock, on_threshold=on_threshold)
        await reloaded.start("session-1")
        assert reloaded.count == 2

        await reloaded.record_focus_loss()
        assert on_threshold.calls == 1

    @pytest.mark.asyncio
    async def test_reload_past_threshold_fires_on_start(self, clock):
        cache = InMemoryCache()
        SessionStateStore(cache).set_violation_count("exam-1", "student-1", 3)
        on_threshold = ThresholdRecorder()

        monitor = make_monitor(SessionStateStore(cache), clock, on_threshold=on_threshold)
        await monitor.start("session-1")

        assert on_threshold.calls == 1

    @pytest.mark.parametrize("stored,recorded,expected", [(0, 2, 2), (2, 1, 2), (1, 1, 1)])
    @pytest.mark.asyncio
    async def test_start_takes_higher_of_local_and_server_count(self, clock, stored, recorded, expected):
        cache = InMemoryCache()
        store = SessionStateStore(cache)
        store.set_violation_count("exam-1", "student-1", stored)

        monitor = make_monitor(store, clock)
        await monitor.start("session-1", recorded_count=recorded)

        assert monitor.count == expected
        assert store.get_violation_count("exam-1", "student-1") == expected

    @pytest.mark.asyncio
    async def test_counts_are_kept_per_student(self, clock):
        store = SessionStateStore(InMemoryCache())
        first = make_monitor(store, clock)
        other = IntegrityMonitor("exam-1", "student-2", store, clock=clock, threshold=3)
        await first.start("session-1")
        await other.start("session-2")

        await first.record_focus_loss()
        await first.record_focus_loss()

        assert store.get_violation_count("exam-1", "student-2") == 0
        assert other.count == 0
