"""
Tests for progress snapshots
"""
import pytest

from app.proctor.progress import ProgressReporter, ProgressState, progress_percent


class TestProgressPercent:

    @pytest.mark.parametrize("answered,total,expected", [
        (0, 5, 0),
        (2, 5, 40),
        (2, 3, 67),
        (5, 5, 100),
        (0, 0, 0),
    ])
    def test_percent(self, answered, total, expected):
        assert progress_percent(answered, total) == expected


class TestProgressReporter:
    """Snapshots go to the api and the relay; failures are logged only"""

    def make_reporter(self, clock, api=None, relay=None):
        state = {"value": ProgressState(answered=2, total=5, current_question_index=1, time_remaining_seconds=1200)}
        reporter = ProgressReporter("exam-1", "student-1", lambda: state["value"], api=api, relay=relay, clock=clock)
        return reporter, state

    @pytest.mark.asyncio
    async def test_emit_publishes_snapshot(self, clock, fake_api, fake_relay):
        reporter, _ = self.make_reporter(clock, fake_api, fake_relay)
        reporter.session_id = "session-1"
        reporter.active = True

        snapshot = await reporter.emit("answer")

        assert snapshot.progress_percent == 40
        assert fake_api.progress == [snapshot]
        assert fake_relay.events("student-progress") == [{
            "examId": "exam-1",
            "studentId": "student-1",
            "progress": 40,
            "currentQuestion": 2,
            "timeRemaining": 1200,
            "emittedAt": clock(),
        }]

    @pytest.mark.asyncio
    async def test_inactive_reporter_emits_nothing(self, clock, fake_relay):
        reporter, _ = self.make_reporter(clock, relay=fake_relay)

        assert await reporter.emit() is None
        assert fake_relay.emitted == []

    @pytest.mark.asyncio
    async def test_emitted_at_never_goes_backwards(self, clock, fake_relay):
        reporter, _ = self.make_reporter(clock, relay=fake_relay)
        reporter.active = True

        first = await reporter.emit()
        clock.advance(-5)
        second = await reporter.emit()

        assert second.emitted_at == first.emitted_at

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, clock, fake_api, fake_relay):
        fake_api.fail_progress = True
        fake_relay.fail = True
        reporter, _ = self.make_reporter(clock, fake_api, fake_relay)
        reporter.session_id = "session-1"
        reporter.active = True

        assert await reporter.emit() is not None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, clock, fake_relay):
        reporter, _ = self.make_reporter(clock, relay=fake_relay)
        reporter.start("session-1")
        assert reporter.active

        reporter.stop()
        assert not reporter.active
        assert await reporter.emit() is None
