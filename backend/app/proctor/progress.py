import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.config import settings
from ..schemas.proctoring import ProgressSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ProgressState:
    answered: int
    total: int
    current_question_index: int
    time_remaining_seconds: int


def progress_percent(answered: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(answered / total * 100))


class ProgressReporter:
    """Streams progress snapshots on an interval, on every answer and on every navigation"""

    def __init__(
        self,
        exam_id: str,
        student_id: str,
        state_fn: Callable[[], ProgressState],
        api=None,
        relay=None,
        interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.exam_id = exam_id
        self.student_id = student_id
        self.state_fn = state_fn
        self.api = api
        self.relay = relay
        self.interval = settings.progress_interval_seconds if interval is None else interval
        self.clock = clock

        self.session_id: Optional[str] = None
        self.active = False
        self.last_snapshot: Optional[ProgressSnapshot] = None
        self._task: Optional[asyncio.Task] = None

    def build_snapshot(self) -> ProgressSnapshot:
        state = self.state_fn()
        emitted_at = self.clock()
        if self.last_snapshot is not None and emitted_at < self.last_snapshot.emitted_at:
            emitted_at = self.last_snapshot.emitted_at
        return ProgressSnapshot(
            progress_percent=progress_percent(state.answered, state.total),
            current_question_index=state.current_question_index,
            time_remaining_seconds=max(0, state.time_remaining_seconds),
            emitted_at=emitted_at,
        )

    async def emit(self, trigger: str = "interval") -> Optional[ProgressSnapshot]:
        if not self.active:
            return None
        snapshot = self.build_snapshot()
        self.last_snapshot = snapshot

        if self.api is not None and self.session_id:
            try:
                await self.api.update_progress(self.session_id, snapshot)
            except Exception as e:
                logger.error(f"Error updating progress ({trigger}): {e}")

        if self.relay is not None:
            try:
                await self.relay.emit("student-progress", {
                    "examId": self.exam_id,
                    "studentId": self.student_id,
                    "progress": snapshot.progress_percent,
                    "currentQuestion": snapshot.current_question_index + 1,
                    "timeRemaining": snapshot.time_remaining_seconds,
                    "emittedAt": snapshot.emitted_at,
                })
            except Exception as e:
                logger.warning(f"Failed to broadcast progress ({trigger}): {e}")
        return snapshot

    async def notify_answer(self):
        await self.emit("answer")

    async def notify_navigation(self):
        await self.emit("navigation")

    def start(self, session_id: str):
        self.session_id = session_id
        self.active = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self):
        while self.active:
            await asyncio.sleep(self.interval)
            if self.active:
                await self.emit("interval")

    def stop(self):
        self.active = False
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
