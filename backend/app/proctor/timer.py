"""
Reload-resilient exam timer.

Remaining time is always recomputed from a persisted start anchor:
``duration - (now - anchor)`` clamped at zero. Nothing is ever decremented,
so a reload, a suspended laptop or a slow tick cannot drift the clock.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ..core.config import settings
from .state import SessionStateStore

logger = logging.getLogger(__name__)


class SessionTimer:
    def __init__(
        self,
        exam_id: str,
        student_id: str,
        duration_seconds: int,
        store: SessionStateStore,
        on_expire: Optional[Callable[[], Awaitable[None]]] = None,
        on_tick: Optional[Callable[[int], None]] = None,
        clock: Callable[[], float] = time.time,
        tick_seconds: Optional[float] = None,
    ):
        self.exam_id = exam_id
        self.student_id = student_id
        self.duration_seconds = duration_seconds
        self.store = store
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.clock = clock
        self.tick_seconds = settings.timer_tick_seconds if tick_seconds is None else tick_seconds

        self.anchor: Optional[float] = None
        self.expired = False
        self._task: Optional[asyncio.Task] = None

    def activate(self, start_instant: Optional[float] = None) -> float:
        """Fix the anchor. An anchor persisted by an earlier load always wins."""
        candidate = self.clock() if start_instant is None else start_instant
        self.anchor = self.store.set_anchor_if_absent(self.exam_id, self.student_id, candidate)
        return self.anchor

    def elapsed_seconds(self, now: Optional[float] = None) -> float:
        if self.anchor is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, now - self.anchor)

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        if self.anchor is None:
            return self.duration_seconds
        now = self.clock() if now is None else now
        return max(0, self.duration_seconds - int(max(0.0, now - self.anchor)))

    async def check(self, now: Optional[float] = None) -> int:
        """Recompute remaining time and fire expiry the first time it reaches zero."""
        remaining = self.remaining_seconds(now)
        if self.on_tick:
            self.on_tick(remaining)
        if remaining <= 0 and self.anchor is not None and not self.expired:
            self.expired = True
            logger.info(f"Exam {self.exam_id} time expired")
            if self.on_expire:
                await self.on_expire()
        return remaining

    def start(self, start_instant: Optional[float] = None):
        if self.anchor is None:
            self.activate(start_instant)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def _run(self):
        while not self.expired:
            await self.check()
            if self.expired:
                break
            await asyncio.sleep(self.tick_seconds)

    def stop(self):
        task, self._task = self._task, None
        # the expiry callback may stop the timer from inside its own task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
