"""
Integrity monitor: counts focus-loss events and triggers auto-submit once the
threshold is reached.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import settings
from ..schemas.proctoring import Severity
from .state import SessionStateStore

logger = logging.getLogger(__name__)

FOCUS_LOSS_KINDS = {
    "tab-switch": "Student switched to another tab",
    "window-blur": "Exam window lost focus",
    "fullscreen-exit": "Student exited fullscreen mode",
}


@dataclass
class ViolationEvent:
    kind: str
    severity: Severity
    timestamp: float
    description: Optional[str] = None
    counts_toward_threshold: bool = True
    resolved: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class IntegrityMonitor:
    def __init__(
        self,
        exam_id: str,
        student_id: str,
        store: SessionStateStore,
        api=None,
        relay=None,
        on_threshold: Optional[Callable[[], Awaitable[Any]]] = None,
        on_warning: Optional[Callable[[str, int], None]] = None,
        threshold: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        student_name: Optional[str] = None,
    ):
        self.exam_id = exam_id
        self.student_id = student_id
        self.student_name = student_name
        self.store = store
        self.api = api
        self.relay = relay
        self.on_threshold = on_threshold
        self.on_warning = on_warning
        self.threshold = settings.violation_threshold if threshold is None else threshold
        self.clock = clock

        self.session_id: Optional[str] = None
        self.events: List[ViolationEvent] = []
        self.count = 0
        self.active = False
        self.threshold_fired = False

    async def start(self, session_id: str, recorded_count: int = 0):
        """Resume counting; ``recorded_count`` is the server's tally for this session."""
        self.session_id = session_id
        stored = self.store.get_violation_count(self.exam_id, self.student_id)
        self.count = max(stored, recorded_count or 0)
        if self.count != stored:
            self.store.set_violation_count(self.exam_id, self.student_id, self.count)
        self.active = True
        if self.count >= self.threshold:
            # threshold was reached before a reload interrupted the auto-submit
            await self._fire_threshold()

    def stop(self):
        self.active = False

    async def record_focus_loss(self, kind: str = "tab-switch", description: Optional[str] = None) -> Optional[ViolationEvent]:
        if not self.active:
            return None

        event = ViolationEvent(
            kind=kind,
            severity=Severity.MEDIUM,
            timestamp=self.clock(),
            description=description or FOCUS_LOSS_KINDS.get(kind, kind),
        )
        self.events.append(event)
        self.count += 1
        self.store.set_violation_count(self.exam_id, self.student_id, self.count)

        if self.on_warning:
            self.on_warning(event.description, self.count)

        await self._report(event)

        if self.count >= self.threshold:
            await self._fire_threshold()
        return event

    async def record_event(self, kind: str, description: Optional[str] = None,
                           severity: Severity = Severity.LOW, metadata: Optional[Dict[str, Any]] = None) -> Optional[ViolationEvent]:
        """Record a signal that is logged but never counted (context menu, blocked shortcut, copy/paste)"""
        if not self.active:
            return None
        event = ViolationEvent(
            kind=kind,
            severity=Severity(severity),
            timestamp=self.clock(),
            description=description,
            counts_toward_threshold=False,
            metadata=metadata or {},
        )
        self.events.append(event)
        await self._report(event)
        return event

    async def _fire_threshold(self):
        if self.threshold_fired:
            return
        self.threshold_fired = True
        logger.warning(f"Violation threshold reached for exam={self.exam_id} student={self.student_id} ({self.count})")
        if self.on_threshold:
            await self.on_threshold()

    async def _report(self, event: ViolationEvent):
        if self.api is not None and self.session_id:
            try:
                await self.api.report_activity(
                    self.session_id,
                    event.kind,
                    description=event.description,
                    severity=event.severity,
                    counts_toward_threshold=event.counts_toward_threshold,
                    metadata=event.metadata or None,
                )
            except Exception as e:
                logger.error(f"Error reporting activity {event.kind}: {e}")

        if self.relay is not None:
            try:
                await self.relay.emit("student-activity", {
                    "examId": self.exam_id,
                    "studentId": self.student_id,
                    "studentName": self.student_name,
                    "type": event.kind,
                    "description": event.description,
                    "severity": event.severity.value,
                    "count": self.count,
                })
            except Exception as e:
                logger.warning(f"Failed to broadcast activity {event.kind}: {e}")
