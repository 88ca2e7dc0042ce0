"""
Supervisor side: live per-exam dashboard state and the answering media
sessions for the students being watched.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.exceptions import NegotiationError
from .peer import ProctorPeerSession

logger = logging.getLogger(__name__)


@dataclass
class StudentView:
    student_id: str
    name: Optional[str] = None
    session_id: Optional[str] = None
    status: str = "active"
    progress: int = 0
    current_question: Optional[int] = None
    time_remaining: Optional[int] = None
    progress_at: float = 0.0
    violation_count: int = 0
    violations: List[Dict[str, Any]] = field(default_factory=list)
    permissions: Dict[str, bool] = field(default_factory=dict)
    last_seen: float = 0.0


class SupervisorDashboard:
    def __init__(self, exam_id: str, relay, api=None, peer_factory: Optional[Callable[[], Any]] = None,
                 clock: Callable[[], float] = time.time):
        self.exam_id = exam_id
        self.relay = relay
        self.api = api
        self.peer_factory = peer_factory
        self.clock = clock

        self.students: Dict[str, StudentView] = {}
        self.peers: Dict[str, ProctorPeerSession] = {}
        self.sent_messages: List[Dict[str, Any]] = []

        self.relay.on("student-started-exam", self.on_student_started)
        self.relay.on("student-left-exam", self.on_student_left)
        self.relay.on("student-progress-update", self.on_progress)
        self.relay.on("student-activity-detected", self.on_activity)
        self.relay.on("student-permission-status", self.on_permission_status)
        self.relay.on("student-status-change", self.on_status_change)
        self.relay.on("student-session-terminated", self.on_session_terminated)
        self.relay.on("proctor-message-sent", self.on_message_sent)
        self.relay.on("webrtc-offer", self.on_offer)
        self.relay.on("webrtc-ice-candidate", self.on_ice_candidate)

    async def join(self):
        await self.relay.join_proctor(self.exam_id)
        if self.api is not None:
            await self.refresh()

    async def refresh(self):
        """Seed the view with sessions that were already active before we joined"""
        for detail in await self.api.list_exam_sessions(self.exam_id):
            view = self._view(detail.student_id)
            view.session_id = detail.session_id
            view.name = detail.student_name or view.name
            view.status = detail.status.value
            view.violation_count = detail.violation_count
            view.permissions.update(detail.capabilities)
            if detail.progress is not None:
                self._apply_progress(view, detail.progress.progress_percent, detail.progress.current_question_index + 1,
                                     detail.progress.time_remaining_seconds, detail.progress.emitted_at)

    def _view(self, student_id: str) -> StudentView:
        student_id = str(student_id)
        view = self.students.get(student_id)
        if view is None:
            view = StudentView(student_id=student_id)
            self.students[student_id] = view
        view.last_seen = self.clock()
        return view

    def _scoped(self, data: Any) -> Optional[StudentView]:
        if not isinstance(data, dict) or str(data.get("examId")) != str(self.exam_id) or not data.get("studentId"):
            return None
        return self._view(data["studentId"])

    @staticmethod
    def _apply_progress(view: StudentView, progress: int, current_question: Optional[int],
                        time_remaining: Optional[int], emitted_at: float):
        if emitted_at < view.progress_at:
            return
        view.progress = progress
        view.current_question = current_question
        view.time_remaining = time_remaining
        view.progress_at = emitted_at

    # relay events

    async def on_student_started(self, data):
        view = self._scoped(data)
        if view is not None:
            view.name = data.get("studentName") or view.name
            view.session_id = data.get("sessionId") or view.session_id
            view.status = "active"

    async def on_student_left(self, data):
        view = self._scoped(data)
        if view is not None:
            view.status = data.get("status") or "left"
            await self.unwatch(view.student_id)

    async def on_progress(self, data):
        view = self._scoped(data)
        if view is not None:
            self._apply_progress(view, int(data.get("progress", 0)), data.get("currentQuestion"),
                                 data.get("timeRemaining"), float(data.get("emittedAt") or self.clock()))

    async def on_activity(self, data):
        view = self._scoped(data)
        if view is None:
            return
        view.violations.append({
            "type": data.get("type"),
            "description": data.get("description"),
            "severity": data.get("severity"),
            "timestamp": self.clock(),
        })
        view.violation_count = int(data.get("count") or len(view.violations))

    async def on_permission_status(self, data):
        view = self._scoped(data)
        if view is not None and data.get("permission"):
            view.permissions[data["permission"]] = bool(data.get("granted"))

    async def on_status_change(self, data):
        view = self._scoped(data)
        if view is not None and data.get("status"):
            view.status = data["status"]

    async def on_session_terminated(self, data):
        view = self._scoped(data)
        if view is not None:
            view.status = "terminated"
            await self.unwatch(view.student_id)

    async def on_message_sent(self, data):
        if self._scoped(data) is not None:
            self.sent_messages.append(data)

    # media

    async def watch(self, student_id: str, on_streams: Optional[Callable[[Dict[str, Any]], None]] = None) -> ProctorPeerSession:
        """Subscribe as the proctor peer of one student; their next offer gets answered here"""
        student_id = str(student_id)
        peer = self.peers.get(student_id)
        if peer is None:
            peer = ProctorPeerSession(self.exam_id, student_id, self.relay, peer_factory=self.peer_factory,
                                      on_streams=on_streams)
            self.peers[student_id] = peer
        await self.relay.join_proctor(self.exam_id, student_id)
        return peer

    async def unwatch(self, student_id: str):
        peer = self.peers.pop(str(student_id), None)
        if peer is not None:
            await peer.close()

    async def on_offer(self, data):
        if not isinstance(data, dict) or str(data.get("examId")) != str(self.exam_id):
            return
        peer = self.peers.get(str(data.get("studentId")))
        if peer is None:
            return
        try:
            await peer.handle_offer(data.get("payload") or {})
        except NegotiationError as e:
            logger.error(f"Could not answer offer from student {data.get('studentId')}: {e}")

    async def on_ice_candidate(self, data):
        if not isinstance(data, dict) or str(data.get("examId")) != str(self.exam_id):
            return
        peer = self.peers.get(str(data.get("studentId")))
        if peer is None:
            return
        try:
            await peer.handle_remote_candidate(data.get("payload") or {})
        except Exception as e:
            logger.warning(f"Discarding malformed ICE candidate: {e}")

    # supervisor actions

    def _session_id(self, student_id: str) -> str:
        view = self.students.get(str(student_id))
        if view is None or not view.session_id:
            raise KeyError(f"No known session for student {student_id}; call refresh() first")
        return view.session_id

    async def terminate(self, student_id: str, reason: str = "Terminated by proctor") -> Dict[str, Any]:
        return await self.api.terminate_session(self._session_id(student_id), reason)

    async def send_message(self, student_id: str, message: str, type: str = "warning") -> Dict[str, Any]:
        return await self.api.send_message(self._session_id(student_id), message, type)

    async def close(self):
        for student_id in list(self.peers):
            await self.unwatch(student_id)
