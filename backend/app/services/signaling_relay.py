"""
Signaling relay - routes negotiation and control messages between a
test-taker and the supervisors watching them.

Routing scope is the (exam_id, student_id) pair. Inside a scope there is
exactly one student peer and at most one proctor peer; negotiation messages
(offer / answer / ICE) travel only between those two. Exam dashboards
subscribe to a whole exam and receive control events (join, leave,
progress, activity, permission status) for every student of that exam, but
never negotiation traffic.

The relay never buffers: a message whose target is not connected is dropped.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..schemas.proctoring import SignalingMessage, TargetRole

logger = logging.getLogger(__name__)

EmitFn = Callable[..., Awaitable[Any]]
PeerKey = Tuple[str, str, TargetRole]

ENVELOPE_KEYS = {"examId", "studentId", "target", "from", "payload"}


def signal_event_name(message: SignalingMessage) -> str:
    return f"webrtc-{message.kind.value}"


def parse_signaling_message(kind: str, data: Dict[str, Any]) -> SignalingMessage:
    """Build a SignalingMessage from a socket payload.

    Accepts both the enveloped form ``{examId, studentId, target, payload}``
    and the flat browser form ``{examId, studentId, target, offer}``.
    """
    if "payload" in data and isinstance(data["payload"], dict):
        payload = data["payload"]
    else:
        payload = {k: v for k, v in data.items() if k not in ENVELOPE_KEYS}

    target = data.get("target")
    if target is None:
        # offers always go to the proctor, answers always to the student
        target = TargetRole.STUDENT.value if kind == "answer" else TargetRole.PROCTOR.value

    return SignalingMessage(
        kind=kind,
        examId=str(data["examId"]),
        studentId=str(data["studentId"]),
        target=target,
        payload=payload,
    )


class SignalingRelay:
    """Stateless router over a registry of subscribed connections."""

    def __init__(self, emit: EmitFn):
        self._emit = emit
        self._peers: Dict[PeerKey, str] = {}
        self._dashboards: Dict[str, Set[str]] = {}
        self._by_sid: Dict[str, Set[Any]] = {}

    def subscribe_peer(self, exam_id: str, student_id: str, role: TargetRole, sid: str) -> Optional[str]:
        """Register ``sid`` as the peer for a scope; returns the sid it replaced, if any."""
        key = (exam_id, student_id, TargetRole(role))
        previous = self._peers.get(key)
        if previous and previous != sid:
            self._by_sid.get(previous, set()).discard(key)
        self._peers[key] = sid
        self._by_sid.setdefault(sid, set()).add(key)
        logger.info(f"Relay: {key[2].value} {sid} joined exam={exam_id} student={student_id}")
        return previous if previous != sid else None

    def subscribe_dashboard(self, exam_id: str, sid: str):
        self._dashboards.setdefault(exam_id, set()).add(sid)
        self._by_sid.setdefault(sid, set()).add(exam_id)
        logger.info(f"Relay: dashboard {sid} joined exam={exam_id}")

    def unsubscribe(self, sid: str) -> List[PeerKey]:
        """Drop every subscription held by ``sid``; returns the peer scopes it left."""
        left: List[PeerKey] = []
        for entry in self._by_sid.pop(sid, set()):
            if isinstance(entry, tuple):
                if self._peers.get(entry) == sid:
                    del self._peers[entry]
                    left.append(entry)
            else:
                members = self._dashboards.get(entry)
                if members is not None:
                    members.discard(sid)
                    if not members:
                        del self._dashboards[entry]
        return left

    def peer_sid(self, exam_id: str, student_id: str, role: TargetRole) -> Optional[str]:
        return self._peers.get((exam_id, student_id, TargetRole(role)))

    def is_connected(self, exam_id: str, student_id: str, role: TargetRole) -> bool:
        return self.peer_sid(exam_id, student_id, role) is not None

    def can_speak_for(self, sid: str, exam_id: str, student_id: str, role: Optional[TargetRole] = None) -> bool:
        """Relay-level identity check: may ``sid`` send on behalf of this scope?"""
        entries = self._by_sid.get(sid, set())
        roles = [TargetRole(role)] if role else list(TargetRole)
        return any((exam_id, student_id, r) in entries for r in roles)

    def dashboard_sids(self, exam_id: str) -> Set[str]:
        return set(self._dashboards.get(exam_id, set()))

    def stats(self) -> Dict[str, int]:
        return {
            "students": sum(1 for key in self._peers if key[2] == TargetRole.STUDENT),
            "proctors": sum(1 for key in self._peers if key[2] == TargetRole.PROCTOR),
            "dashboards": sum(len(sids) for sids in self._dashboards.values()),
        }

    async def route(self, message: SignalingMessage) -> bool:
        """Forward a negotiation message to its target; False when dropped."""
        sid = self.peer_sid(message.exam_id, message.student_id, message.target)
        if sid is None:
            logger.debug(
                f"Relay: dropping {message.kind.value} for exam={message.exam_id} "
                f"student={message.student_id} target={message.target.value} (not connected)"
            )
            return False

        sender = TargetRole.PROCTOR if message.target == TargetRole.STUDENT else TargetRole.STUDENT
        data = {
            "examId": message.exam_id,
            "studentId": message.student_id,
            "target": message.target.value,
            "from": sender.value,
            "payload": message.payload,
        }
        return await self._send(signal_event_name(message), data, sid)

    async def broadcast_control(self, exam_id: str, student_id: str, event: str, data: Dict[str, Any]) -> int:
        """Best-effort fan-out of a control event to the scope's proctor and the exam dashboards."""
        recipients = self.dashboard_sids(exam_id)
        proctor_sid = self.peer_sid(exam_id, student_id, TargetRole.PROCTOR)
        if proctor_sid:
            recipients.add(proctor_sid)

        payload = {"examId": exam_id, "studentId": student_id, **data}
        delivered = 0
        for sid in recipients:
            if await self._send(event, payload, sid):
                delivered += 1
        return delivered

    async def notify_student(self, exam_id: str, student_id: str, event: str, data: Dict[str, Any]) -> bool:
        sid = self.peer_sid(exam_id, student_id, TargetRole.STUDENT)
        if sid is None:
            return False
        return await self._send(event, {"examId": exam_id, "studentId": student_id, **data}, sid)

    async def _send(self, event: str, data: Dict[str, Any], sid: str) -> bool:
        try:
            await self._emit(event, data, to=sid)
            return True
        except Exception as e:
            logger.warning(f"Relay: failed to emit {event} to {sid}: {e}")
            return False
