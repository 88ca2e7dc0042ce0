"""
Socket.IO handlers for the signaling relay.

Students join their own (exam, student) scope; supervisors either join one
student's scope as the proctor peer or subscribe to a whole exam dashboard.
"""
import logging
from typing import Any, Dict, Optional

import socketio

from ....core.cache import cache, progress_key
from ....schemas.proctoring import TargetRole, SignalKind
from ....services.signaling_relay import SignalingRelay, parse_signaling_message

logger = logging.getLogger(__name__)

# student event -> event re-broadcast to supervisors
CONTROL_EVENTS = {
    "student-join-exam": "student-started-exam",
    "student-leave-exam": "student-left-exam",
    "student-progress": "student-progress-update",
    "student-activity": "student-activity-detected",
    "student-permission-status": "student-permission-status",
}


def _scope(data: Any) -> Optional[Dict[str, str]]:
    if not isinstance(data, dict) or not data.get("examId") or not data.get("studentId"):
        return None
    return {"exam_id": str(data["examId"]), "student_id": str(data["studentId"])}


def _control_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in ("examId", "studentId")}


def register_relay_handlers(sio: socketio.AsyncServer, relay: SignalingRelay):
    """Bind relay events on ``sio``. Handlers return an ack dict to the caller."""

    @sio.event
    async def connect(sid, environ, auth=None):
        logger.info(f"Socket connected: {sid}")

    @sio.event
    async def disconnect(sid, *args):
        for exam_id, student_id, role in relay.unsubscribe(sid):
            if role == TargetRole.STUDENT:
                await relay.broadcast_control(exam_id, student_id, "student-status-change", {"status": "disconnected"})
        logger.info(f"Socket disconnected: {sid}")

    @sio.on("join-exam")
    async def join_exam(sid, data):
        scope = _scope(data)
        if scope is None:
            return {"success": False, "error": "examId and studentId are required"}
        replaced = relay.subscribe_peer(scope["exam_id"], scope["student_id"], TargetRole.STUDENT, sid)
        if replaced:
            logger.info(f"Student connection {replaced} replaced by {sid}")
        return {"success": True}

    @sio.on("join-proctor")
    async def join_proctor(sid, data):
        # dashboards send a bare exam id, per-student viewers send {examId, studentId}
        if isinstance(data, str):
            data = {"examId": data}
        if not isinstance(data, dict) or not data.get("examId"):
            return {"success": False, "error": "examId is required"}

        exam_id = str(data["examId"])
        student_id = data.get("studentId")
        if student_id is None:
            relay.subscribe_dashboard(exam_id, sid)
            return {"success": True, "scope": "exam"}

        student_id = str(student_id)
        relay.subscribe_peer(exam_id, student_id, TargetRole.PROCTOR, sid)
        # the student re-offers so the new viewer gets media
        await relay.notify_student(exam_id, student_id, "proctor-joined", {})
        return {"success": True, "scope": "student"}

    def make_control_handler(event: str, broadcast_as: str):
        async def handler(sid, data):
            scope = _scope(data)
            if scope is None or not relay.can_speak_for(sid, scope["exam_id"], scope["student_id"], TargetRole.STUDENT):
                logger.warning(f"Rejected {event} from {sid}: not subscribed for this scope")
                return {"success": False, "error": "not subscribed"}

            payload = _control_payload(data)
            if event == "student-progress":
                await cache.aset(progress_key(scope["exam_id"], scope["student_id"]), payload)

            delivered = await relay.broadcast_control(scope["exam_id"], scope["student_id"], broadcast_as, payload)
            return {"success": True, "delivered": delivered}

        sio.on(event, handler)

    for event, broadcast_as in CONTROL_EVENTS.items():
        make_control_handler(event, broadcast_as)

    def make_signal_handler(kind: SignalKind):
        async def handler(sid, data):
            try:
                message = parse_signaling_message(kind.value, data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Malformed webrtc-{kind.value} from {sid}: {e}")
                return {"success": False, "error": "malformed message"}

            sender = TargetRole.PROCTOR if message.target == TargetRole.STUDENT else TargetRole.STUDENT
            if not relay.can_speak_for(sid, message.exam_id, message.student_id, sender):
                logger.warning(f"Rejected webrtc-{kind.value} from {sid}: not a peer of this scope")
                return {"success": False, "error": "not subscribed"}

            routed = await relay.route(message)
            return {"success": True, "routed": routed}

        sio.on(f"webrtc-{kind.value}", handler)

    for kind in SignalKind:
        make_signal_handler(kind)
