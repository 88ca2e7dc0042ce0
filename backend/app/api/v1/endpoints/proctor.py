from fastapi import APIRouter, Depends
from typing import List
import logging

from ....core.exceptions import ProctorError
from ....schemas.proctoring import TerminateRequest, ProctorMessageRequest, ViolationResponse, SessionDetail
from ....services.session_service import ProctorSessionService
from ....services.signaling_relay import SignalingRelay
from ....utils.timezone import get_utc_now
from ...deps import get_session_service, get_relay, as_http_error

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/terminate")
async def terminate_session(
    request: TerminateRequest,
    service: ProctorSessionService = Depends(get_session_service),
    relay: SignalingRelay = Depends(get_relay)
):
    """End a student's session without submission and tell everyone watching it"""
    try:
        session, changed = service.terminate_session(request.session_id, request.reason)
    except ProctorError as e:
        raise as_http_error(e)

    delivered = False
    if changed:
        data = {"reason": request.reason, "sessionId": session.id}
        delivered = await relay.notify_student(session.exam_id, session.student_id, "student-session-terminated", data)
        await relay.broadcast_control(session.exam_id, session.student_id, "student-session-terminated", data)

    return {"success": True, "terminated": changed, "status": session.status, "delivered": delivered}


@router.post("/message")
async def send_proctor_message(
    request: ProctorMessageRequest,
    service: ProctorSessionService = Depends(get_session_service),
    relay: SignalingRelay = Depends(get_relay)
):
    try:
        session = service.require_session(request.session_id)
    except ProctorError as e:
        raise as_http_error(e)

    data = {"message": request.message, "type": request.type, "timestamp": get_utc_now().isoformat()}
    delivered = await relay.notify_student(session.exam_id, session.student_id, "proctor-message", data)
    await relay.broadcast_control(session.exam_id, session.student_id, "proctor-message-sent", {**data, "delivered": delivered})
    return {"success": True, "delivered": delivered}


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session_detail(
    session_id: str,
    service: ProctorSessionService = Depends(get_session_service)
):
    try:
        session = service.require_session(session_id)
    except ProctorError as e:
        raise as_http_error(e)
    return service.to_detail(session)


@router.get("/sessions/{session_id}/violations", response_model=List[ViolationResponse])
async def get_session_violations(
    session_id: str,
    service: ProctorSessionService = Depends(get_session_service)
):
    """Get all violations for a proctor session, newest first"""
    try:
        return service.get_violations(session_id)
    except ProctorError as e:
        raise as_http_error(e)


@router.get("/sessions/{session_id}/statistics")
async def get_violation_statistics(
    session_id: str,
    service: ProctorSessionService = Depends(get_session_service)
):
    try:
        return service.get_statistics(session_id)
    except ProctorError as e:
        raise as_http_error(e)


@router.get("/exams/{exam_id}/sessions", response_model=List[SessionDetail])
async def list_exam_sessions(
    exam_id: str,
    service: ProctorSessionService = Depends(get_session_service)
):
    """Active sessions of one exam, for the supervisor dashboard"""
    return [service.to_detail(s) for s in service.list_active_sessions(exam_id)]
