from fastapi import APIRouter, Depends
import logging

from ....core.cache import cache, progress_key
from ....core.exceptions import ProctorError
from ....schemas.proctoring import (
    StartSessionRequest,
    ProctorSessionResponse,
    UpdateProgressRequest,
    ProgressSnapshot,
    ReportActivityRequest,
    ReportActivityResponse,
    CapabilityGrantRequest,
    SubmitResultRequest,
    SubmitResultResponse,
)
from ....services.session_service import ProctorSessionService
from ....services.signaling_relay import SignalingRelay
from ...deps import get_session_service, get_relay, as_http_error

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/start-session", response_model=ProctorSessionResponse)
async def start_session(
    request: StartSessionRequest,
    service: ProctorSessionService = Depends(get_session_service)
):
    """Create the proctor session, or hand back the active one on reload"""
    try:
        session, resumed = service.start_session(request.exam_id, request.student_id, request.student_name)
    except ProctorError as e:
        raise as_http_error(e)
    return service.to_response(session, resumed=resumed)


@router.post("/update-progress")
async def update_progress(
    request: UpdateProgressRequest,
    service: ProctorSessionService = Depends(get_session_service)
):
    snapshot = ProgressSnapshot(**request.model_dump(exclude={"session_id"}))
    try:
        session, applied = service.update_progress(request.session_id, snapshot)
    except ProctorError as e:
        raise as_http_error(e)

    if applied:
        await cache.aset(progress_key(session.exam_id, session.student_id), snapshot.model_dump())
    return {"success": True, "applied": applied}


@router.post("/report-activity", response_model=ReportActivityResponse)
async def report_activity(
    request: ReportActivityRequest,
    service: ProctorSessionService = Depends(get_session_service)
):
    """Append an integrity event to the session's violation log"""
    try:
        violation, count, threshold_reached = service.report_activity(request)
    except ProctorError as e:
        raise as_http_error(e)

    logger.info(
        f"Integrity event {violation.violation_type} for session {request.session_id} "
        f"(count={count}, threshold_reached={threshold_reached})"
    )
    return ReportActivityResponse(recorded=True, violation_count=count, threshold_reached=threshold_reached)


@router.post("/capability")
async def record_capability(
    request: CapabilityGrantRequest,
    service: ProctorSessionService = Depends(get_session_service)
):
    try:
        grant = service.record_capability(request.session_id, request.capability.value, request.granted, request.timestamp)
    except ProctorError as e:
        raise as_http_error(e)
    return {"success": True, "capability": grant.capability, "granted": grant.granted}


@router.post("", response_model=SubmitResultResponse)
async def submit_result(
    request: SubmitResultRequest,
    service: ProctorSessionService = Depends(get_session_service),
    relay: SignalingRelay = Depends(get_relay)
):
    """Persist the final answers. A repeated submission is answered with ``redirect``."""
    try:
        response = service.submit_result(request)
        session = service.require_session(request.session_id)
    except ProctorError as e:
        raise as_http_error(e)

    if not response.redirect:
        await relay.broadcast_control(
            session.exam_id,
            session.student_id,
            "student-status-change",
            {"status": session.status, "autoSubmitted": request.auto_submitted, "reason": request.reason},
        )
    return response
