from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.exceptions import ProctorError, ExamNotFoundError, SessionNotFoundError, SessionConflictError
from ..services.session_service import ProctorSessionService
from ..services.signaling_relay import SignalingRelay


def get_session_service(db: Session = Depends(get_db)) -> ProctorSessionService:
    return ProctorSessionService(db)


def get_relay(request: Request) -> SignalingRelay:
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=503, detail="Signaling relay is not running")
    return relay


def as_http_error(exc: ProctorError) -> HTTPException:
    if isinstance(exc, (ExamNotFoundError, SessionNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
