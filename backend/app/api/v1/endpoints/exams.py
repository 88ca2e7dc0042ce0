from fastapi import APIRouter, Depends, HTTPException

from ....core.exceptions import ProctorError
from ....schemas.proctoring import ExamDefinition, ExamDefinitionCreate
from ....services.session_service import ProctorSessionService
from ...deps import get_session_service, as_http_error

router = APIRouter()


@router.get("/{exam_id}", response_model=ExamDefinition)
async def get_exam_definition(
    exam_id: str,
    service: ProctorSessionService = Depends(get_session_service)
):
    """Exam definition: duration, question order and proctoring flags"""
    exam = service.get_exam(exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found")
    return exam


@router.post("", response_model=ExamDefinition, status_code=201)
async def create_exam_definition(
    data: ExamDefinitionCreate,
    service: ProctorSessionService = Depends(get_session_service)
):
    try:
        return service.create_exam(data)
    except ProctorError as e:
        raise as_http_error(e)
