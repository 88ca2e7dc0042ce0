"""Client for the persistence endpoints under ``/api/v1``."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.exceptions import ExamNotFoundError, SessionConflictError, SessionNotFoundError
from ..schemas.proctoring import (
    AnswerRecord,
    Capability,
    ExamDefinition,
    ProctorSessionResponse,
    ProgressSnapshot,
    ReportActivityResponse,
    SessionDetail,
    Severity,
    SubmitResultResponse,
)

logger = logging.getLogger(__name__)


class ProctorApiClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.api_timeout_seconds if timeout is None else timeout,
        )

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._client.request(method, path, json=json)
        if response.status_code == 404:
            detail = str(response.json().get("detail", "")) if response.content else ""
            if path.startswith("/exams") or detail.startswith("Exam not found"):
                raise ExamNotFoundError(detail.rsplit(": ", 1)[-1] or path)
            raise SessionNotFoundError(detail.rsplit(": ", 1)[-1] or path)
        if response.status_code == 409:
            raise SessionConflictError(response.json().get("detail", "conflict"))
        response.raise_for_status()
        return response.json()

    async def get_exam(self, exam_id: str) -> ExamDefinition:
        return ExamDefinition(**await self._request("GET", f"/exams/{exam_id}"))

    async def start_session(self, exam_id: str, student_id: str, student_name: Optional[str] = None) -> ProctorSessionResponse:
        data = await self._request("POST", "/results/start-session", {
            "exam_id": exam_id,
            "student_id": student_id,
            "student_name": student_name,
        })
        return ProctorSessionResponse(**data)

    async def update_progress(self, session_id: str, snapshot: ProgressSnapshot) -> Dict[str, Any]:
        return await self._request("POST", "/results/update-progress", {"session_id": session_id, **snapshot.model_dump()})

    async def report_activity(self, session_id: str, kind: str, description: Optional[str] = None,
                              severity: Severity = Severity.MEDIUM, counts_toward_threshold: bool = True,
                              metadata: Optional[Dict[str, Any]] = None) -> ReportActivityResponse:
        data = await self._request("POST", "/results/report-activity", {
            "session_id": session_id,
            "type": kind,
            "description": description,
            "severity": Severity(severity).value,
            "counts_toward_threshold": counts_toward_threshold,
            "metadata": metadata,
        })
        return ReportActivityResponse(**data)

    async def record_capability(self, session_id: str, capability: Capability, granted: bool,
                                timestamp: Optional[float] = None) -> Dict[str, Any]:
        return await self._request("POST", "/results/capability", {
            "session_id": session_id,
            "capability": Capability(capability).value,
            "granted": granted,
            "timestamp": timestamp,
        })

    async def submit_result(self, session_id: str, exam_id: str, answers: List[AnswerRecord], time_taken: int,
                            auto_submitted: bool = False, reason: Optional[str] = None) -> SubmitResultResponse:
        data = await self._request("POST", "/results", {
            "session_id": session_id,
            "exam_id": exam_id,
            "answers": [a.model_dump() for a in answers],
            "time_taken": time_taken,
            "auto_submitted": auto_submitted,
            "reason": reason,
        })
        return SubmitResultResponse(**data)

    async def list_exam_sessions(self, exam_id: str) -> List[SessionDetail]:
        return [SessionDetail(**s) for s in await self._request("GET", f"/proctor/exams/{exam_id}/sessions")]

    async def terminate_session(self, session_id: str, reason: str) -> Dict[str, Any]:
        return await self._request("POST", "/proctor/terminate", {"session_id": session_id, "reason": reason})

    async def send_message(self, session_id: str, message: str, type: str = "info") -> Dict[str, Any]:
        return await self._request("POST", "/proctor/message", {"session_id": session_id, "message": message, "type": type})

    async def aclose(self):
        await self._client.aclose()
