from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta
import logging
import uuid

from ..core.config import settings
from ..core.exceptions import ExamNotFoundError, SessionNotFoundError, SessionConflictError
from ..models.exam import Exam
from ..models.proctor_session import ProctorSession
from ..models.proctoring_violations import ProctoringViolation
from ..models.capability_grant import CapabilityGrant
from ..models.exam_result import ExamResult
from ..schemas.proctoring import (
    SessionStatus,
    ExamDefinitionCreate,
    ProgressSnapshot,
    ProctorSessionResponse,
    ReportActivityRequest,
    SubmitResultRequest,
    SubmitResultResponse,
    SessionDetail,
    AnswerRecord,
)
from ..utils.timezone import utc_now_naive, to_epoch_seconds, from_epoch_seconds

logger = logging.getLogger(__name__)

ALREADY_SUBMITTED_MESSAGE = "You have already completed this exam. Redirecting to dashboard."
TERMINATED_MESSAGE = "This exam session was terminated by the proctor."


def _is_answered(answer: Any) -> bool:
    if answer is None:
        return False
    if isinstance(answer, list):
        return len(answer) > 0
    return len(str(answer).strip()) > 0


def normalize_answers(question_ids: List[str], answers: List[AnswerRecord]) -> List[Dict[str, Any]]:
    """One record per exam question in exam order; unanswered questions get an empty answer."""
    by_id = {a.question_id: a for a in answers}
    records = []
    for qid in question_ids:
        record = by_id.pop(qid, None)
        if record is None:
            record = AnswerRecord(question_id=qid, answer="", time_spent=0)
        records.append(record.model_dump())
    # answers for ids the definition does not know are kept at the end
    records.extend(a.model_dump() for a in by_id.values())
    return records


class ProctorSessionService:
    def __init__(self, db: Session):
        self.db = db

    def get_exam(self, exam_id: str) -> Optional[Exam]:
        return self.db.query(Exam).filter(Exam.id == exam_id).first()

    def require_exam(self, exam_id: str) -> Exam:
        exam = self.get_exam(exam_id)
        if not exam or not exam.is_active:
            raise ExamNotFoundError(exam_id)
        return exam

    def create_exam(self, data: ExamDefinitionCreate) -> Exam:
        if self.get_exam(data.id):
            raise SessionConflictError(f"Exam {data.id} already exists")
        exam = Exam(**data.model_dump())
        self.db.add(exam)
        self.db.commit()
        self.db.refresh(exam)
        return exam

    def get_session(self, session_id: str) -> Optional[ProctorSession]:
        return self.db.query(ProctorSession).filter(ProctorSession.id == session_id).first()

    def require_session(self, session_id: str) -> ProctorSession:
        session = self.get_session(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        return session

    def list_active_sessions(self, exam_id: str) -> List[ProctorSession]:
        return self.db.query(ProctorSession).filter(
            ProctorSession.exam_id == exam_id,
            ProctorSession.status == SessionStatus.ACTIVE.value
        ).order_by(ProctorSession.start_instant).all()

    def _find_session(self, exam_id: str, student_id: str) -> Optional[ProctorSession]:
        return self.db.query(ProctorSession).filter(
            ProctorSession.exam_id == exam_id,
            ProctorSession.student_id == student_id
        ).first()

    def _resume(self, session: ProctorSession) -> Tuple[ProctorSession, bool]:
        if session.status != SessionStatus.ACTIVE.value:
            raise SessionConflictError(ALREADY_SUBMITTED_MESSAGE)
        logger.info(f"Resuming active session {session.id} for exam={session.exam_id} student={session.student_id}")
        return session, True

    def start_session(self, exam_id: str, student_id: str, student_name: Optional[str] = None) -> Tuple[ProctorSession, bool]:
        """Start a session, or resume the active one for this (exam, student) pair.

        A pair gets exactly one session row; the unique constraint settles
        two workers starting it at once, and the loser resumes the winner's row.
        """
        exam = self.require_exam(exam_id)

        existing = self._find_session(exam_id, student_id)
        if existing is not None:
            return self._resume(existing)

        session = ProctorSession(
            id=str(uuid.uuid4()),
            exam_id=exam_id,
            student_id=student_id,
            student_name=student_name,
            start_instant=utc_now_naive(),
            duration_seconds=exam.duration_seconds,
            status=SessionStatus.ACTIVE.value,
            time_remaining_seconds=exam.duration_seconds,
        )
        self.db.add(session)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_session(exam_id, student_id)
            if existing is None:
                raise
            return self._resume(existing)

        self.db.refresh(session)
        logger.info(f"Started session {session.id} for exam={exam_id} student={student_id}")
        return session, False

    def record_capability(self, session_id: str, capability: str, granted: bool, timestamp: Optional[float] = None) -> CapabilityGrant:
        session = self.require_session(session_id)
        grant = self.db.query(CapabilityGrant).filter(
            CapabilityGrant.session_id == session.id,
            CapabilityGrant.capability == capability
        ).first()
        if grant is None:
            grant = CapabilityGrant(session_id=session.id, capability=capability)
            self.db.add(grant)
        grant.granted = granted
        grant.timestamp = from_epoch_seconds(timestamp) if timestamp else utc_now_naive()
        self.db.commit()
        self.db.refresh(grant)
        return grant

    def update_progress(self, session_id: str, snapshot: ProgressSnapshot) -> Tuple[ProctorSession, bool]:
        """Apply a progress snapshot; stale or post-finalization snapshots are ignored."""
        session = self.require_session(session_id)
        if session.status != SessionStatus.ACTIVE.value:
            return session, False
        if session.last_progress_at is not None and snapshot.emitted_at < session.last_progress_at:
            return session, False

        session.progress_percent = snapshot.progress_percent
        session.current_question_index = snapshot.current_question_index
        session.time_remaining_seconds = snapshot.time_remaining_seconds
        session.last_progress_at = snapshot.emitted_at
        self.db.commit()
        self.db.refresh(session)
        return session, True

    def report_activity(self, request: ReportActivityRequest) -> Tuple[ProctoringViolation, int, bool]:
        session = self.require_session(request.session_id)

        violation = ProctoringViolation(
            session_id=session.id,
            student_id=session.student_id,
            violation_type=request.type,
            severity=request.severity.value,
            description=request.description,
            violation_metadata=request.metadata,
            counts_toward_threshold=request.counts_toward_threshold,
        )
        self.db.add(violation)
        if request.counts_toward_threshold:
            session.violation_count = (session.violation_count or 0) + 1
        self.db.commit()
        self.db.refresh(violation)

        count = session.violation_count or 0
        return violation, count, count >= settings.violation_threshold

    def submit_result(self, request: SubmitResultRequest) -> SubmitResultResponse:
        """Finalize a session. Resubmission is a soft success with ``redirect``."""
        session = self.require_session(request.session_id)
        if session.exam_id != request.exam_id:
            raise SessionConflictError("Exam id does not match the session")

        if session.result is not None or session.status in (SessionStatus.SUBMITTED.value, SessionStatus.AUTO_SUBMITTED.value):
            return SubmitResultResponse(
                redirect=True,
                message=ALREADY_SUBMITTED_MESSAGE,
                result_id=session.result.id if session.result else None,
                status=SessionStatus(session.status),
            )
        if session.status == SessionStatus.TERMINATED.value:
            return SubmitResultResponse(
                redirect=True,
                message=TERMINATED_MESSAGE,
                status=SessionStatus.TERMINATED,
            )

        result = self._store_result(session, request.answers, request.time_taken, request.auto_submitted, request.reason)
        return SubmitResultResponse(
            message="Exam auto-submitted." if request.auto_submitted else "Exam submitted successfully!",
            result_id=result.id,
            status=SessionStatus(session.status),
        )

    def _store_result(self, session: ProctorSession, answers: List[AnswerRecord], time_taken: int,
                      auto_submitted: bool, reason: Optional[str]) -> ExamResult:
        question_ids = list(session.exam.question_ids or []) if session.exam else []
        records = normalize_answers(question_ids, answers)

        now = utc_now_naive()
        result = ExamResult(
            session_id=session.id,
            exam_id=session.exam_id,
            student_id=session.student_id,
            answers=records,
            answered_count=sum(1 for r in records if _is_answered(r["answer"])),
            time_taken=max(0, min(int(time_taken), session.duration_seconds)),
            auto_submitted=auto_submitted,
            reason=reason,
            violations_count=session.violation_count or 0,
            submitted_at=now,
        )
        session.status = (SessionStatus.AUTO_SUBMITTED if auto_submitted else SessionStatus.SUBMITTED).value
        session.submitted_at = now
        self.db.add(result)
        self.db.commit()
        self.db.refresh(result)
        logger.info(f"Session {session.id} finalized as {session.status} ({result.answered_count}/{len(records)} answered)")
        return result

    def terminate_session(self, session_id: str, reason: str) -> Tuple[ProctorSession, bool]:
        """Terminate an active session; terminal sessions are returned unchanged."""
        session = self.require_session(session_id)
        if session.status != SessionStatus.ACTIVE.value:
            return session, False
        session.status = SessionStatus.TERMINATED.value
        session.termination_reason = reason
        session.submitted_at = utc_now_naive()
        self.db.commit()
        self.db.refresh(session)
        logger.info(f"Session {session.id} terminated: {reason}")
        return session, True

    def expire_overdue_sessions(self, now: Optional[datetime] = None, grace_seconds: Optional[int] = None) -> List[str]:
        """Auto-submit active sessions whose time ran out without a client submission."""
        now = now or utc_now_naive()
        grace = settings.expiry_grace_seconds if grace_seconds is None else grace_seconds

        expired = []
        for session in self.db.query(ProctorSession).filter(ProctorSession.status == SessionStatus.ACTIVE.value).all():
            deadline = session.start_instant + timedelta(seconds=session.duration_seconds + grace)
            if deadline <= now:
                self._store_result(session, [], session.duration_seconds, True, "time-expired")
                expired.append(session.id)
        if expired:
            logger.info(f"Expired {len(expired)} overdue sessions")
        return expired

    def get_violations(self, session_id: str) -> List[ProctoringViolation]:
        self.require_session(session_id)
        return self.db.query(ProctoringViolation).filter(
            ProctoringViolation.session_id == session_id
        ).order_by(ProctoringViolation.timestamp.desc(), ProctoringViolation.id.desc()).all()

    def get_statistics(self, session_id: str) -> Dict[str, Any]:
        violations = self.get_violations(session_id)

        stats = {
            "total_violations": len(violations),
            "threshold_violations": 0,
            "by_type": {},
            "by_severity": {"low": 0, "medium": 0, "high": 0, "critical": 0},
            "timeline": []
        }

        for violation in reversed(violations):
            stats["by_type"][violation.violation_type] = stats["by_type"].get(violation.violation_type, 0) + 1
            if violation.severity in stats["by_severity"]:
                stats["by_severity"][violation.severity] += 1
            if violation.counts_toward_threshold:
                stats["threshold_violations"] += 1
            stats["timeline"].append({
                "timestamp": violation.timestamp,
                "type": violation.violation_type,
                "severity": violation.severity
            })

        return stats

    @staticmethod
    def to_response(session: ProctorSession, resumed: bool = False) -> ProctorSessionResponse:
        return ProctorSessionResponse(
            session_id=session.id,
            exam_id=session.exam_id,
            student_id=session.student_id,
            start_instant=to_epoch_seconds(session.start_instant),
            duration_seconds=session.duration_seconds,
            status=SessionStatus(session.status),
            violation_count=session.violation_count or 0,
            resumed=resumed,
        )

    @staticmethod
    def to_detail(session: ProctorSession) -> SessionDetail:
        progress = None
        if session.last_progress_at is not None:
            progress = ProgressSnapshot(
                progress_percent=session.progress_percent or 0,
                current_question_index=session.current_question_index or 0,
                time_remaining_seconds=session.time_remaining_seconds or 0,
                emitted_at=session.last_progress_at,
            )
        return SessionDetail(
            session_id=session.id,
            exam_id=session.exam_id,
            student_id=session.student_id,
            student_name=session.student_name,
            status=SessionStatus(session.status),
            start_instant=to_epoch_seconds(session.start_instant),
            duration_seconds=session.duration_seconds,
            violation_count=session.violation_count or 0,
            progress=progress,
            capabilities={g.capability: bool(g.granted) for g in session.capability_grants},
            termination_reason=session.termination_reason,
        )
