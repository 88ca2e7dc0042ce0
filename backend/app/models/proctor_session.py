from sqlalchemy import Column, String, Integer, Float, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now_naive


class ProctorSession(Base):
    __tablename__ = "proctor_sessions"
    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", name="uq_proctor_sessions_exam_student"),
        Index("ix_proctor_sessions_scope_status", "exam_id", "student_id", "status"),
    )

    id = Column(String, primary_key=True, index=True)
    exam_id = Column(String, ForeignKey("exams.id"), nullable=False)
    student_id = Column(String, nullable=False, index=True)
    student_name = Column(String, nullable=True)
    start_instant = Column(DateTime, default=utc_now_naive, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    status = Column(String, default="active", nullable=False)

    violation_count = Column(Integer, default=0)
    progress_percent = Column(Integer, default=0)
    current_question_index = Column(Integer, default=0)
    time_remaining_seconds = Column(Integer, nullable=True)
    last_progress_at = Column(Float, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    termination_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now_naive)
    updated_at = Column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    exam = relationship("Exam", back_populates="sessions")
    violations = relationship("ProctoringViolation", back_populates="session", order_by="ProctoringViolation.id")
    capability_grants = relationship("CapabilityGrant", back_populates="session")
    result = relationship("ExamResult", back_populates="session", uselist=False)

    def __repr__(self):
        return f"<ProctorSession {self.id} exam={self.exam_id} student={self.student_id} {self.status}>"
