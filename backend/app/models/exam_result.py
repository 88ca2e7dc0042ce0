from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now_naive


class ExamResult(Base):
    """Final submission of a proctored session; one row per session"""
    __tablename__ = "exam_results"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("proctor_sessions.id"), nullable=False, unique=True)
    exam_id = Column(String, nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)

    answers = Column(JSON, nullable=False, default=list)
    answered_count = Column(Integer, default=0)
    time_taken = Column(Integer, default=0)
    auto_submitted = Column(Boolean, default=False)
    reason = Column(String, nullable=True)
    violations_count = Column(Integer, default=0)

    submitted_at = Column(DateTime, default=utc_now_naive)

    session = relationship("ProctorSession", back_populates="result")
