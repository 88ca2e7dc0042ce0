from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Boolean
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now_naive


class ProctoringViolation(Base):
    __tablename__ = "proctoring_violations"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("proctor_sessions.id"), nullable=False, index=True)
    student_id = Column(String, nullable=False)
    violation_type = Column(String, nullable=False)
    severity = Column(String, default="medium")
    description = Column(Text)
    violation_metadata = Column(JSON)
    counts_toward_threshold = Column(Boolean, default=True)
    resolved = Column(Boolean, default=False)
    timestamp = Column(DateTime, default=utc_now_naive)

    session = relationship("ProctorSession", back_populates="violations")

    def __repr__(self):
        return f"<ProctoringViolation {self.violation_type} for session {self.session_id}>"
