from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now_naive


class Exam(Base):
    """Exam definition: duration, question order and proctoring flags (no question bodies)"""
    __tablename__ = "exams"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    question_ids = Column(JSON, nullable=False, default=list)
    prevent_tab_switch = Column(Boolean, default=True)
    require_fullscreen = Column(Boolean, default=True)
    require_webcam = Column(Boolean, default=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utc_now_naive)

    sessions = relationship("ProctorSession", back_populates="exam")

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60

    def __repr__(self):
        return f"<Exam {self.id} ({self.duration_minutes} min)>"
