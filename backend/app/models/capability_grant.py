from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from ..core.database import Base
from ..utils.timezone import utc_now_naive


class CapabilityGrant(Base):
    __tablename__ = "capability_grants"
    __table_args__ = (
        UniqueConstraint("session_id", "capability", name="uq_capability_grants_session_capability"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("proctor_sessions.id"), nullable=False)
    capability = Column(String, nullable=False)
    granted = Column(Boolean, default=False)
    timestamp = Column(DateTime, default=utc_now_naive)

    session = relationship("ProctorSession", back_populates="capability_grants")
