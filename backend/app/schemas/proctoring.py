from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Union


class SessionStatus(str, Enum):
    SETTING_UP = "setting-up"
    ACTIVE = "active"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto-submitted"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.SUBMITTED, SessionStatus.AUTO_SUBMITTED, SessionStatus.TERMINATED)


class Capability(str, Enum):
    EXTERNAL_MONITOR = "external-monitor"
    CAMERA = "camera"
    MICROPHONE = "microphone"
    SCREEN_SHARE = "screen-share"
    FULLSCREEN = "fullscreen"


CAPABILITY_ORDER: List[Capability] = [
    Capability.EXTERNAL_MONITOR,
    Capability.CAMERA,
    Capability.MICROPHONE,
    Capability.SCREEN_SHARE,
    Capability.FULLSCREEN,
]


class TargetRole(str, Enum):
    STUDENT = "student"
    PROCTOR = "proctor"


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SignalingMessage(BaseModel):
    kind: SignalKind
    exam_id: str = Field(..., alias="examId")
    student_id: str = Field(..., alias="studentId")
    target: TargetRole
    payload: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class ProgressSnapshot(BaseModel):
    progress_percent: int = Field(0, ge=0, le=100)
    current_question_index: int = Field(0, ge=0)
    time_remaining_seconds: int = Field(0, ge=0)
    emitted_at: float


class AnswerRecord(BaseModel):
    question_id: str
    answer: Union[str, List[str]] = ""
    time_spent: int = 0


class ExamDefinitionCreate(BaseModel):
    id: str
    title: str
    duration_minutes: int = Field(..., gt=0)
    question_ids: List[str] = Field(default_factory=list)
    prevent_tab_switch: bool = True
    require_fullscreen: bool = True
    require_webcam: bool = True


class ExamDefinition(ExamDefinitionCreate):
    is_active: bool = True

    class Config:
        from_attributes = True


class StartSessionRequest(BaseModel):
    exam_id: str
    student_id: str
    student_name: Optional[str] = None


class ProctorSessionResponse(BaseModel):
    session_id: str
    exam_id: str
    student_id: str
    start_instant: float
    duration_seconds: int
    status: SessionStatus
    violation_count: int = 0
    resumed: bool = False


class UpdateProgressRequest(ProgressSnapshot):
    session_id: str


class ReportActivityRequest(BaseModel):
    session_id: str
    type: str
    description: Optional[str] = None
    severity: Severity = Severity.MEDIUM
    counts_toward_threshold: bool = True
    metadata: Optional[Dict[str, Any]] = None


class ReportActivityResponse(BaseModel):
    recorded: bool
    violation_count: int
    threshold_reached: bool


class CapabilityGrantRequest(BaseModel):
    session_id: str
    capability: Capability
    granted: bool
    timestamp: Optional[float] = None


class SubmitResultRequest(BaseModel):
    session_id: str
    exam_id: str
    answers: List[AnswerRecord]
    time_taken: int = 0
    auto_submitted: bool = False
    reason: Optional[str] = None


class SubmitResultResponse(BaseModel):
    success: bool = True
    redirect: bool = False
    message: str
    result_id: Optional[int] = None
    status: Optional[SessionStatus] = None


class TerminateRequest(BaseModel):
    session_id: str
    reason: str = "Terminated by proctor"


class ProctorMessageRequest(BaseModel):
    session_id: str
    message: str
    type: str = "info"


class ViolationResponse(BaseModel):
    id: int
    session_id: str
    student_id: str
    violation_type: str
    severity: str
    description: Optional[str]
    violation_metadata: Optional[Dict[str, Any]]
    counts_toward_threshold: bool
    resolved: bool
    timestamp: datetime

    class Config:
        from_attributes = True


class SessionDetail(BaseModel):
    session_id: str
    exam_id: str
    student_id: str
    student_name: Optional[str] = None
    status: SessionStatus
    start_instant: float
    duration_seconds: int
    violation_count: int
    progress: Optional[ProgressSnapshot] = None
    capabilities: Dict[str, bool] = Field(default_factory=dict)
    termination_reason: Optional[str] = None
