from .proctoring import (
    SessionStatus,
    Capability,
    CAPABILITY_ORDER,
    TargetRole,
    SignalKind,
    Severity,
    SignalingMessage,
    ProgressSnapshot,
    AnswerRecord,
    ExamDefinition,
    ExamDefinitionCreate,
    StartSessionRequest,
    ProctorSessionResponse,
    UpdateProgressRequest,
    ReportActivityRequest,
    ReportActivityResponse,
    CapabilityGrantRequest,
    SubmitResultRequest,
    SubmitResultResponse,
    TerminateRequest,
    ProctorMessageRequest,
    ViolationResponse,
    SessionDetail,
)
__all__ = [
    "SessionStatus",
    "Capability",
    "CAPABILITY_ORDER",
    "TargetRole",
    "SignalKind",
    "Severity",
    "SignalingMessage",
    "ProgressSnapshot",
    "AnswerRecord",
    "ExamDefinition",
    "ExamDefinitionCreate",
    "StartSessionRequest",
    "ProctorSessionResponse",
    "UpdateProgressRequest",
    "ReportActivityRequest",
    "ReportActivityResponse",
    "CapabilityGrantRequest",
    "SubmitResultRequest",
    "SubmitResultResponse",
    "TerminateRequest",
    "ProctorMessageRequest",
    "ViolationResponse",
    "SessionDetail",
]
