from .exam import Exam
from .proctor_session import ProctorSession
from .proctoring_violations import ProctoringViolation
from .capability_grant import CapabilityGrant
from .exam_result import ExamResult

__all__ = [
    "Exam",
    "ProctorSession",
    "ProctoringViolation",
    "CapabilityGrant",
    "ExamResult"
]
