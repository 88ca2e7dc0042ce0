"""Error taxonomy shared by the relay server and the proctoring client."""
from typing import Optional


class ProctorError(Exception):
    """Base class for proctoring protocol errors"""


class CapabilityError(ProctorError):
    """A capability step could not be granted"""

    def __init__(self, capability: str, message: str):
        super().__init__(message)
        self.capability = capability
        self.message = message


class PermissionDeniedError(CapabilityError):
    """User refused the prompt; the same step may be retried"""


class DeviceMissingError(CapabilityError):
    """No device backs this capability; the session cannot become active"""


class ShareScopeRejectedError(CapabilityError):
    """Screen-share grant did not cover the entire screen"""


class NegotiationError(ProctorError):
    """Offer/answer exchange failed or timed out"""


class SubmissionConfirmationRequired(ProctorError):
    """Manual submit with zero answers needs explicit confirmation"""


class InvalidTransitionError(ProctorError):
    def __init__(self, status: str, event: str):
        super().__init__(f"Event '{event}' is not allowed in status '{status}'")
        self.status = status
        self.event = event


class SessionNotFoundError(ProctorError):
    def __init__(self, session_id: Optional[str] = None):
        super().__init__(f"Proctor session not found: {session_id}")
        self.session_id = session_id


class ExamNotFoundError(ProctorError):
    def __init__(self, exam_id: Optional[str] = None):
        super().__init__(f"Exam not found: {exam_id}")
        self.exam_id = exam_id


class SessionConflictError(ProctorError):
    """Operation conflicts with the persisted session state"""
