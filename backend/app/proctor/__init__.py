from .capabilities import (
    CapabilityAcquisitionStepper,
    MediaPlatform,
    DisplayGeometry,
    AcquiredTrack,
    Granted,
    Denied,
    DeviceMissing,
)
from .state import SessionStateStore
from .timer import SessionTimer
from .integrity import IntegrityMonitor, ViolationEvent
from .progress import ProgressReporter
from .peer import PeerMediaSession, ProctorPeerSession, TrackRole
from .controller import ExamSessionController, SessionEvent, transition
from .api_client import ProctorApiClient
from .relay_client import RelayClient
from .supervisor import SupervisorDashboard

__all__ = [
    "CapabilityAcquisitionStepper",
    "MediaPlatform",
    "DisplayGeometry",
    "AcquiredTrack",
    "Granted",
    "Denied",
    "DeviceMissing",
    "SessionStateStore",
    "SessionTimer",
    "IntegrityMonitor",
    "ViolationEvent",
    "ProgressReporter",
    "PeerMediaSession",
    "ProctorPeerSession",
    "TrackRole",
    "ExamSessionController",
    "SessionEvent",
    "transition",
    "ProctorApiClient",
    "RelayClient",
    "SupervisorDashboard",
]
