"""
Sequential capability acquisition.

Steps run in a fixed order: external-monitor check, camera, microphone,
screen share, fullscreen. A step is only attempted when every earlier step
has been granted; a denied step stays current and can be retried. Each
acquired track is released right after it has been checked, the live media
session acquires its own tracks later.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..core.config import settings
from ..core.exceptions import (
    CapabilityError,
    DeviceMissingError,
    InvalidTransitionError,
    PermissionDeniedError,
    ShareScopeRejectedError,
)
from ..schemas.proctoring import Capability, CAPABILITY_ORDER

logger = logging.getLogger(__name__)

StatusEmitter = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class DisplayGeometry:
    screen_width: int
    screen_height: int
    viewport_width: int
    viewport_height: int
    screen_count: int = 1


@dataclass
class AcquiredTrack:
    """A captured track as reported by the platform"""
    kind: str
    label: str = ""
    width: int = 0
    height: int = 0
    display_surface: Optional[str] = None
    track: Any = None
    stopped: bool = False

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        if self.track is not None:
            self.track.stop()


class MediaPlatform(ABC):
    """Device access used by the stepper and the media session"""

    @abstractmethod
    async def display_geometry(self) -> DisplayGeometry:
        ...

    @abstractmethod
    async def acquire(self, capability: Capability) -> List[AcquiredTrack]:
        """Acquire tracks for camera, microphone or screen-share.

        Raises PermissionDeniedError when refused, DeviceMissingError when
        nothing backs the capability.
        """

    @abstractmethod
    async def enter_fullscreen(self) -> bool:
        ...

    @abstractmethod
    async def open_tracks(self) -> Dict[str, Any]:
        """Live tracks for the media session keyed by role (webcam, microphone, screen)"""


@dataclass(frozen=True)
class Granted:
    capability: Capability
    detail: Dict[str, Any] = field(default_factory=dict)
    granted = True


@dataclass(frozen=True)
class Denied:
    capability: Capability
    reason: str
    granted = False


@dataclass(frozen=True)
class DeviceMissing:
    capability: Capability
    reason: str
    granted = False


StepResult = Union[Granted, Denied, DeviceMissing]


@dataclass
class GrantRecord:
    capability: Capability
    granted: bool
    timestamp: float


def is_external_monitor(geometry: DisplayGeometry, margin: int = None) -> bool:
    """Screen noticeably larger than the viewport, or more than one screen attached"""
    margin = settings.external_monitor_margin_px if margin is None else margin
    if geometry.screen_count > 1:
        return True
    return (
        geometry.screen_width > geometry.viewport_width + margin
        or geometry.screen_height > geometry.viewport_height + margin
    )


def validate_share_scope(track: AcquiredTrack, min_width: int = None, min_height: int = None) -> Optional[str]:
    """Returns None when the share covers an entire screen, else the rejection reason."""
    min_width = settings.screen_share_min_width if min_width is None else min_width
    min_height = settings.screen_share_min_height if min_height is None else min_height

    if track.width < min_width or track.height < min_height:
        return f"shared surface is {track.width}x{track.height}, need at least {min_width}x{min_height}"

    label = (track.label or "").lower()
    if "tab" in label or "window" in label:
        return "a tab or window was shared instead of the entire screen"
    if "screen" not in label and track.display_surface != "monitor":
        return "shared surface is not an entire screen"
    return None


class CapabilityAcquisitionStepper:
    def __init__(
        self,
        platform: MediaPlatform,
        exam_id: str,
        student_id: str,
        emit_status: Optional[StatusEmitter] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.platform = platform
        self.exam_id = exam_id
        self.student_id = student_id
        self.emit_status = emit_status
        self.timeout = settings.capability_request_timeout_seconds if timeout is None else timeout
        self.clock = clock

        self._index = 0
        self.grants: List[GrantRecord] = []
        self.missing: Dict[Capability, str] = {}

    @property
    def steps(self) -> List[Capability]:
        return list(CAPABILITY_ORDER)

    def current_step(self) -> Optional[Capability]:
        if self._index >= len(CAPABILITY_ORDER):
            return None
        return CAPABILITY_ORDER[self._index]

    def is_complete(self) -> bool:
        return self._index >= len(CAPABILITY_ORDER)

    def granted_capabilities(self) -> List[Capability]:
        return list(CAPABILITY_ORDER[:self._index])

    async def request(self, step: Capability) -> StepResult:
        step = Capability(step)
        current = self.current_step()
        if step != current:
            raise InvalidTransitionError(current.value if current else "complete", step.value)

        try:
            result = await asyncio.wait_for(self._attempt(step), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Capability request for {step.value} timed out after {self.timeout}s")
            result = Denied(step, "timeout")
        except DeviceMissingError as e:
            result = DeviceMissing(step, e.message)
        except CapabilityError as e:
            result = Denied(step, e.message)

        if isinstance(result, Granted):
            self._index += 1
            self.missing.pop(step, None)
        elif isinstance(result, DeviceMissing):
            self.missing[step] = result.reason

        self.grants.append(GrantRecord(step, result.granted, self.clock()))
        await self._emit(step, result)
        return result

    async def _attempt(self, step: Capability) -> StepResult:
        if step == Capability.EXTERNAL_MONITOR:
            geometry = await self.platform.display_geometry()
            if is_external_monitor(geometry):
                return Denied(step, "external-monitor-detected")
            return Granted(step)

        if step == Capability.FULLSCREEN:
            if not await self.platform.enter_fullscreen():
                raise PermissionDeniedError(step.value, "fullscreen was refused")
            return Granted(step)

        tracks = await self.platform.acquire(step) or []
        try:
            if not tracks:
                raise DeviceMissingError(step.value, f"no {step.value} device available")
            if step == Capability.SCREEN_SHARE:
                video = next((t for t in tracks if t.kind == "video"), tracks[0])
                reason = validate_share_scope(video)
                if reason:
                    raise ShareScopeRejectedError(step.value, reason)
                return Granted(step, {"label": video.label, "width": video.width, "height": video.height})
            return Granted(step, {"label": tracks[0].label})
        except ShareScopeRejectedError as e:
            logger.info(f"Screen share rejected: {e.message}")
            return Denied(step, "share-scope-rejected")
        finally:
            for track in tracks:
                track.stop()

    async def _emit(self, step: Capability, result: StepResult):
        if self.emit_status is None:
            return
        data = {
            "examId": self.exam_id,
            "studentId": self.student_id,
            "permission": step.value,
            "granted": result.granted,
        }
        if not result.granted:
            data["reason"] = result.reason
        try:
            await self.emit_status("student-permission-status", data)
        except Exception as e:
            logger.warning(f"Failed to publish permission status for {step.value}: {e}")
