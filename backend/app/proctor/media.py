"""MediaPlatform backed by local capture devices through aiortc's MediaPlayer (ffmpeg)."""
import logging
import platform as host_platform
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc.contrib.media import MediaPlayer

from ..core.exceptions import DeviceMissingError, PermissionDeniedError
from ..schemas.proctoring import Capability
from .capabilities import AcquiredTrack, DisplayGeometry, MediaPlatform

logger = logging.getLogger(__name__)

# ffmpeg input formats per host OS: (camera, microphone, screen)
DEFAULT_FORMATS = {
    "Linux": ("v4l2", "pulse", "x11grab"),
    "Darwin": ("avfoundation", "avfoundation", "avfoundation"),
    "Windows": ("dshow", "dshow", "gdigrab"),
}


class LocalMediaPlatform(MediaPlatform):
    def __init__(
        self,
        geometry: DisplayGeometry,
        camera_device: str = "/dev/video0",
        microphone_device: str = "default",
        screen_device: str = ":0.0",
        formats: Optional[tuple] = None,
        fullscreen_handler: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.geometry = geometry
        self.camera_device = camera_device
        self.microphone_device = microphone_device
        self.screen_device = screen_device
        self.formats = formats or DEFAULT_FORMATS.get(host_platform.system(), DEFAULT_FORMATS["Linux"])
        self.fullscreen_handler = fullscreen_handler

    async def display_geometry(self) -> DisplayGeometry:
        return self.geometry

    def _open(self, capability: Capability) -> MediaPlayer:
        camera_format, microphone_format, screen_format = self.formats
        try:
            if capability == Capability.CAMERA:
                return MediaPlayer(self.camera_device, format=camera_format, options={"video_size": "640x480"})
            if capability == Capability.MICROPHONE:
                return MediaPlayer(self.microphone_device, format=microphone_format)
            return MediaPlayer(
                self.screen_device,
                format=screen_format,
                options={"video_size": f"{self.geometry.screen_width}x{self.geometry.screen_height}"},
            )
        except PermissionError as e:
            raise PermissionDeniedError(capability.value, f"access to {capability.value} refused: {e}")
        except OSError as e:
            # av raises OSError subclasses for missing or busy devices
            raise DeviceMissingError(capability.value, f"{capability.value} device unavailable: {e}")

    async def acquire(self, capability: Capability) -> List[AcquiredTrack]:
        player = self._open(capability)
        if capability == Capability.MICROPHONE:
            if player.audio is None:
                return []
            return [AcquiredTrack("audio", label=f"microphone {self.microphone_device}", track=player.audio)]

        if player.video is None:
            return []
        if capability == Capability.SCREEN_SHARE:
            return [AcquiredTrack(
                "video",
                label=f"screen {self.screen_device}",
                width=self.geometry.screen_width,
                height=self.geometry.screen_height,
                display_surface="monitor",
                track=player.video,
            )]
        return [AcquiredTrack("video", label=f"camera {self.camera_device}", width=640, height=480, track=player.video)]

    async def enter_fullscreen(self) -> bool:
        if self.fullscreen_handler is None:
            return True
        return await self.fullscreen_handler()

    async def open_tracks(self) -> Dict[str, Any]:
        tracks: Dict[str, Any] = {}
        camera = self._open(Capability.CAMERA)
        microphone = self._open(Capability.MICROPHONE)
        screen = self._open(Capability.SCREEN_SHARE)
        if camera.video is not None:
            tracks["webcam"] = camera.video
        if microphone.audio is not None:
            tracks["microphone"] = microphone.audio
        if screen.video is not None:
            tracks["screen"] = screen.video
        logger.info(f"Opened media tracks: {sorted(tracks)}")
        return tracks
