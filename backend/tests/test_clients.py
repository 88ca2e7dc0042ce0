"""
Tests for the relay socket client and the local media platform
"""
import pytest

from app.core.exceptions import DeviceMissingError, PermissionDeniedError
from app.proctor import media
from app.proctor.capabilities import DisplayGeometry
from app.proctor.media import LocalMediaPlatform
from app.proctor.relay_client import RelayClient
from app.schemas.proctoring import Capability
from tests.conftest import FakeTrack


class FakeSocketClient:
    def __init__(self):
        self.handlers = {}
        self.emitted = []
        self.calls = []
        self.connected = False

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, transports=None):
        self.connected = True
        await self.handlers["connect"]()

    async def disconnect(self):
        self.connected = False

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def call(self, event, data=None, timeout=None):
        self.calls.append((event, data))
        return {"success": True}


class TestRelayClient:
    """Subscriptions survive reconnects"""

    @pytest.mark.asyncio
    async def test_joins_are_replayed_on_reconnect(self):
        sio = FakeSocketClient()
        client = RelayClient("http://relay", client=sio)
        await client.connect()
        assert sio.emitted == []

        assert await client.join_exam("exam-1", "student-1") == {"success": True}
        await client.join_exam("exam-1", "student-1")
        await client.join_proctor("exam-1")

        await sio.handlers["connect"]()

        assert sio.emitted == [
            ("join-exam", {"examId": "exam-1", "studentId": "student-1"}),
            ("join-proctor", {"examId": "exam-1"}),
        ]

    @pytest.mark.asyncio
    async def test_disconnect_forgets_subscriptions(self):
        sio = FakeSocketClient()
        client = RelayClient("http://relay", client=sio)
        await client.connect()
        await client.join_proctor("exam-1", "student-1")

        await client.disconnect()
        await client.connect()

        assert sio.emitted == []
        assert client.connected

    @pytest.mark.asyncio
    async def test_handlers_and_emit_pass_through(self):
        sio = FakeSocketClient()
        client = RelayClient("http://relay", client=sio)

        async def handler(data):
            return data

        client.on("proctor-message", handler)
        await client.emit("student-progress", {"examId": "exam-1"})

        assert sio.handlers["proctor-message"] is handler
        assert sio.emitted == [("student-progress", {"examId": "exam-1"})]


class FakePlayer:
    def __init__(self, video=None, audio=None):
        self.video = video
        self.audio = audio


class TestLocalMediaPlatform:
    """Device access through aiortc's MediaPlayer"""

    def platform(self):
        return LocalMediaPlatform(DisplayGeometry(1920, 1080, 1920, 1080), formats=("v4l2", "pulse", "x11grab"))

    @pytest.mark.asyncio
    async def test_screen_share_reports_full_monitor(self, monkeypatch):
        opened = []

        def player(file, format=None, options=None):
            opened.append((file, format, options))
            return FakePlayer(video=FakeTrack("video"))

        monkeypatch.setattr(media, "MediaPlayer", player)

        tracks = await self.platform().acquire(Capability.SCREEN_SHARE)

        assert opened == [(":0.0", "x11grab", {"video_size": "1920x1080"})]
        assert tracks[0].display_surface == "monitor"
        assert (tracks[0].width, tracks[0].height) == (1920, 1080)

    @pytest.mark.asyncio
    async def test_missing_device(self, monkeypatch):
        def player(file, format=None, options=None):
            raise FileNotFoundError(f"No such device: {file}")

        monkeypatch.setattr(media, "MediaPlayer", player)

        with pytest.raises(DeviceMissingError):
            await self.platform().acquire(Capability.CAMERA)

    @pytest.mark.asyncio
    async def test_permission_refused(self, monkeypatch):
        def player(file, format=None, options=None):
            raise PermissionError("Permission denied")

        monkeypatch.setattr(media, "MediaPlayer", player)

        with pytest.raises(PermissionDeniedError):
            await self.platform().acquire(Capability.MICROPHONE)

    @pytest.mark.asyncio
    async def test_microphone_without_audio_stream(self, monkeypatch):
        monkeypatch.setattr(media, "MediaPlayer", lambda file, format=None, options=None: FakePlayer())

        assert await self.platform().acquire(Capability.MICROPHONE) == []

    @pytest.mark.asyncio
    async def test_open_tracks_by_role(self, monkeypatch):
        monkeypatch.setattr(media, "MediaPlayer", lambda file, format=None, options=None: FakePlayer(
            video=FakeTrack("video"), audio=FakeTrack("audio"),
        ))

        tracks = await self.platform().open_tracks()

        assert sorted(tracks) == ["microphone", "screen", "webcam"]
        assert tracks["microphone"].kind == "audio"
