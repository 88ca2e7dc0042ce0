"""
Tests for the WebRTC media sessions, run against a scripted peer connection
"""
import asyncio
import inspect

import pytest
from aiortc import RTCIceCandidate

from app.core.exceptions import NegotiationError
from app.proctor.peer import PeerMediaSession, ProctorPeerSession, TrackRole, resolve_track_roles
from tests.conftest import FakeTrack

ANSWER = {"answer": {"type": "answer", "sdp": "v=0 fake-answer"}}
CANDIDATE = {"candidate": {"candidate": "candidate:1 1 udp 2122260223 192.168.1.10 50000 typ host",
                           "sdpMid": "0", "sdpMLineIndex": 0}}


class FakeReceiver:
    def __init__(self, track=None):
        self.track = track


class FakeSender:
    def __init__(self, track=None):
        self.track = track


class FakeTransceiver:
    def __init__(self, kind, mid=None, sender=None, receiver=None):
        self.kind = kind
        self.mid = mid
        self.sender = sender or FakeSender()
        self.receiver = receiver or FakeReceiver()


class FakeDescription:
    def __init__(self, type, sdp):
        self.type = type
        self.sdp = sdp


class FakePeerConnection:
    """Just enough of RTCPeerConnection for offer/answer bookkeeping"""

    def __init__(self, remote_kinds=None):
        self.remote_kinds = remote_kinds or []
        self.handlers = {}
        self.transceivers = []
        self.localDescription = None
        self.remoteDescription = None
        self.candidates = []
        self.closed = False
        self.connectionState = "new"

    def on(self, event, f=None):
        if f is None:
            def decorator(handler):
                self.handlers[event] = handler
                return handler
            return decorator
        self.handlers[event] = f
        return f

    async def fire(self, event, *args):
        result = self.handlers[event](*args)
        if inspect.isawaitable(result):
            await result

    def addTrack(self, track):
        sender = FakeSender(track)
        self.transceivers.append(FakeTransceiver(track.kind, sender=sender))
        return sender

    def getTransceivers(self):
        return list(self.transceivers)

    async def createOffer(self):
        return FakeDescription("offer", "v=0 fake-offer")

    async def createAnswer(self):
        return FakeDescription("answer", "v=0 fake-answer")

    async def setLocalDescription(self, description):
        for index, transceiver in enumerate(self.transceivers):
            if transceiver.mid is None:
                transceiver.mid = str(index)
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if description.type == "offer":
            self.transceivers = [
                FakeTransceiver(kind, mid=str(index), receiver=FakeReceiver(FakeTrack(kind)))
                for index, kind in enumerate(self.remote_kinds)
            ]
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class PeerFactory:
    def __init__(self, remote_kinds=None):
        self.remote_kinds = remote_kinds
        self.created = []

    def __call__(self):
        pc = FakePeerConnection(self.remote_kinds)
        self.created.append(pc)
        return pc


async def open_tracks():
    return {"webcam": FakeTrack("video"), "microphone": FakeTrack("audio"), "screen": FakeTrack("video")}


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_event_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def factory():
    return PeerFactory()


@pytest.fixture
def session(fake_relay, factory):
    return PeerMediaSession("exam-1", "student-1", fake_relay, open_tracks, peer_factory=factory,
                            timeout=1.0, max_attempts=3)


class TestOfferer:
    """Test-taker side negotiation"""

    @pytest.mark.asyncio
    async def test_offer_carries_track_roles_by_mid(self, session, fake_relay):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: fake_relay.events("webrtc-offer"))

        offer = fake_relay.events("webrtc-offer")[0]
        assert offer["target"] == "proctor"
        assert offer["payload"]["offer"] == {"type": "offer", "sdp": "v=0 fake-offer"}
        assert offer["payload"]["tracks"] == {"0": "webcam", "1": "microphone", "2": "screen"}

        assert await session.handle_answer(ANSWER)
        await task
        assert session.pc.remoteDescription.sdp == "v=0 fake-answer"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, session, fake_relay, factory):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: fake_relay.events("webrtc-offer"))

        await session.start()
        assert len(factory.created) == 1

        await session.handle_answer(ANSWER)
        await task
        await session.start()

        assert len(factory.created) == 1
        assert len(fake_relay.events("webrtc-offer")) == 1

    @pytest.mark.asyncio
    async def test_malformed_answer_triggers_retry(self, session, fake_relay, factory):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: len(fake_relay.events("webrtc-offer")) == 1)
        assert not await session.handle_answer({"answer": "garbage"})

        await wait_until(lambda: len(fake_relay.events("webrtc-offer")) == 2)
        await session.handle_answer(ANSWER)
        await task

        assert session.attempts == 2
        assert factory.created[0].closed
        assert session.pc is factory.created[1]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, fake_relay, factory):
        session = PeerMediaSession("exam-1", "student-1", fake_relay, open_tracks, peer_factory=factory,
                                   timeout=0.01, max_attempts=2)

        with pytest.raises(NegotiationError):
            await session.start()

        assert len(factory.created) == 2
        assert all(pc.closed for pc in factory.created)
        assert session.pc is None

    @pytest.mark.asyncio
    async def test_late_candidates_are_discarded(self, session, fake_relay, factory):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: fake_relay.events("webrtc-offer"))
        await session.handle_answer(ANSWER)
        await task

        assert await session.handle_remote_candidate(CANDIDATE)
        candidate = factory.created[0].candidates[0]
        assert candidate.ip == "192.168.1.10"
        assert candidate.sdpMid == "0"

        await session.stop()
        assert not await session.handle_remote_candidate(CANDIDATE)
        assert len(factory.created[0].candidates) == 1

    @pytest.mark.asyncio
    async def test_local_candidates_are_forwarded(self, session, fake_relay, factory):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: fake_relay.events("webrtc-offer"))

        candidate = RTCIceCandidate(component=1, foundation="1", ip="192.168.1.10", port=50000,
                                    priority=2122260223, protocol="udp", type="host", sdpMid="0", sdpMLineIndex=0)
        await factory.created[0].fire("icecandidate", candidate)

        sent = fake_relay.events("webrtc-ice-candidate")[0]["payload"]["candidate"]
        assert sent["candidate"] == "candidate:1 1 udp 2122260223 192.168.1.10 50000 typ host"
        assert sent["sdpMid"] == "0"

        await session.handle_answer(ANSWER)
        await task

    @pytest.mark.asyncio
    async def test_stop_releases_tracks_and_pending_offer(self, session, fake_relay):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: fake_relay.events("webrtc-offer"))
        tracks = list(session.tracks.values())

        await session.stop()
        await task

        assert all(track.stopped for track in tracks)
        assert session.pc is None

    @pytest.mark.asyncio
    async def test_restart_reuses_tracks(self, session, fake_relay, factory):
        task = asyncio.create_task(session.start())
        await wait_until(lambda: fake_relay.events("webrtc-offer"))
        await session.handle_answer(ANSWER)
        await task
        tracks = dict(session.tracks)

        restart = asyncio.create_task(session.restart())
        await wait_until(lambda: len(fake_relay.events("webrtc-offer")) == 2)
        await session.handle_answer(ANSWER)
        await restart

        assert factory.created[0].closed
        assert session.tracks == tracks


class TestAnswerer:
    """Supervisor side"""

    @pytest.mark.asyncio
    async def test_answer_uses_track_metadata(self, fake_relay):
        factory = PeerFactory(remote_kinds=["video", "audio", "video"])
        received = []
        peer = ProctorPeerSession("exam-1", "student-1", fake_relay, peer_factory=factory, on_streams=received.append)

        await peer.handle_offer({
            "offer": {"type": "offer", "sdp": "v=0 fake-offer"},
            "tracks": {"0": "screen", "1": "microphone", "2": "webcam"},
        })

        transceivers = factory.created[0].transceivers
        assert peer.streams["screen"] is transceivers[0].receiver.track
        assert peer.streams["webcam"] is transceivers[2].receiver.track
        assert received == [peer.streams]
        answer = fake_relay.events("webrtc-answer")[0]
        assert answer["target"] == "student"
        assert answer["payload"] == {"answer": {"type": "answer", "sdp": "v=0 fake-answer"}}

    @pytest.mark.asyncio
    async def test_new_offer_replaces_connection(self, fake_relay):
        factory = PeerFactory(remote_kinds=["video"])
        peer = ProctorPeerSession("exam-1", "student-1", fake_relay, peer_factory=factory)
        offer = {"offer": {"type": "offer", "sdp": "v=0"}}

        await peer.handle_offer(offer)
        await peer.handle_offer(offer)

        assert factory.created[0].closed
        assert peer.pc is factory.created[1]

    @pytest.mark.asyncio
    async def test_closed_session_ignores_offers(self, fake_relay):
        peer = ProctorPeerSession("exam-1", "student-1", fake_relay, peer_factory=PeerFactory())
        await peer.close()

        assert not await peer.handle_offer({"offer": {"type": "offer", "sdp": "v=0"}})
        assert fake_relay.emitted == []


class TestResolveTrackRoles:

    def test_ordinal_fallback(self):
        tracks = [FakeTrack("video"), FakeTrack("audio"), FakeTrack("video")]
        transceivers = [
            FakeTransceiver(t.kind, mid=str(i), receiver=FakeReceiver(t)) for i, t in enumerate(tracks)
        ]

        roles = resolve_track_roles(transceivers)

        assert roles == {
            TrackRole.WEBCAM.value: tracks[0],
            TrackRole.MICROPHONE.value: tracks[1],
            TrackRole.SCREEN.value: tracks[2],
        }
