"""
WebRTC media sessions between a test-taker and a supervisor, built on aiortc.

The test-taker offers webcam, microphone and screen tracks; the supervisor
answers. The offer carries ``tracks: {mid: role}`` so the answerer can tell
the webcam and the screen apart without relying on track order.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..core.config import settings
from ..core.exceptions import NegotiationError
from ..schemas.proctoring import TargetRole

logger = logging.getLogger(__name__)


class TrackRole(str, Enum):
    WEBCAM = "webcam"
    MICROPHONE = "microphone"
    SCREEN = "screen"


OFFER_ORDER = [TrackRole.WEBCAM, TrackRole.MICROPHONE, TrackRole.SCREEN]


def default_peer_factory(ice_servers: Optional[List[Dict[str, Any]]] = None) -> Callable[[], RTCPeerConnection]:
    servers = settings.ice_servers if ice_servers is None else ice_servers

    def factory() -> RTCPeerConnection:
        return RTCPeerConnection(configuration=RTCConfiguration(iceServers=[RTCIceServer(**s) for s in servers]))

    return factory


def describe(description) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def resolve_track_roles(transceivers, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Map inbound transceivers to roles by mid; falls back to order (first video = webcam, second = screen)."""
    metadata = metadata or {}
    roles: Dict[str, Any] = {}
    videos = 0
    for transceiver in transceivers:
        track = transceiver.receiver.track
        role = metadata.get(transceiver.mid) if transceiver.mid is not None else None
        if role is None:
            if transceiver.kind == "audio":
                role = TrackRole.MICROPHONE.value
            else:
                role = TrackRole.WEBCAM.value if videos == 0 else TrackRole.SCREEN.value
        if transceiver.kind == "video":
            videos += 1
        roles[TrackRole(role).value] = track
    return roles


class _PeerBase:
    local_role: TargetRole
    remote_role: TargetRole

    def __init__(self, exam_id: str, student_id: str, relay, peer_factory: Optional[Callable[[], Any]] = None):
        self.exam_id = exam_id
        self.student_id = student_id
        self.relay = relay
        self.peer_factory = peer_factory or default_peer_factory()
        self.pc = None
        self.closed = False

    def _new_connection(self):
        pc = self.peer_factory()

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            await self.send_local_candidate(pc, candidate)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"{self.local_role.value} peer for {self.exam_id}/{self.student_id}: {pc.connectionState}")

        return pc

    async def _signal(self, kind: str, payload: Dict[str, Any]):
        await self.relay.emit(f"webrtc-{kind}", {
            "examId": self.exam_id,
            "studentId": self.student_id,
            "target": self.remote_role.value,
            "payload": payload,
        })

    async def send_local_candidate(self, pc, candidate):
        if self.closed or pc is not self.pc or candidate is None:
            return
        try:
            await self._signal("ice-candidate", {"candidate": {
                "candidate": "candidate:" + candidate_to_sdp(candidate),
                "sdpMid": candidate.sdpMid,
                "sdpMLineIndex": candidate.sdpMLineIndex,
            }})
        except Exception as e:
            logger.warning(f"Failed to forward local ICE candidate: {e}")

    async def handle_remote_candidate(self, payload: Dict[str, Any]) -> bool:
        """Apply a remote candidate; anything arriving with no live connection is discarded."""
        if self.closed or self.pc is None:
            return False
        data = payload.get("candidate", payload)
        if isinstance(data, str):
            data = {"candidate": data}
        sdp = (data or {}).get("candidate") or ""
        if not sdp:
            return False
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        candidate = candidate_from_sdp(sdp)
        candidate.sdpMid = data.get("sdpMid")
        candidate.sdpMLineIndex = data.get("sdpMLineIndex")
        await self.pc.addIceCandidate(candidate)
        return True

    async def _close_connection(self):
        pc, self.pc = self.pc, None
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")


class PeerMediaSession(_PeerBase):
    """Test-taker side: offers local tracks to the supervisor"""
    local_role = TargetRole.STUDENT
    remote_role = TargetRole.PROCTOR

    def __init__(
        self,
        exam_id: str,
        student_id: str,
        relay,
        media_source: Callable[[], Awaitable[Dict[str, Any]]],
        peer_factory: Optional[Callable[[], Any]] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        super().__init__(exam_id, student_id, relay, peer_factory)
        self.media_source = media_source
        self.timeout = settings.negotiation_timeout_seconds if timeout is None else timeout
        self.max_attempts = settings.negotiation_max_attempts if max_attempts is None else max_attempts

        self.tracks: Dict[str, Any] = {}
        self.track_roles: Dict[str, str] = {}
        self.attempts = 0
        self._answer: Optional[asyncio.Future] = None
        self._starting = False

    async def start(self):
        """Negotiate with the supervisor. A no-op while a connection exists."""
        if self.closed or self.pc is not None or self._starting:
            return
        self._starting = True
        try:
            if not self.tracks:
                self.tracks = await self.media_source()

            last_error = "timeout"
            for attempt in range(1, self.max_attempts + 1):
                self.attempts = attempt
                try:
                    await asyncio.wait_for(self._negotiate(), timeout=self.timeout)
                    return
                except (asyncio.TimeoutError, NegotiationError) as e:
                    await self._close_connection()
                    if self.closed:
                        return
                    last_error = str(e) or "timeout"
                    logger.warning(f"Negotiation attempt {attempt}/{self.max_attempts} failed: {last_error}")
            raise NegotiationError(f"negotiation failed after {self.attempts} attempts: {last_error}")
        finally:
            self._starting = False

    async def restart(self):
        """Renegotiate on a fresh connection, reusing the acquired tracks."""
        if self.closed:
            return
        if self._starting:
            # abandon the pending attempt so the next offer goes out now
            if self._answer is not None and not self._answer.done():
                self._answer.set_exception(NegotiationError("renegotiating for a new viewer"))
            return
        await self._close_connection()
        await self.start()

    async def _negotiate(self):
        pc = self._new_connection()
        self.pc = pc
        self._answer = asyncio.get_event_loop().create_future()

        sender_roles = {}
        for role in OFFER_ORDER:
            track = self.tracks.get(role.value)
            if track is not None:
                sender = pc.addTrack(track)
                sender_roles[id(sender)] = role.value

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"could not create offer: {e}")

        self.track_roles = {
            t.mid: sender_roles[id(t.sender)]
            for t in pc.getTransceivers()
            if t.mid is not None and id(t.sender) in sender_roles
        }
        try:
            await self._signal("offer", {"offer": describe(pc.localDescription), "tracks": self.track_roles})
        except Exception as e:
            raise NegotiationError(f"could not send offer: {e}")

        answer = await self._answer
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))
        except Exception as e:
            raise NegotiationError(f"could not apply answer: {e}")
        logger.info(f"Media session negotiated for exam={self.exam_id} student={self.student_id}")

    async def handle_answer(self, payload: Dict[str, Any]) -> bool:
        if self.closed or self._answer is None or self._answer.done():
            return False
        answer = payload.get("answer", payload)
        if not isinstance(answer, dict) or "sdp" not in answer:
            self._answer.set_exception(NegotiationError("malformed answer"))
            return False
        self._answer.set_result(answer)
        return True

    async def stop(self):
        """Close the connection and release every local track"""
        self.closed = True
        if self._answer is not None and not self._answer.done():
            self._answer.set_exception(NegotiationError("media session closed"))
        await self._close_connection()
        for track in self.tracks.values():
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"Error stopping track: {e}")
        self.tracks = {}


class ProctorPeerSession(_PeerBase):
    """Supervisor side: answers a test-taker's offer and exposes their streams by role"""
    local_role = TargetRole.PROCTOR
    remote_role = TargetRole.STUDENT

    def __init__(self, exam_id: str, student_id: str, relay, peer_factory: Optional[Callable[[], Any]] = None,
                 on_streams: Optional[Callable[[Dict[str, Any]], None]] = None):
        super().__init__(exam_id, student_id, relay, peer_factory)
        self.on_streams = on_streams
        self.streams: Dict[str, Any] = {}

    async def handle_offer(self, payload: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        offer = payload.get("offer", payload)
        # a fresh offer replaces the previous negotiation
        await self._close_connection()
        pc = self._new_connection()
        self.pc = pc

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
            self.streams = resolve_track_roles(pc.getTransceivers(), payload.get("tracks"))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            await self._close_connection()
            raise NegotiationError(f"could not answer offer: {e}")

        await self._signal("answer", {"answer": describe(pc.localDescription)})
        if self.on_streams:
            self.on_streams(self.streams)
        return True

    async def close(self):
        self.closed = True
        self.streams = {}
        await self._close_connection()
