"""Socket.IO client for the signaling relay."""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import socketio

from ..core.config import settings

logger = logging.getLogger(__name__)


class RelayClient:
    """Thin wrapper over ``socketio.AsyncClient`` that re-subscribes after reconnects"""

    def __init__(self, url: Optional[str] = None, client: Optional[socketio.AsyncClient] = None):
        self.url = url or settings.relay_url
        self.sio = client or socketio.AsyncClient(reconnection=True)
        self._subscriptions: List[Tuple[str, Any]] = []
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)

    async def connect(self):
        await self.sio.connect(self.url, transports=["websocket"])

    async def disconnect(self):
        self._subscriptions = []
        await self.sio.disconnect()

    @property
    def connected(self) -> bool:
        return self.sio.connected

    def on(self, event: str, handler: Callable):
        self.sio.on(event, handler)

    async def emit(self, event: str, data: Dict[str, Any]):
        await self.sio.emit(event, data)

    async def call(self, event: str, data: Any, timeout: float = 10) -> Any:
        return await self.sio.call(event, data, timeout=timeout)

    async def join_exam(self, exam_id: str, student_id: str) -> Any:
        data = {"examId": exam_id, "studentId": student_id}
        if ("join-exam", data) not in self._subscriptions:
            self._subscriptions.append(("join-exam", data))
        return await self.call("join-exam", data)

    async def join_proctor(self, exam_id: str, student_id: Optional[str] = None) -> Any:
        data = {"examId": exam_id} if student_id is None else {"examId": exam_id, "studentId": student_id}
        if ("join-proctor", data) not in self._subscriptions:
            self._subscriptions.append(("join-proctor", data))
        return await self.call("join-proctor", data)

    async def _on_connect(self):
        logger.info(f"Connected to relay {self.url}")
        # the server forgets subscriptions when a socket drops
        for event, data in self._subscriptions:
            try:
                await self.sio.emit(event, data)
            except Exception as e:
                logger.warning(f"Failed to re-subscribe {event}: {e}")

    async def _on_disconnect(self, *args):
        logger.warning(f"Disconnected from relay {self.url}")
