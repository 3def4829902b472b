"""
Transcription session state machine.

    idle -> connecting -> ready -> streaming -> closing -> closed
    any state -> closed on upstream error or unrequested termination
"""

import asyncio
from enum import Enum
from typing import Callable, List, Optional, Tuple

from app.core.exceptions import UpstreamSessionError
from app.core.logging import get_logger
from app.models.transcript import AudioFrame, TranscriptEvent
from app.services.streaming_stt import (
    CloseCallback,
    EventCallback,
    Unsubscribe,
    UpstreamConnection,
)

logger = get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


class TranscriptionSession:
    """Owns one upstream streaming dialogue for one client connection."""

    def __init__(self, connection: UpstreamConnection, session_id: str):
        self.session_id = session_id
        self.state = SessionState.IDLE
        self.frames_sent = 0
        self.frames_dropped = 0

        self._connection = connection
        self._subscribers: List[Tuple[EventCallback, Optional[CloseCallback]]] = []
        self._upstream_unsubscribe: Optional[Unsubscribe] = None
        self._open_task: Optional[asyncio.Task] = None
        self._upstream_close_task: Optional[asyncio.Task] = None

    @property
    def ready(self) -> bool:
        return self.state in (SessionState.READY, SessionState.STREAMING)

    @property
    def closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    def start(self) -> asyncio.Task:
        """Transition idle -> connecting now and run the handshake as a task."""
        if self._open_task is not None:
            return self._open_task
        if self.state != SessionState.IDLE:
            raise UpstreamSessionError(f"Session {self.session_id} cannot start from state {self.state.value}")
        self.state = SessionState.CONNECTING
        self._upstream_unsubscribe = self._connection.subscribe(self._on_upstream_event, self._on_upstream_close)
        self._open_task = asyncio.ensure_future(self._handshake())
        return self._open_task

    async def open(self):
        await self.start()

    async def _handshake(self):
        logger.info(f"[{self.session_id}] Opening upstream transcription session")
        try:
            await self._connection.open()
        except UpstreamSessionError:
            self._mark_closed()
            raise
        except Exception as e:
            self._mark_closed()
            await self._close_after_failed_handshake()
            raise UpstreamSessionError("Failed to initialize transcription service", details=str(e)) from e

        if self.state != SessionState.CONNECTING:
            # closed while the handshake was in flight
            await self._close_after_failed_handshake()
            raise UpstreamSessionError("Session closed before the upstream handshake completed")

        self.state = SessionState.READY
        logger.info(f"[{self.session_id}] Upstream transcription session ready")

    async def _close_after_failed_handshake(self):
        try:
            await self._connection.close()
        except Exception as e:
            logger.warning(f"[{self.session_id}] Upstream close after failed handshake raised: {e}")

    def send(self, frame: AudioFrame) -> bool:
        """Forward one frame. Frames arriving before readiness are dropped."""
        if not self.ready:
            self.frames_dropped += 1
            logger.debug(f"[{self.session_id}] Dropped frame {frame.sequence} in state {self.state.value}")
            return False
        self._connection.send(frame.data)
        self.frames_sent += 1
        self.state = SessionState.STREAMING
        return True

    def subscribe(self, on_event: EventCallback, on_close: Optional[CloseCallback] = None) -> Unsubscribe:
        entry = (on_event, on_close)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def close(self):
        """Graceful shutdown of the upstream dialogue. Safe to call repeatedly."""
        if self.closed:
            if self._upstream_close_task is not None:
                await self._upstream_close_task
            return
        self.state = SessionState.CLOSING
        try:
            await self._connection.close()
        finally:
            self._mark_closed()
            logger.info(
                f"[{self.session_id}] Transcription session closed "
                f"({self.frames_sent} frames sent, {self.frames_dropped} dropped)"
            )

    # --- upstream callbacks (event loop thread) ---

    def _on_upstream_event(self, event: TranscriptEvent):
        if self.state == SessionState.CLOSED:
            return
        for on_event, _ in list(self._subscribers):
            on_event(event)
        if event.is_error:
            logger.warning(f"[{self.session_id}] Upstream error terminates session: {event.message}")
            self._terminate_from_upstream()

    def _on_upstream_close(self):
        if self.closed:
            return
        logger.info(f"[{self.session_id}] Upstream ended the transcription session")
        self._terminate_from_upstream()

    def _terminate_from_upstream(self):
        self._mark_closed()
        self._upstream_close_task = asyncio.ensure_future(self._connection.close())
        for _, on_close in list(self._subscribers):
            if on_close is not None:
                on_close()

    def _mark_closed(self):
        self.state = SessionState.CLOSED
        if self._upstream_unsubscribe is not None:
            self._upstream_unsubscribe()
            self._upstream_unsubscribe = None
