"""
WebSocket bridge between one browser connection and one transcription session
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState

from app.config import settings
from app.core.exceptions import UpstreamSessionError
from app.core.logging import get_logger, audit_logger
from app.models.transcript import TranscriptEvent
from app.services.audio_chunker import AudioChunker
from app.services.transcription_session import TranscriptionSession

logger = get_logger(__name__)

SessionFactory = Callable[[str], TranscriptionSession]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class ClientConnection:
    connection_id: str = field(default_factory=lambda: f"conn_{uuid.uuid4().hex[:8]}")
    state: ConnectionState = ConnectionState.CONNECTING

    @property
    def is_open(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.STREAMING)


@dataclass(frozen=True)
class _CloseRequest:
    code: int


class SessionRelay:
    """
    Binds exactly one ClientConnection to at most one TranscriptionSession.

    The first binary frame (or an explicit ``{"type": "start"}``) starts the
    session. Transcript events are queued in an outbox and written to the
    socket by a single sender task so they reach the client in upstream
    order. Any termination, from either side, tears both sides down.
    """

    def __init__(
        self,
        websocket: WebSocket,
        session_factory: SessionFactory,
        chunker: Optional[AudioChunker] = None,
        flush_trailing: Optional[bool] = None,
    ):
        self.websocket = websocket
        self.client = ClientConnection()
        self.session: Optional[TranscriptionSession] = None

        self._session_factory = session_factory
        self._chunker = chunker or AudioChunker()
        self._flush_trailing = settings.audio_flush_trailing if flush_trailing is None else flush_trailing
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._sender_task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def connection_id(self) -> str:
        return self.client.connection_id

    async def run(self):
        """Accept the socket and pump client messages until either side ends."""
        await self.websocket.accept()
        self.start_sender()
        logger.info(f"[{self.connection_id}] Client connected for streaming transcription")
        audit_logger.log_relay_session(self.connection_id, "connected")

        try:
            while self.client.is_open:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    self.on_audio(message["bytes"])
                elif message.get("text") is not None:
                    self.on_text(message["text"])
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"[{self.connection_id}] Relay failed: {e}", exc_info=True)
            await self._send_json({"type": "error", "message": "Internal relay error"})
        finally:
            logger.info(f"[{self.connection_id}] Client disconnected")
            await self.shutdown()

    def start_sender(self):
        if self._sender_task is None:
            self._sender_task = asyncio.ensure_future(self._drain_outbox())

    # --- client -> upstream ---

    def on_audio(self, data: bytes):
        if not self.client.is_open:
            return
        if self.session is None:
            self.start_session()
        for frame in self._chunker.push(data):
            self.session.send(frame)

    def on_text(self, raw: str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            self._enqueue({"type": "error", "message": "Control messages must be JSON"})
            return

        msg_type = data.get("type") if isinstance(data, dict) else None
        if msg_type == "start":
            self.start_session()
        else:
            self._enqueue({"type": "error", "message": f"Unknown message type: {msg_type}"})

    def start_session(self) -> bool:
        """idle --[first frame | start]--> connecting. Ignored while a session exists."""
        if self.session is not None:
            logger.debug(f"[{self.connection_id}] Session already active, start ignored")
            return False

        session = self._session_factory(self.connection_id)
        self.session = session
        self._unsubscribe = session.subscribe(self._on_transcript_event, self._on_session_closed)
        handshake = session.start()
        self._ready_task = asyncio.ensure_future(self._await_ready(handshake))
        audit_logger.log_relay_session(self.connection_id, "session_opening")
        return True

    async def _await_ready(self, handshake: asyncio.Future):
        try:
            await handshake
        except UpstreamSessionError as e:
            logger.warning(f"[{self.connection_id}] Upstream session failed to open: {e.message} {e.details or ''}")
            self._fail_session_start(e.message)
            return
        except Exception as e:
            logger.error(f"[{self.connection_id}] Unexpected handshake failure: {e}", exc_info=True)
            self._fail_session_start("Failed to initialize transcription service")
            return

        if self.client.state == ConnectionState.CONNECTING:
            self.client.state = ConnectionState.STREAMING
        audit_logger.log_relay_session(self.connection_id, "session_ready")

    def _fail_session_start(self, message: str):
        audit_logger.log_relay_session(self.connection_id, "session_failed", error=message)
        self._enqueue({"type": "error", "message": message})
        self._enqueue(_CloseRequest(status.WS_1011_INTERNAL_ERROR))

    # --- upstream -> client ---

    def _on_transcript_event(self, event: TranscriptEvent):
        self._enqueue(event.to_client_message())
        if event.is_error:
            audit_logger.log_relay_session(self.connection_id, "upstream_error", error=event.message)
            self._enqueue(_CloseRequest(status.WS_1011_INTERNAL_ERROR))

    def _on_session_closed(self):
        self._enqueue(_CloseRequest(status.WS_1000_NORMAL_CLOSURE))

    def _enqueue(self, item: Any):
        if self.client.is_open:
            self._outbox.put_nowait(item)

    async def _drain_outbox(self):
        while True:
            item = await self._outbox.get()
            if isinstance(item, _CloseRequest):
                await self.shutdown(code=item.code)
                return
            await self._send_json(item)

    async def _send_json(self, payload: Dict[str, Any]):
        """Write one message; a no-op once either side has gone away."""
        if not self.client.is_open or not self._socket_open():
            return
        try:
            await self.websocket.send_text(json.dumps(payload))
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info(f"[{self.connection_id}] Dropped message for departed client: {e}")

    def _socket_open(self) -> bool:
        return (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    # --- teardown ---

    async def shutdown(self, code: int = status.WS_1000_NORMAL_CLOSURE):
        """Close session, buffers and socket together. Runs once per connection."""
        if not self.client.is_open:
            return
        self.client.state = ConnectionState.CLOSING

        session = self.session
        if session is not None:
            if self._flush_trailing and session.ready:
                frame = self._chunker.flush(pad=True)
                if frame is not None:
                    session.send(frame)
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"[{self.connection_id}] Session close failed: {e}", exc_info=True)
        self._chunker.reset()

        current = asyncio.current_task()
        if self._sender_task is not None and self._sender_task is not current:
            self._sender_task.cancel()

        if self._socket_open():
            try:
                await self.websocket.close(code=code)
            except RuntimeError as e:
                logger.info(f"[{self.connection_id}] Socket already closed: {e}")

        self.client.state = ConnectionState.CLOSED
        audit_logger.log_relay_session(
            self.connection_id,
            "closed",
            frames_forwarded=session.frames_sent if session else 0,
            frames_dropped=session.frames_dropped if session else 0,
        )
