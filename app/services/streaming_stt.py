"""
Streaming Speech-to-Text backend
Uses AssemblyAI Universal-Streaming behind a vendor-neutral connection interface.
"""

import asyncio
from typing import Callable, List, Optional, Protocol, Tuple

from assemblyai.streaming.v3 import (
    BeginEvent,
    StreamingClient,
    StreamingClientOptions,
    StreamingError,
    StreamingEvents,
    StreamingParameters,
    TerminationEvent,
    TurnEvent,
)

from app.config import settings
from app.core.exceptions import UpstreamSessionError
from app.core.logging import get_logger
from app.models.transcript import TranscriptEvent

logger = get_logger(__name__)

EventCallback = Callable[[TranscriptEvent], None]
CloseCallback = Callable[[], None]
Unsubscribe = Callable[[], None]


class UpstreamConnection(Protocol):
    """Capability interface any streaming speech vendor has to provide."""

    async def open(self) -> None:
        """Resolve once the upstream has confirmed session start."""

    def send(self, audio: bytes) -> None:
        ...

    def subscribe(self, on_event: EventCallback, on_close: Optional[CloseCallback] = None) -> Unsubscribe:
        ...

    async def close(self) -> None:
        ...


class AssemblyAIStreamingConnection:
    """
    One AssemblyAI v3 streaming dialogue.

    The SDK runs its websocket on background threads and invokes handlers
    there; every handler hops back onto the event loop before touching
    state or subscribers.
    """

    def __init__(
        self,
        api_key: str,
        sample_rate: int,
        format_turns: bool = True,
        api_host: Optional[str] = None,
        handshake_timeout: Optional[float] = None,
    ):
        self.api_key = api_key
        self.sample_rate = sample_rate
        self.format_turns = format_turns
        self.api_host = api_host or settings.assemblyai_streaming_host
        self.handshake_timeout = handshake_timeout or settings.stt_handshake_timeout
        self.upstream_session_id: Optional[str] = None

        self._client: Optional[StreamingClient] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready: Optional[asyncio.Future] = None
        self._subscribers: List[Tuple[EventCallback, Optional[CloseCallback]]] = []
        self._closed = False

    async def open(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._ready = self._loop.create_future()

        client = StreamingClient(
            StreamingClientOptions(api_key=self.api_key, api_host=self.api_host)
        )
        client.on(StreamingEvents.Begin, self._on_begin)
        client.on(StreamingEvents.Turn, self._on_turn)
        client.on(StreamingEvents.Termination, self._on_termination)
        client.on(StreamingEvents.Error, self._on_error)

        params = StreamingParameters(sample_rate=self.sample_rate, format_turns=self.format_turns)
        try:
            await asyncio.to_thread(client.connect, params)
            if self._closed:
                # close() ran while the socket was still connecting
                await asyncio.to_thread(client.disconnect, terminate=True)
                raise UpstreamSessionError("Session closed before the upstream handshake completed")
            self._client = client
            await asyncio.wait_for(self._ready, timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise UpstreamSessionError("Transcription service did not confirm session start") from e
        except UpstreamSessionError:
            await self.close()
            raise
        except Exception as e:
            logger.error(f"Failed to connect to AssemblyAI streaming: {e}", exc_info=True)
            await self.close()
            raise UpstreamSessionError("Failed to initialize transcription service", details=str(e)) from e

    def send(self, audio: bytes) -> None:
        if self._client is None or self._closed:
            return
        self._client.stream(audio)

    def subscribe(self, on_event: EventCallback, on_close: Optional[CloseCallback] = None) -> Unsubscribe:
        entry = (on_event, on_close)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(UpstreamSessionError("Session closed before the upstream handshake completed"))
            # open() may still be inside connect and never await the future
            self._ready.exception()
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await asyncio.to_thread(client.disconnect, terminate=True)
            logger.info(f"AssemblyAI streaming session {self.upstream_session_id} closed")
        except Exception as e:
            logger.warning(f"AssemblyAI disconnect did not complete cleanly: {e}")

    # --- SDK thread handlers ---

    def _on_begin(self, client: StreamingClient, event: BeginEvent):
        self._call_in_loop(self._handle_begin, event.id)

    def _on_turn(self, client: StreamingClient, event: TurnEvent):
        mapped = self._map_turn(event)
        if mapped is not None:
            self._call_in_loop(self._dispatch, mapped)

    def _on_termination(self, client: StreamingClient, event: TerminationEvent):
        logger.info(
            f"AssemblyAI session terminated after {event.audio_duration_seconds}s of audio"
        )
        self._call_in_loop(self._handle_close)

    def _on_error(self, client: StreamingClient, error: StreamingError):
        logger.error(f"AssemblyAI streaming error: {error}")
        self._call_in_loop(self._handle_error, str(error))

    def _call_in_loop(self, callback, *args):
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, *args)

    # --- loop-side handlers ---

    def _handle_begin(self, session_id: str):
        self.upstream_session_id = session_id
        logger.info(f"AssemblyAI streaming session {session_id} opened")
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

    def _handle_error(self, message: str):
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(UpstreamSessionError("Transcription service rejected the session", details=message))
            return
        self._dispatch(TranscriptEvent.error(message))

    def _handle_close(self):
        for _, on_close in list(self._subscribers):
            if on_close is not None:
                on_close()

    def _dispatch(self, event: TranscriptEvent):
        for on_event, _ in list(self._subscribers):
            on_event(event)

    def _map_turn(self, event: TurnEvent) -> Optional[TranscriptEvent]:
        text = event.transcript or ""
        if not text.strip():
            return None
        if self.format_turns:
            is_final = event.end_of_turn and event.turn_is_formatted
        else:
            is_final = event.end_of_turn
        if is_final:
            return TranscriptEvent.final(text, end_of_utterance=event.end_of_turn)
        return TranscriptEvent.partial(text, end_of_utterance=event.end_of_turn)


class StreamingSTTService:
    """Process-wide factory for upstream streaming connections."""

    def __init__(self, api_key: Optional[str] = None, sample_rate: Optional[int] = None):
        self.api_key = api_key or settings.assemblyai_api_key
        self.sample_rate = sample_rate or settings.audio_sample_rate

    def create_connection(self) -> UpstreamConnection:
        return AssemblyAIStreamingConnection(
            api_key=self.api_key,
            sample_rate=self.sample_rate,
            format_turns=settings.stt_format_turns,
        )
