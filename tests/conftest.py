"""
Pytest Configuration and Shared Fixtures
"""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import pytest
from cryptography.fernet import Fernet

# Settings are read at import time; prepare the environment before any app import
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ASSEMBLYAI_API_KEY", "test-assemblyai-key")
os.environ.setdefault("API_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATA_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("RATE_LIMIT_REQUESTS", "1000")
os.environ.setdefault("STATIC_DIR", "tests/__no_static__")

from fastapi.websockets import WebSocketState  # noqa: E402

from app.models.responses import ReportDraft, ReportSection  # noqa: E402
from app.models.transcript import TranscriptEvent  # noqa: E402


# =============================================================================
# ASYNC HELPERS
# =============================================================================


async def settle(rounds: int = 10):
    """Let queued callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# UPSTREAM FAKES
# =============================================================================


class FakeUpstreamConnection:
    """In-memory stand-in for a streaming speech vendor connection."""

    def __init__(
        self,
        auto_ready: bool = True,
        fail_with: Optional[Exception] = None,
        script: Optional[List[TranscriptEvent]] = None,
        close_error: Optional[Exception] = None,
    ):
        self.auto_ready = auto_ready
        self.fail_with = fail_with
        self.close_error = close_error
        self.script = list(script or [])
        self.sent: List[bytes] = []
        self.open_calls = 0
        self.close_calls = 0
        self._subscribers = []
        self._gate: Optional[asyncio.Event] = None

    async def open(self) -> None:
        self.open_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if not self.auto_ready:
            await self._ready_gate().wait()
        loop = asyncio.get_running_loop()
        for event in self.script:
            loop.call_soon(self.emit, event)

    def confirm_ready(self):
        self._ready_gate().set()

    def _ready_gate(self) -> asyncio.Event:
        if self._gate is None:
            self._gate = asyncio.Event()
        return self._gate

    def send(self, audio: bytes) -> None:
        self.sent.append(audio)

    def subscribe(self, on_event, on_close=None):
        entry = (on_event, on_close)
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error

    def emit(self, event: TranscriptEvent):
        for on_event, _ in list(self._subscribers):
            on_event(event)

    def terminate(self):
        for _, on_close in list(self._subscribers):
            if on_close is not None:
                on_close()


class FakeStreamingService:
    """Replaces the process-wide StreamingSTTService."""

    def __init__(self, **connection_kwargs):
        self.connection_kwargs = connection_kwargs
        self.connections: List[FakeUpstreamConnection] = []

    def create_connection(self) -> FakeUpstreamConnection:
        connection = FakeUpstreamConnection(**self.connection_kwargs)
        self.connections.append(connection)
        return connection


class FakeWebSocket:
    """Minimal Starlette WebSocket double for driving SessionRelay directly."""

    def __init__(self):
        self.application_state = WebSocketState.CONNECTING
        self.client_state = WebSocketState.CONNECTED
        self.sent: List[Dict[str, Any]] = []
        self.close_codes: List[int] = []
        self._incoming: Optional[asyncio.Queue] = None

    def _queue(self) -> asyncio.Queue:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    def feed_bytes(self, data: bytes):
        self._queue().put_nowait({"type": "websocket.receive", "bytes": data})

    def feed_text(self, text: str):
        self._queue().put_nowait({"type": "websocket.receive", "text": text})

    def feed_disconnect(self, code: int = 1000):
        self._queue().put_nowait({"type": "websocket.disconnect", "code": code})

    async def accept(self):
        self.application_state = WebSocketState.CONNECTED

    async def receive(self) -> Dict[str, Any]:
        message = await self._queue().get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, data: str):
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000):
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED


# =============================================================================
# REPORT FAKES
# =============================================================================


class EchoReportBackend:
    """Puts the user message into the FINDINGS section and counts calls."""

    default_model = "echo"

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.calls: List[Dict[str, str]] = []

    async def draft_report(self, system_prompt: str, user_message: str) -> ReportDraft:
        self.calls.append({"system_prompt": system_prompt, "user_message": user_message})
        if self.fail_with is not None:
            raise self.fail_with
        return ReportDraft(sections=[ReportSection(heading="FINDINGS", content=user_message)])


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def sample_rate() -> int:
    """Standard sample rate for tests."""
    return 16000


@pytest.fixture
def silence_3200_bytes() -> bytes:
    """1600 samples of s16le silence (100 ms at 16 kHz)."""
    return b"\x00\x00" * 1600


@pytest.fixture
def echo_backend() -> EchoReportBackend:
    return EchoReportBackend()


@pytest.fixture
def fake_websocket() -> FakeWebSocket:
    return FakeWebSocket()


@pytest.fixture
def client():
    """FastAPI TestClient with lifespan events."""
    from fastapi.testclient import TestClient
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
