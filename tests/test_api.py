"""
HTTP and WebSocket endpoint tests with the external backends replaced.
"""

import os
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocketDisconnect

import app.main as main
from app.config import BatchSTTProvider, settings
from app.core.exceptions import BackendError, UpstreamSessionError
from app.models.responses import TranscriptionUploadResponse
from app.models.transcript import TranscriptEvent
from app.services.report_generator import ReportGenerator
from app.services.stt_service import STTService
from tests.conftest import EchoReportBackend, FakeStreamingService

WAV_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 64


class FakeSTTService:
    provider = BatchSTTProvider.OPENAI
    model = "whisper-1"

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.paths: List[str] = []

    async def transcribe(self, request_id: str, file_path: str) -> TranscriptionUploadResponse:
        self.paths.append(file_path)
        assert os.path.exists(file_path)
        if self.fail_with is not None:
            raise self.fail_with
        return TranscriptionUploadResponse(text="No acute abnormality.", confidence=0.93)


@pytest.fixture
def echo_generator(monkeypatch, echo_backend):
    monkeypatch.setattr(main, "report_generator", ReportGenerator(echo_backend))
    return echo_backend


@pytest.fixture
def upload_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path))
    return tmp_path


class TestHealth:

    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health(self, client, path):
        response = client.get(path)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "Flow Dictation API"
        assert "streaming-transcription" in data["features"]
        assert "text-generation" in data["features"]
        assert "X-Request-ID" in response.headers


class TestGenerateReport:

    def test_report_generated(self, client, echo_generator):
        response = client.post("/api/generate-report", json={"findings": "chest x-ray, no acute abnormality"})

        assert response.status_code == 200
        report = response.json()["report"]
        assert "no acute abnormality" in report
        assert "FINDINGS:" in report
        assert "IMPRESSION:" in report

    def test_specialty_selects_template(self, client, echo_generator):
        response = client.post(
            "/api/generate-report",
            json={"findings": "normal biventricular function", "specialty": "cardiology"},
        )

        assert response.status_code == 200
        assert "CONCLUSION:" in response.json()["report"]

    @pytest.mark.parametrize("body", [{}, {"findings": ""}, {"findings": "   "}, None])
    def test_missing_findings(self, client, echo_generator, body):
        response = client.post("/api/generate-report", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Findings are required"}
        assert echo_generator.calls == []

    def test_backend_failure(self, client, monkeypatch):
        backend = EchoReportBackend(fail_with=BackendError("Failed to generate report", details="Request timed out"))
        monkeypatch.setattr(main, "report_generator", ReportGenerator(backend))

        response = client.post("/api/generate-report", json={"findings": "normal study"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate report", "details": "Request timed out"}

    def test_malformed_body(self, client, echo_generator):
        response = client.post(
            "/api/generate-report",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"


class TestProcess:

    def test_formats_text(self, client, echo_generator):
        response = client.post("/api/process", json={"text": "liver is normal", "template": "pathology"})

        assert response.status_code == 200
        formatted = response.json()["formatted"]
        assert "liver is normal" in formatted
        assert "SPECIMEN:" in formatted

    def test_unknown_template_formatted_generically(self, client, echo_generator):
        response = client.post("/api/process", json={"text": "mild eczema", "template": "dermatology"})

        assert response.status_code == 200
        assert "mild eczema" in response.json()["formatted"]
        assert "according to the dermatology template" in echo_generator.calls[0]["system_prompt"]

    def test_backend_failure(self, client, monkeypatch):
        backend = EchoReportBackend(fail_with=BackendError("Failed to generate report", details="Request timed out"))
        monkeypatch.setattr(main, "report_generator", ReportGenerator(backend))

        response = client.post("/api/process", json={"text": "normal study", "template": "radiology"})

        assert response.status_code == 500
        assert response.json() == {"error": "Processing failed", "details": "Request timed out"}

    def test_missing_text(self, client, echo_generator):
        response = client.post("/api/process", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "Text is required"}


class TestTranscribeUpload:

    def test_transcribes_and_cleans_up(self, client, monkeypatch, upload_dir):
        stt = FakeSTTService()
        monkeypatch.setattr(main, "stt_service", stt)

        response = client.post("/api/transcribe", files={"audio": ("dictation.wav", WAV_BYTES, "audio/wav")})

        assert response.status_code == 200
        assert response.json() == {"text": "No acute abnormality.", "confidence": 0.93}
        assert stt.paths[0].endswith(".wav")
        assert list(upload_dir.iterdir()) == []

    def test_audit_records_active_provider_model(self, client, monkeypatch, upload_dir):
        stt = STTService(provider=BatchSTTProvider.ASSEMBLYAI)
        monkeypatch.setattr(
            stt, "_transcribe_assemblyai", AsyncMock(return_value=TranscriptionUploadResponse(text="Normal."))
        )
        monkeypatch.setattr(main, "stt_service", stt)
        audit = MagicMock()
        monkeypatch.setattr(main, "audit_logger", audit)

        response = client.post("/api/transcribe", files={"audio": ("dictation.wav", WAV_BYTES, "audio/wav")})

        assert response.status_code == 200
        logged = audit.log_transcription_request.call_args.kwargs
        assert logged["provider"] == "assemblyai"
        assert logged["model"] == "best"

    def test_browser_codec_suffix_accepted(self, client, monkeypatch, upload_dir):
        stt = FakeSTTService()
        monkeypatch.setattr(main, "stt_service", stt)

        response = client.post(
            "/api/transcribe",
            files={"audio": ("recording", b"\x1a\x45\xdf\xa3" + b"\x00" * 32, "audio/webm;codecs=opus")},
        )

        assert response.status_code == 200
        assert stt.paths[0].endswith(".webm")

    def test_backend_failure_still_cleans_up(self, client, monkeypatch, upload_dir):
        stt = FakeSTTService(fail_with=BackendError("Transcription failed", details="provider unavailable"))
        monkeypatch.setattr(main, "stt_service", stt)

        response = client.post("/api/transcribe", files={"audio": ("dictation.wav", WAV_BYTES, "audio/wav")})

        assert response.status_code == 500
        assert response.json() == {"error": "Transcription failed", "details": "provider unavailable"}
        assert not os.path.exists(stt.paths[0])
        assert list(upload_dir.iterdir()) == []

    def test_missing_file(self, client, upload_dir):
        response = client.post("/api/transcribe")

        assert response.status_code == 400
        assert response.json() == {"error": "Audio file is required"}

    def test_empty_file(self, client, upload_dir):
        response = client.post("/api/transcribe", files={"audio": ("empty.wav", b"", "audio/wav")})

        assert response.status_code == 400
        assert response.json() == {"error": "Audio file is empty"}

    def test_unsupported_format(self, client, monkeypatch, upload_dir):
        monkeypatch.setattr(main, "stt_service", FakeSTTService())

        response = client.post("/api/transcribe", files={"audio": ("notes.txt", b"plain text", "text/plain")})

        assert response.status_code == 415
        assert list(upload_dir.iterdir()) == []

    def test_file_too_large(self, client, monkeypatch, upload_dir):
        monkeypatch.setattr(settings, "max_file_size_mb", 0)

        response = client.post("/api/transcribe", files={"audio": ("dictation.wav", WAV_BYTES, "audio/wav")})

        assert response.status_code == 413


class TestStreamingRelay:

    @pytest.mark.parametrize("path", ["/", "/ws"])
    def test_transcripts_forwarded(self, client, monkeypatch, silence_3200_bytes, path):
        service = FakeStreamingService(
            script=[
                TranscriptEvent.partial("no acute"),
                TranscriptEvent.final("No acute abnormality.", end_of_utterance=True),
            ]
        )
        monkeypatch.setattr(main, "streaming_stt_service", service)

        with client.websocket_connect(path) as websocket:
            websocket.send_bytes(silence_3200_bytes)
            first = websocket.receive_json()
            second = websocket.receive_json()

        assert first == {"type": "transcript", "text": "no acute", "is_final": False, "speech_final": False}
        assert second == {
            "type": "transcript",
            "text": "No acute abnormality.",
            "is_final": True,
            "speech_final": True,
        }
        assert len(service.connections) == 1

    def test_upstream_failure_reported(self, client, monkeypatch, silence_3200_bytes):
        service = FakeStreamingService(fail_with=UpstreamSessionError("Failed to initialize transcription service"))
        monkeypatch.setattr(main, "streaming_stt_service", service)

        with client.websocket_connect("/ws") as websocket:
            websocket.send_bytes(silence_3200_bytes)
            message = websocket.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()

        assert message == {"type": "error", "message": "Failed to initialize transcription service"}
        assert exc_info.value.code == 1011

    def test_upstream_error_mid_stream(self, client, monkeypatch, silence_3200_bytes):
        service = FakeStreamingService(
            script=[TranscriptEvent.partial("no acute"), TranscriptEvent.error("Upstream connection lost")]
        )
        monkeypatch.setattr(main, "streaming_stt_service", service)

        with client.websocket_connect("/ws") as websocket:
            websocket.send_text('{"type": "start"}')
            assert websocket.receive_json()["text"] == "no acute"
            assert websocket.receive_json() == {"type": "error", "message": "Upstream connection lost"}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()

        assert exc_info.value.code == 1011
