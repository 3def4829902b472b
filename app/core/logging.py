"""
Strukturiertes Logging Setup für Flow Dictation
"""

import logging
import structlog
from datetime import datetime
from typing import Optional
from app.config import settings


def setup_logging():
    """Konfiguriert strukturiertes Logging"""

    timestamper = structlog.processors.TimeStamper(fmt="ISO")

    processors = [
        structlog.processors.add_log_level,
        timestamper,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.environment == "development":
        # Development: Colored console output
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        # Production: JSON output
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ])

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """Erstellt einen konfigurierten Logger"""
    return structlog.get_logger(name or __name__)


class AuditLogger:
    """Spezieller Logger für Audit-Events"""

    def __init__(self):
        self.logger = get_logger("audit")

    def _emit(self, event: str, **kwargs):
        if not settings.audit_log_enabled:
            return
        self.logger.info(event, timestamp=datetime.utcnow().isoformat(), **kwargs)

    def log_relay_session(
        self,
        connection_id: str,
        event: str,
        frames_forwarded: int = 0,
        frames_dropped: int = 0,
        **kwargs
    ):
        """Loggt Lebenszyklus-Events einer Relay-Session (opened, ready, closed, error)"""
        self._emit(
            "relay_session",
            connection_id=connection_id,
            lifecycle=event,
            frames_forwarded=frames_forwarded,
            frames_dropped=frames_dropped,
            **kwargs
        )

    def log_report_generation(
        self,
        request_id: str,
        template: str,
        model_used: str,
        findings_chars: int,
        processing_time_ms: int,
        **kwargs
    ):
        """Loggt Report-Generierungen (ohne Inhalte)"""
        self._emit(
            "report_generation",
            request_id=request_id,
            template=template,
            model_used=model_used,
            findings_chars=findings_chars,
            processing_time_ms=processing_time_ms,
            **kwargs
        )

    def log_transcription_request(
        self,
        request_id: str,
        provider: str,
        model: str,
        audio_size_bytes: int,
        audio_duration: Optional[float] = None,
        **kwargs
    ):
        """Loggt Batch-Transkriptionsanfragen"""
        self._emit(
            "transcription_request",
            request_id=request_id,
            provider=provider,
            model=model,
            audio_size_bytes=audio_size_bytes,
            audio_duration=audio_duration,
            **kwargs
        )

    def log_external_api_call(
        self,
        request_id: str,
        service: str,
        endpoint: str,
        response_status: int,
        response_time_ms: int,
        **kwargs
    ):
        """Loggt Calls zu externen APIs"""
        self._emit(
            "external_api_call",
            request_id=request_id,
            service=service,
            endpoint=endpoint,
            response_status=response_status,
            response_time_ms=response_time_ms,
            **kwargs
        )

    def log_error(
        self,
        request_id: str,
        error_type: str,
        error_message: str,
        **kwargs
    ):
        """Loggt Fehler-Events"""
        self.logger.error(
            "error_event",
            request_id=request_id,
            error_type=error_type,
            error_message=error_message,
            timestamp=datetime.utcnow().isoformat(),
            **kwargs
        )


# Global audit logger instance
audit_logger = AuditLogger()
