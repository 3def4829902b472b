"""
Flow Dictation - FastAPI Main Application
"""

import asyncio
import os
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Tuple

import httpx
from fastapi import FastAPI, Request, WebSocket, UploadFile, File, HTTPException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from app.api.email import router as email_router
from app.config import settings
from app.core.exceptions import (
    BackendError,
    NotConnectedError,
    PayloadTooLargeError,
    ServiceNotConfiguredError,
    UnsupportedAudioError,
    ValidationError,
)
from app.core.logging import setup_logging, get_logger, audit_logger
from app.core.security import security_manager
from app.models.requests import ReportRequest, ProcessRequest
from app.models.responses import (
    ReportResponse, ProcessResponse, TranscriptionUploadResponse,
    HealthCheckResponse, ErrorResponse, RateLimitResponse,
)
from app.services.audio_processor import AudioProcessor
from app.services.llm_service import LLMService
from app.services.report_generator import ReportGenerator
from app.services.session_relay import SessionRelay
from app.services.streaming_stt import StreamingSTTService
from app.services.stt_service import STTService
from app.services.transcription_session import TranscriptionSession

# Initialize logging
setup_logging()
logger = get_logger(__name__)

SERVICE_NAME = "Flow Dictation API"

# Prometheus metrics
request_count = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
request_duration = Histogram('http_request_duration_seconds', 'HTTP request duration')
audio_processing_duration = Histogram('audio_processing_duration_seconds', 'Batch transcription duration')
report_generation_duration = Histogram('report_generation_duration_seconds', 'Report generation duration')
active_relay_sessions = Gauge('relay_sessions_active', 'Open streaming relay connections')

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

# Service instances (process-wide, no per-session state)
audio_processor = AudioProcessor()
stt_service = STTService()
streaming_stt_service = StreamingSTTService()
report_generator = ReportGenerator(LLMService())


def create_transcription_session(connection_id: str) -> TranscriptionSession:
    return TranscriptionSession(streaming_stt_service.create_connection(), session_id=connection_id)


# --- Dependency Status Checks ---
async def check_assemblyai_status() -> Tuple[str, str]:
    """Checks the status of the AssemblyAI API."""
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            headers = {"authorization": settings.assemblyai_api_key}
            response = await client.get(f"{settings.assemblyai_api_base_url}/v2/transcript?limit=1", headers=headers)
        if 200 <= response.status_code < 300:
            return "ok", "AssemblyAI API is reachable."
        return "error", f"AssemblyAI API returned status {response.status_code}."
    except httpx.HTTPError as e:
        return "error", f"Failed to connect to AssemblyAI API: {e}"

# --------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("🏥 Flow Dictation starting...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(
        f"Audio relay: {settings.audio_sample_rate} Hz, {settings.audio_frame_samples} samples/frame, "
        f"mode={settings.audio_chunking_mode.value}"
    )

    yield

    logger.info("🛑 Flow Dictation shutting down...")


# Create FastAPI app
app = FastAPI(
    title=settings.api_title,
    description=settings.api_description,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
    debug=settings.debug,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


# Middleware for security headers
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    return response


# Middleware for request tracking and metrics
@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Request tracking and Prometheus metrics"""

    start_time = time.time()
    request_id = security_manager.generate_request_id()
    request.state.request_id = request_id
    request.state.start_time = start_time

    try:
        response = await call_next(request)
    except Exception as e:
        request_count.labels(method=request.method, endpoint=request.url.path, status=500).inc()
        logger.error(f"Request {request_id} failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "message": "An internal error occurred", "request_id": request_id},
            headers={"X-Request-ID": request_id}
        )

    duration = time.time() - start_time
    request_count.labels(method=request.method, endpoint=request.url.path, status=response.status_code).inc()
    request_duration.observe(duration)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Processing-Time"] = f"{duration:.3f}s"
    return response


# Health check endpoint
@app.get("/health", response_model=HealthCheckResponse)
@app.get("/api/health", response_model=HealthCheckResponse)
async def health_check():
    """Service health check"""
    features = ["text-generation", "streaming-transcription", "audio-transcription", "text-processing"]
    if settings.email_configured:
        features.append("email")

    return HealthCheckResponse(
        status="ok",
        service=SERVICE_NAME,
        version=settings.api_version,
        features=features,
        timestamp=datetime.utcnow(),
    )


@app.get("/ready")
async def readiness_check():
    """
    Checks if the service and its dependencies are ready to accept traffic.
    Returns 200 OK if all checks pass, otherwise 503 Service Unavailable.
    """
    checks = {
        "assemblyai": check_assemblyai_status(),
    }
    results = await asyncio.gather(*checks.values())

    details = {}
    all_ok = True
    for name, (check_status, message) in zip(checks.keys(), results):
        details[name] = {"status": check_status, "message": message}
        if check_status != "ok":
            all_ok = False

    response_data = {
        "status": "ready" if all_ok else "unavailable",
        "timestamp": datetime.utcnow().isoformat(),
        "version": settings.api_version,
        "details": details
    }
    if all_ok:
        return JSONResponse(status_code=status.HTTP_200_OK, content=response_data)
    logger.warning(f"Readiness check failed: {details}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response_data)


# Prometheus metrics endpoint
@app.get("/metrics")
async def metrics():
    """Prometheus metrics"""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Streaming relay: binary PCM in, JSON transcript events out
@app.websocket("/")
@app.websocket("/ws")
async def relay_audio(websocket: WebSocket):
    relay = SessionRelay(websocket, session_factory=create_transcription_session)
    active_relay_sessions.inc()
    try:
        await relay.run()
    finally:
        active_relay_sessions.dec()


@app.post(
    "/api/generate-report",
    response_model=ReportResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": RateLimitResponse}, 500: {"model": ErrorResponse}}
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def generate_report(request: Request, payload: Optional[ReportRequest] = None):
    """Turn dictated findings into a structured report."""
    payload = payload or ReportRequest()
    with report_generation_duration.time():
        report = await report_generator.generate(
            payload.findings,
            payload.specialty,
            request_id=request.state.request_id,
        )
    return ReportResponse(report=report)


@app.post(
    "/api/process",
    response_model=ProcessResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": RateLimitResponse}, 500: {"model": ErrorResponse}}
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def process_transcription(request: Request, payload: Optional[ProcessRequest] = None):
    """Format a finished transcription according to a template."""
    payload = payload or ProcessRequest()
    with report_generation_duration.time():
        formatted = await report_generator.format_transcription(
            payload.text,
            payload.template,
            request_id=request.state.request_id,
        )
    return ProcessResponse(formatted=formatted)


@app.post(
    "/api/transcribe",
    response_model=TranscriptionUploadResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 415: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}
)
@limiter.limit(f"{settings.rate_limit_requests}/minute")
async def transcribe_upload(request: Request, audio: Optional[UploadFile] = File(None)):
    """Batch transcription of one uploaded recording; the temp file never outlives the request."""
    request_id = request.state.request_id
    if audio is None:
        raise ValidationError("Audio file is required")

    upload = None
    try:
        upload = await audio_processor.save_upload(audio)
        audit_logger.log_transcription_request(
            request_id=request_id,
            provider=stt_service.provider.value,
            model=stt_service.model,
            audio_size_bytes=upload.size_bytes,
            audio_duration=audio_processor.extract_duration(upload.path),
        )
        with audio_processing_duration.time():
            return await stt_service.transcribe(request_id, upload.path)
    finally:
        audio_processor.cleanup(upload)


app.include_router(email_router)


def _error_response(request: Request, status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content = ErrorResponse(error=error, details=details).model_dump(exclude_none=True)
    request_id = getattr(request.state, "request_id", None)
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(request, status.HTTP_400_BAD_REQUEST, exc.message)


@app.exception_handler(UnsupportedAudioError)
async def unsupported_audio_handler(request: Request, exc: UnsupportedAudioError):
    return _error_response(request, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, exc.message)


@app.exception_handler(PayloadTooLargeError)
async def payload_too_large_handler(request: Request, exc: PayloadTooLargeError):
    return _error_response(request, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error_response(request, status.HTTP_400_BAD_REQUEST, "Invalid request", details=str(exc.errors()))


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    request_id = getattr(request.state, "request_id", "unknown")
    audit_logger.log_error(request_id, "backend_error", exc.message, details=exc.details)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message, details=exc.details)


@app.exception_handler(NotConnectedError)
async def not_connected_handler(request: Request, exc: NotConnectedError):
    return _error_response(request, status.HTTP_409_CONFLICT, exc.message)


@app.exception_handler(ServiceNotConfiguredError)
async def not_configured_handler(request: Request, exc: ServiceNotConfiguredError):
    return _error_response(request, status.HTTP_503_SERVICE_UNAVAILABLE, exc.message)


# Override rate limit handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Custom rate limit error handler"""

    response = RateLimitResponse(
        message="Too many requests. Please try again later.",
        retry_after=settings.rate_limit_window,
        limit=settings.rate_limit_requests,
        window=settings.rate_limit_window,
        timestamp=datetime.utcnow()
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=response.model_dump(mode="json"),
        headers={"Retry-After": str(settings.rate_limit_window)}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""

    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(f"Unhandled error in request {request_id}: {exc}")
    logger.error(f"Stacktrace: {traceback.format_exc()}")

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id}
    )


# Browser client, mounted last so API and socket routes take precedence
if os.path.isdir(settings.static_dir):
    app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
