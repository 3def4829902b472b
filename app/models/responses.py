"""
Pydantic Models für API Responses
"""

from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field


class ReportSection(BaseModel):
    """Ein Abschnitt des generierten Befundberichts"""
    heading: str = Field(description="Section heading, e.g. FINDINGS or IMPRESSION")
    content: str = Field(description="Section text without the heading")


class ReportDraft(BaseModel):
    """Strukturierte LLM-Antwort, die in Template-Reihenfolge gerendert wird"""
    sections: List[ReportSection] = Field(
        default=[],
        description="Report sections in the order requested by the system prompt"
    )


class ReportResponse(BaseModel):
    report: str = Field(description="Formatted report text")


class ProcessResponse(BaseModel):
    formatted: str = Field(description="Transcription formatted according to the template")


class TranscriptionUploadResponse(BaseModel):
    """Ergebnis einer Batch-Transkription"""
    text: str = Field(description="Transkribierter Text")
    confidence: Optional[float] = Field(default=None, description="Konfidenz-Score (0.0-1.0), falls vom Provider geliefert")


class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str = Field(description="Service Status")
    service: str = Field(description="Service name")
    version: str = Field(description="Service-Version")
    features: List[str] = Field(description="Enabled features")
    timestamp: datetime = Field(description="Check-Zeitpunkt")


class ErrorResponse(BaseModel):
    """Standardisierte Fehlerantwort"""
    error: str = Field(description="Fehlerbeschreibung")
    details: Optional[str] = Field(default=None, description="Backend-Meldung, falls vorhanden")


class RateLimitResponse(BaseModel):
    """Rate Limit Exceeded Response"""
    error: str = Field(default="rate_limit_exceeded")
    message: str = Field(description="Rate Limit Fehlermeldung")
    retry_after: int = Field(description="Sekunden bis zum nächsten Versuch")
    limit: int = Field(description="Request-Limit")
    window: int = Field(description="Zeitfenster in Sekunden")
    timestamp: datetime = Field(description="Fehlerzeitpunkt")


class EmailStatusResponse(BaseModel):
    connected: bool = Field(description="Whether the caller has connected an email account")
    email: Optional[str] = Field(default=None, description="Connected account address")


class EmailConnectResponse(BaseModel):
    auth_url: str = Field(description="Provider consent page to redirect the user to")


class EmailSendResponse(BaseModel):
    sent: bool = Field(default=True)
    message_id: Optional[str] = Field(default=None, description="Provider message id")
