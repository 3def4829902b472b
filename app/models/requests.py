"""
Pydantic Models for API Requests
"""

from typing import Optional
from pydantic import BaseModel, Field


class ReportRequest(BaseModel):
    """Dictated findings for report generation. Validated by the generator, not by pydantic."""
    findings: Optional[str] = Field(default=None, description="Free-text findings")
    specialty: Optional[str] = Field(default=None, description="Template tag, e.g. radiology")


class ProcessRequest(BaseModel):
    """Raw transcription to be formatted with a template"""
    text: Optional[str] = Field(default=None, description="Transcribed text")
    template: Optional[str] = Field(default=None, description="Template tag, e.g. radiology")


class SendEmailRequest(BaseModel):
    to: str = Field(description="Recipient address")
    subject: str = Field(default="Radiology report")
    body: str = Field(description="Plain-text message body")
