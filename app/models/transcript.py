"""
Audio frame and transcript event models for the streaming relay
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

BYTES_PER_SAMPLE = 2  # signed 16-bit PCM


@dataclass(frozen=True)
class AudioFrame:
    """Immutable block of s16le mono PCM, consumed exactly once upstream."""

    sequence: int
    data: bytes
    sample_rate: int

    @property
    def num_samples(self) -> int:
        return len(self.data) // BYTES_PER_SAMPLE

    @property
    def duration_ms(self) -> float:
        return 1000.0 * self.num_samples / self.sample_rate


class TranscriptEventType(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"


class TranscriptEvent(BaseModel):
    """Tagged union over partial, final and error events"""
    type: TranscriptEventType = Field(description="Event kind")
    text: str = Field(default="", description="Recognized text (partial/final)")
    end_of_utterance: bool = Field(default=False, description="Upstream detected end of turn")
    message: Optional[str] = Field(default=None, description="Error description (error only)")

    model_config = {"frozen": True}

    @classmethod
    def partial(cls, text: str, end_of_utterance: bool = False) -> "TranscriptEvent":
        return cls(type=TranscriptEventType.PARTIAL, text=text, end_of_utterance=end_of_utterance)

    @classmethod
    def final(cls, text: str, end_of_utterance: bool = True) -> "TranscriptEvent":
        return cls(type=TranscriptEventType.FINAL, text=text, end_of_utterance=end_of_utterance)

    @classmethod
    def error(cls, message: str) -> "TranscriptEvent":
        return cls(type=TranscriptEventType.ERROR, message=message)

    @property
    def is_error(self) -> bool:
        return self.type == TranscriptEventType.ERROR

    @property
    def is_final(self) -> bool:
        return self.type == TranscriptEventType.FINAL

    def to_client_message(self) -> Dict[str, Any]:
        """JSON shape sent to the browser over the relay socket."""
        if self.is_error:
            return {"type": "error", "message": self.message or "Transcription error"}
        return {
            "type": "transcript",
            "text": self.text,
            "is_final": self.is_final,
            "speech_final": self.end_of_utterance,
        }
