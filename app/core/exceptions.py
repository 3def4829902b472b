"""
Error taxonomy shared by the relay, the report generator and the HTTP layer.
"""

from typing import Optional


class FlowDictationError(Exception):
    """Base class for errors that map to a client-visible shape."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(FlowDictationError):
    """Required input is missing; never reaches a backend."""


class UnsupportedAudioError(ValidationError):
    """Uploaded audio is in a format the batch backends do not accept."""


class PayloadTooLargeError(ValidationError):
    """Uploaded audio exceeds the configured size limit."""


class BackendError(FlowDictationError):
    """A text-generation, batch-transcription or email backend call failed."""


class UpstreamSessionError(FlowDictationError):
    """The streaming speech backend refused, dropped or errored a session."""


class ResourceCleanupFailure(FlowDictationError):
    """Best-effort cleanup (e.g. temp file removal) failed. Logged, never surfaced."""


class NotConnectedError(FlowDictationError):
    """The user has no stored email credentials."""


class ServiceNotConfiguredError(FlowDictationError):
    """An optional integration is missing its configuration."""
