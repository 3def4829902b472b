"""
Batch Speech-to-Text Service
Transcribes one uploaded audio file with OpenAI Whisper or AssemblyAI.
"""

import asyncio
from pathlib import Path
from typing import Optional

import assemblyai as aai
from openai import AsyncOpenAI

from app.config import settings, BatchSTTProvider
from app.core.exceptions import BackendError
from app.core.logging import get_logger
from app.models.responses import TranscriptionUploadResponse

logger = get_logger(__name__)

# Configure AssemblyAI client
if settings.assemblyai_api_key:
    aai.settings.api_key = settings.assemblyai_api_key
    aai.settings.base_url = settings.assemblyai_api_base_url


class STTService:
    """Service for file-based Speech-to-Text transcription."""

    def __init__(self, provider: Optional[BatchSTTProvider] = None):
        self.provider = provider or settings.batch_stt_provider
        if self.provider == BatchSTTProvider.ASSEMBLYAI:
            self.model = settings.assemblyai_speech_model
        else:
            self.model = settings.batch_stt_model
        self.openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.stt_timeout,
            max_retries=0,
        )

    async def transcribe(self, request_id: str, file_path: str) -> TranscriptionUploadResponse:
        """Transcribe the file at ``file_path``. Raises BackendError on any provider failure."""
        logger.info(f"[{request_id}] Starting {self.provider.value} transcription for file: {file_path}")
        try:
            if self.provider == BatchSTTProvider.ASSEMBLYAI:
                result = await self._transcribe_assemblyai(file_path)
            else:
                result = await self._transcribe_openai(file_path)
        except BackendError:
            raise
        except Exception as e:
            logger.error(f"[{request_id}] Transcription failed: {e}", exc_info=True)
            raise BackendError("Transcription failed", details=str(e)) from e

        logger.info(f"[{request_id}] Transcription successful: {len(result.text)} characters")
        return result

    async def _transcribe_openai(self, file_path: str) -> TranscriptionUploadResponse:
        transcription = await self.openai_client.audio.transcriptions.create(
            file=Path(file_path),
            model=self.model,
        )
        return TranscriptionUploadResponse(text=transcription.text)

    async def _transcribe_assemblyai(self, file_path: str) -> TranscriptionUploadResponse:
        config = aai.TranscriptionConfig(language_detection=True, speech_model=aai.SpeechModel(self.model))
        transcriber = aai.Transcriber(config=config)
        # SDK call is synchronous and polls until the transcript is done
        transcript = await asyncio.to_thread(transcriber.transcribe, file_path)

        if transcript.status == aai.TranscriptStatus.error:
            logger.error(f"AssemblyAI transcription failed: {transcript.error}")
            raise BackendError("Transcription failed", details=transcript.error)

        logger.info(f"AssemblyAI transcript created with ID: {transcript.id}")
        return TranscriptionUploadResponse(text=transcript.text or "", confidence=transcript.confidence)
