"""
Upload-Verarbeitung: temporäre Dateien, Format-Erkennung und Aufräumen
"""

import os
import tempfile
from dataclasses import dataclass
from typing import Optional, Dict, Any
from mutagen import File as MutagenFile
from fastapi import UploadFile
from app.config import settings
from app.core.exceptions import ValidationError, UnsupportedAudioError, PayloadTooLargeError, ResourceCleanupFailure
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class StoredUpload:
    """Paths of one upload: where it was first written and its renamed variant."""
    temp_path: str
    path: str
    content_type: str
    size_bytes: int

    @property
    def paths(self):
        return {self.temp_path, self.path}


class AudioProcessor:
    """Audio-Validierung und temporäre Ablage"""

    def __init__(self, upload_dir: Optional[str] = None):
        self.upload_dir = upload_dir

    async def save_upload(self, file: UploadFile) -> StoredUpload:
        """
        Writes the uploaded audio to a temporary file, then renames it so the
        file name carries the extension of its format.
        """
        audio_data = await file.read()
        if not audio_data:
            raise ValidationError("Audio file is empty")

        max_bytes = settings.max_file_size_mb * 1024 * 1024
        if len(audio_data) > max_bytes:
            raise PayloadTooLargeError(f"Audio file exceeds {settings.max_file_size_mb} MB")

        content_type = self._resolve_content_type(file.content_type, audio_data, file.filename)
        logger.info(f"Received {len(audio_data)} bytes of {content_type} audio.")

        upload_dir = self.upload_dir or settings.upload_dir
        os.makedirs(upload_dir, exist_ok=True)
        with tempfile.NamedTemporaryFile(delete=False, dir=upload_dir) as temp_file:
            temp_file.write(audio_data)
            temp_path = temp_file.name

        renamed_path = temp_path + self._get_extension_from_content_type(content_type)
        try:
            os.rename(temp_path, renamed_path)
        except OSError:
            self.cleanup(StoredUpload(temp_path, temp_path, content_type, len(audio_data)))
            raise
        logger.info(f"Audio saved temporarily to {renamed_path}")

        return StoredUpload(
            temp_path=temp_path,
            path=renamed_path,
            content_type=content_type,
            size_bytes=len(audio_data),
        )

    def cleanup(self, upload: Optional[StoredUpload]):
        """Best-effort removal of every path the upload ever had."""
        if upload is None:
            return
        for path in upload.paths:
            try:
                self._remove(path)
            except ResourceCleanupFailure as e:
                logger.error(f"Error cleaning up file {path}: {e.details}")

    def _remove(self, path: str):
        if not os.path.exists(path):
            return
        try:
            os.unlink(path)
            logger.info(f"Cleaned up temporary file: {path}")
        except OSError as e:
            raise ResourceCleanupFailure("Temporary file could not be removed", details=str(e)) from e

    def extract_duration(self, file_path: str) -> Optional[float]:
        """Duration in seconds via mutagen, None if the container is not recognised."""
        metadata = self._extract_metadata(file_path)
        return metadata.get("duration_seconds")

    def _resolve_content_type(self, declared: Optional[str], audio_data: bytes, filename: Optional[str]) -> str:
        # Browsers send e.g. "audio/webm;codecs=opus"
        content_type = (declared or "").split(";")[0].strip().lower()
        if content_type in settings.supported_audio_formats:
            return content_type

        detected = self._detect_content_type_from_data(audio_data, filename)
        if detected in settings.supported_audio_formats:
            return detected

        logger.warning(f"Unsupported audio format: {declared}. Supported: {settings.supported_audio_formats}")
        raise UnsupportedAudioError(f"Unsupported audio format: {declared or 'unknown'}")

    def _get_extension_from_content_type(self, content_type: str) -> str:
        """Maps content type to file extension."""
        return {
            "audio/mpeg": ".mp3",
            "audio/wav": ".wav",
            "audio/x-wav": ".wav",
            "audio/mp4": ".mp4",
            "audio/m4a": ".m4a",
            "audio/ogg": ".ogg",
            "audio/webm": ".webm",
            "video/webm": ".webm",
        }.get(content_type, ".tmp")

    def _detect_content_type_from_data(self, audio_data: bytes, filename: Optional[str]) -> str:
        """Detects Content-Type based on file signature or filename."""
        if b'ftyp' in audio_data[4:12]:
            return "audio/mp4"

        signatures = {
            b'ID3': "audio/mpeg",
            b'\xff\xfb': "audio/mpeg",
            b'\xff\xf3': "audio/mpeg",
            b'\xff\xf2': "audio/mpeg",
            b'RIFF': "audio/wav",
            b'OggS': "audio/ogg",
            b'\x1a\x45\xdf\xa3': "audio/webm",  # EBML
        }
        for signature, detected_type in signatures.items():
            if audio_data.startswith(signature):
                logger.info(f"Detected content type: {detected_type} (signature)")
                return detected_type

        if filename:
            ext_map = {
                '.mp3': 'audio/mpeg',
                '.wav': 'audio/wav',
                '.m4a': 'audio/mp4',
                '.mp4': 'audio/mp4',
                '.ogg': 'audio/ogg',
                '.webm': 'audio/webm',
            }
            _, ext = os.path.splitext(filename)
            if ext.lower() in ext_map:
                logger.info(f"Guessed content type from filename: {ext_map[ext.lower()]}")
                return ext_map[ext.lower()]

        return "application/octet-stream"

    def _extract_metadata(self, file_path: str) -> Dict[str, Any]:
        """Extracts duration and other metadata using mutagen."""
        try:
            audio = MutagenFile(file_path)
        except Exception as e:
            logger.warning(f"Could not extract metadata using mutagen: {e}")
            return {}
        if audio is None or audio.info is None:
            return {}
        return {
            "duration_seconds": float(getattr(audio.info, 'length', 0.0)),
            "sample_rate": getattr(audio.info, 'sample_rate', None),
            "channels": getattr(audio.info, 'channels', None),
        }
