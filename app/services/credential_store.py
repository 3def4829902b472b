"""
Per-user OAuth credential storage, encrypted at rest
"""

from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol
from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.core.security import DataEncryption

logger = get_logger(__name__)


class OAuthCredentials(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    email: Optional[str] = None
    scope: Optional[str] = None

    def expired(self, leeway_seconds: int = 60) -> bool:
        return datetime.utcnow() + timedelta(seconds=leeway_seconds) >= self.expires_at


class CredentialStore(Protocol):
    def get(self, user_id: str) -> Optional[OAuthCredentials]:
        ...

    def set(self, user_id: str, credentials: OAuthCredentials) -> None:
        ...

    def clear(self, user_id: str) -> bool:
        ...


class EncryptedCredentialStore:
    """In-process store keyed by user id; values are Fernet tokens, never plain JSON."""

    def __init__(self, encryption: DataEncryption):
        self._encryption = encryption
        self._blobs: Dict[str, bytes] = {}

    def get(self, user_id: str) -> Optional[OAuthCredentials]:
        blob = self._blobs.get(user_id)
        if blob is None:
            return None
        try:
            raw = self._encryption.decrypt_data(blob)
        except ValueError:
            logger.error(f"Stored credentials for {user_id} could not be decrypted; discarding them")
            self._blobs.pop(user_id, None)
            return None
        return OAuthCredentials.model_validate_json(raw)

    def set(self, user_id: str, credentials: OAuthCredentials) -> None:
        self._blobs[user_id] = self._encryption.encrypt_data(credentials.model_dump_json().encode())

    def clear(self, user_id: str) -> bool:
        return self._blobs.pop(user_id, None) is not None
