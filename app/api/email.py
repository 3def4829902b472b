"""
E-Mail-Versand: OAuth-Verbindung und Versand pro Benutzer
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from app.config import settings
from app.core.logging import get_logger
from app.core.security import data_encryption, get_current_user
from app.models.requests import SendEmailRequest
from app.models.responses import EmailConnectResponse, EmailSendResponse, EmailStatusResponse
from app.services.credential_store import EncryptedCredentialStore
from app.services.email_service import EmailService

logger = get_logger(__name__)

router = APIRouter(prefix="/api/email", tags=["email"])

# Singleton for the process lifetime; credentials are keyed per user inside the store
email_service = EmailService(EncryptedCredentialStore(data_encryption))


@router.get("/status", response_model=EmailStatusResponse)
async def email_status(user_info: Dict[str, Any] = Depends(get_current_user)):
    return email_service.status(user_info["sub"])


@router.get("/connect", response_model=EmailConnectResponse)
async def email_connect(user_info: Dict[str, Any] = Depends(get_current_user)):
    return EmailConnectResponse(auth_url=email_service.authorization_url(user_info["sub"]))


@router.get("/callback", include_in_schema=False)
async def email_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    # Google redirects the browser here; the user is identified by the signed state
    if error or not code or not state:
        logger.warning(f"Email authorization was not granted: {error or 'missing code/state'}")
        return RedirectResponse(f"{settings.frontend_url}?email=denied")

    await email_service.complete_authorization(code, state)
    return RedirectResponse(f"{settings.frontend_url}?email=connected")


@router.post("/disconnect", response_model=EmailStatusResponse)
async def email_disconnect(user_info: Dict[str, Any] = Depends(get_current_user)):
    await email_service.disconnect(user_info["sub"])
    return EmailStatusResponse(connected=False)


@router.post("/send", response_model=EmailSendResponse)
async def email_send(payload: SendEmailRequest, user_info: Dict[str, Any] = Depends(get_current_user)):
    message_id = await email_service.send(user_info["sub"], payload.to, payload.subject, payload.body)
    return EmailSendResponse(sent=True, message_id=message_id)
