"""
Outbound email through Gmail with per-user OAuth credentials
"""

import base64
import time
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config import settings
from app.core.exceptions import BackendError, NotConnectedError, ServiceNotConfiguredError, ValidationError
from app.core.logging import get_logger, audit_logger
from app.core.security import security_manager
from app.services.credential_store import CredentialStore, OAuthCredentials

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

# Define retryable exceptions for network issues
RETRYABLE_EXCEPTIONS = (httpx.TimeoutException, httpx.NetworkError)


class EmailService:
    """status / connect / disconnect / send, scoped to the calling user."""

    def __init__(self, store: CredentialStore, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self._transport = transport

    def _require_configured(self):
        if not settings.email_configured:
            raise ServiceNotConfiguredError("Email sending is not configured")

    def status(self, user_id: str) -> Dict[str, Any]:
        credentials = self.store.get(user_id)
        return {
            "connected": credentials is not None,
            "email": credentials.email if credentials else None,
        }

    def authorization_url(self, user_id: str) -> str:
        self._require_configured()
        params = {
            "client_id": settings.google_client_id,
            "redirect_uri": settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(settings.google_oauth_scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": security_manager.create_oauth_state(user_id),
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def complete_authorization(self, code: str, state: str) -> str:
        """Exchange the consent code and store the credentials. Returns the user id."""
        self._require_configured()
        user_id = security_manager.read_oauth_state(state)
        if not user_id:
            raise ValidationError("Invalid or expired OAuth state")

        token = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.google_redirect_uri,
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
        })
        credentials = OAuthCredentials(
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_at=datetime.utcnow() + timedelta(seconds=int(token.get("expires_in", 3600))),
            scope=token.get("scope"),
        )
        credentials.email = await self._fetch_account_email(credentials.access_token)
        self.store.set(user_id, credentials)
        logger.info(f"Email account connected for user {user_id}")
        return user_id

    async def disconnect(self, user_id: str) -> bool:
        credentials = self.store.get(user_id)
        removed = self.store.clear(user_id)
        if credentials is not None:
            token = credentials.refresh_token or credentials.access_token
            try:
                await self._request("POST", GOOGLE_REVOKE_URL, data={"token": token})
            except httpx.HTTPError as e:
                logger.warning(f"Token revocation for user {user_id} failed: {e}")
        return removed

    async def send(self, user_id: str, to: str, subject: str, body: str) -> Optional[str]:
        if not to or "@" not in to:
            raise ValidationError("A valid recipient address is required")
        credentials = await self._valid_credentials(user_id)

        message = EmailMessage()
        message["To"] = to
        if credentials.email:
            message["From"] = credentials.email
        message["Subject"] = subject
        message.set_content(body)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()

        response = await self._checked_request(
            "POST",
            GMAIL_SEND_URL,
            json={"raw": raw},
            headers={"Authorization": f"Bearer {credentials.access_token}"},
        )
        message_id = response.json().get("id")
        logger.info(f"Email sent for user {user_id}, message id {message_id}")
        return message_id

    async def _valid_credentials(self, user_id: str) -> OAuthCredentials:
        credentials = self.store.get(user_id)
        if credentials is None:
            raise NotConnectedError("No email account connected")
        if not credentials.expired():
            return credentials
        if not credentials.refresh_token:
            self.store.clear(user_id)
            raise NotConnectedError("Email authorization expired, please reconnect")

        self._require_configured()
        token = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
        })
        credentials.access_token = token["access_token"]
        credentials.expires_at = datetime.utcnow() + timedelta(seconds=int(token.get("expires_in", 3600)))
        self.store.set(user_id, credentials)
        logger.info(f"Refreshed email access token for user {user_id}")
        return credentials

    async def _token_request(self, form: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._checked_request("POST", GOOGLE_TOKEN_URL, data=form)
        return response.json()

    async def _fetch_account_email(self, access_token: str) -> Optional[str]:
        response = await self._checked_request(
            "GET", GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        return response.json().get("email")

    async def _checked_request(self, method: str, url: str, **kwargs) -> httpx.Response:
        start_time = time.time()
        try:
            response = await self._request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Email provider request to {url} failed: {e}")
            raise BackendError("Email provider request failed", details=str(e)) from e

        audit_logger.log_external_api_call(
            request_id="-",
            service="google",
            endpoint=url,
            response_status=response.status_code,
            response_time_ms=int((time.time() - start_time) * 1000),
        )
        if response.status_code >= 400:
            logger.error(f"Email provider returned {response.status_code} for {url}")
            raise BackendError("Email provider request failed", details=response.text)
        return response

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(f"Retrying email provider call, attempt {retry_state.attempt_number}..."),
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=settings.email_timeout, transport=self._transport) as client:
            return await client.request(method, url, **kwargs)
