# src/domains/external_accounting/qbo/auth.py
import base64
import logging
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
import jwt

from src.core.settings import settings
from src.shared.exceptions import ConfigurationError, IntegrationAuthenticationError

from .exceptions import QBOTokenError
from .models import QBOStateTokenPayload
from .types import QBOTokenResponse

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
STATE_TOKEN_TTL_MINUTES = 30


class QBOAuthService:
    """OAuth 2.0 flows against Intuit's identity platform."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self.client_id = settings.QBO_CLIENT_ID
        self.client_secret = settings.QBO_CLIENT_SECRET
        self.redirect_uri = settings.qbo_redirect_uri
        self.scopes = settings.QBO_SCOPES
        self.http_client = http_client

    def _basic_auth_header(self) -> str:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("QBO_CLIENT_ID and QBO_CLIENT_SECRET are required")
        credentials = f"{self.client_id}:{self.client_secret}".encode("utf-8")
        return f"Basic {base64.b64encode(credentials).decode('ascii')}"

    def build_authorization_url(self, org_id: str, user_id: str) -> tuple[str, datetime]:
        """
        Build the Intuit consent URL for an organization.

        Returns:
            Tuple of (authorization URL, state token expiry)
        """
        if not self.client_id:
            raise ConfigurationError("QBO_CLIENT_ID is not configured")

        expires_at = datetime.now(timezone.utc) + timedelta(
            minutes=STATE_TOKEN_TTL_MINUTES
        )
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": self.scopes,
            "redirect_uri": self.redirect_uri,
            "state": self.generate_state_token(org_id, user_id, expires_at),
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}", expires_at

    def generate_state_token(
        self, org_id: str, user_id: str, expires_at: datetime
    ) -> str:
        """Generate JWT state token for OAuth flow."""
        if not settings.JWT_SECRET:
            raise ConfigurationError("JWT_SECRET is not configured")

        payload = QBOStateTokenPayload(
            org_id=org_id,
            user_id=user_id,
            csrf_token=secrets.token_urlsafe(32),
            issued_at=datetime.now(timezone.utc),
            expires_at=expires_at,
        )
        return jwt.encode(
            payload.model_dump(mode="json"), settings.JWT_SECRET, algorithm="HS256"
        )

    def validate_state_token(self, token: str) -> QBOStateTokenPayload:
        """Validate and decode JWT state token."""
        if not settings.JWT_SECRET:
            raise ConfigurationError("JWT_SECRET is not configured")

        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            raise IntegrationAuthenticationError(f"Invalid OAuth state token: {e}")

        state_payload = QBOStateTokenPayload(**payload)
        if datetime.now(timezone.utc) > state_payload.expires_at:
            raise IntegrationAuthenticationError("OAuth session expired")
        return state_payload

    async def exchange_code(self, code: str) -> QBOTokenResponse:
        """Exchange an authorization code for tokens."""
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str) -> QBOTokenResponse:
        """
        Exchange a refresh token for a new token pair.

        QBO rotates the refresh token on every call; the returned one
        replaces the stored one.

        Raises:
            QBOTokenError: If the token endpoint rejects the request
        """
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def _token_request(self, form: dict[str, str]) -> QBOTokenResponse:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": self._basic_auth_header(),
        }

        try:
            if self.http_client is not None:
                response = await self.http_client.post(
                    TOKEN_URL, data=form, headers=headers
                )
            else:
                async with httpx.AsyncClient(
                    timeout=settings.QBO_REQUEST_TIMEOUT
                ) as client:
                    response = await client.post(TOKEN_URL, data=form, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_code = ""
            try:
                body = e.response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                error_code = str(body.get("error") or "")
            raise QBOTokenError(
                f"QBO token request failed: {e.response.text}",
                status=e.response.status_code,
                error=error_code,
            ) from e
        except httpx.RequestError as e:
            raise QBOTokenError(f"QBO token request failed: {e}") from e

        return QBOTokenResponse(**response.json())
