"""Google OAuth adapter shared by the Calendar, Gmail and Drive servers.

Consent URL construction and code exchange use google-auth-oauthlib's Flow;
renewal uses google-auth Credentials. Both libraries block, so the calls run
in the default executor.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import timedelta, timezone
from typing import Any

import httpx
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from mcp_connectors.auth.errors import RefreshFailed
from mcp_connectors.auth.models import CredentialRecord, Identity
from mcp_connectors.auth.providers.base import CallbackMode, ProviderAdapter
from mcp_connectors.config import ProviderSettings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105 - public endpoint

IdentityParser = Callable[[dict[str, Any]], Identity | None]


def _calendar_identity(data: dict[str, Any]) -> Identity | None:
    # The primary calendar's id is the account email
    calendar_id = data.get("id")
    return Identity(email=calendar_id, display_name=data.get("summary")) if calendar_id else None


def _gmail_identity(data: dict[str, Any]) -> Identity | None:
    email = data.get("emailAddress")
    return Identity(email=email) if email else None


def _drive_identity(data: dict[str, Any]) -> Identity | None:
    user = data.get("user") or {}
    if not user:
        return None
    return Identity(email=user.get("emailAddress"), display_name=user.get("displayName"))


class GoogleProvider(ProviderAdapter):
    """Authorization code grant against Google's OAuth endpoints.

    Attributes:
        identity_url: Endpoint used to resolve the signed-in account.
    """

    callback_mode = CallbackMode.CODE
    required_params = ("code",)
    uses_state = True
    default_token_lifetime = timedelta(hours=1)

    identity_url: str = ""
    _identity_parser: IdentityParser | None = None

    def __init__(self, settings: ProviderSettings) -> None:
        super().__init__(settings)
        self._flow: Flow | None = None

    @property
    def supports_refresh(self) -> bool:
        return True

    def _client_config(self, redirect_uri: str) -> dict[str, Any]:
        client_id, client_secret = self.settings.require_client_credentials()
        return {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [redirect_uri],
            }
        }

    def build_consent_url(self, redirect_uri: str, state: str) -> str:
        """Build the Google consent URL.

        Forces the consent screen so that Google reissues a refresh token
        even when the user has authorized this client before.
        """
        self._flow = Flow.from_client_config(
            self._client_config(redirect_uri),
            scopes=self.settings.scopes,
            redirect_uri=redirect_uri,
        )
        auth_url, _ = self._flow.authorization_url(
            access_type="offline",
            prompt="consent",
            state=state,
        )
        return auth_url

    async def exchange_code(self, code: str, redirect_uri: str) -> CredentialRecord:
        # Reuse the flow that built the consent URL: it holds the PKCE verifier
        flow = self._flow
        if flow is None or flow.redirect_uri != redirect_uri:
            flow = Flow.from_client_config(
                self._client_config(redirect_uri),
                scopes=self.settings.scopes,
                redirect_uri=redirect_uri,
            )

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: flow.fetch_token(code=code))
        self._flow = None
        return self._credentials_to_record(flow.credentials)

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        if not record.refresh_token:
            raise RefreshFailed("No refresh token available")

        credentials = self._record_to_credentials(record)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, credentials.refresh, Request())
        except GoogleAuthError as e:
            raise RefreshFailed(f"Google token refresh failed: {e}") from e

        renewed = self._credentials_to_record(credentials)
        return renewed.model_copy(
            update={
                "refresh_token": renewed.refresh_token or record.refresh_token,
                "identity": record.identity,
                "scope": record.scope or renewed.scope,
            }
        )

    async def resolve_identity(self, record: CredentialRecord) -> CredentialRecord:
        if not self.identity_url or self._identity_parser is None:
            return record
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
                response = await client.get(self.identity_url, headers=self.auth_headers(record))
                response.raise_for_status()
                identity = self._identity_parser(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not resolve %s identity: %s", self.title, e)
            return record
        return record.model_copy(update={"identity": identity}) if identity else record

    def _credentials_to_record(self, credentials: Credentials) -> CredentialRecord:
        """Convert google-auth Credentials to a CredentialRecord."""
        if credentials.expiry:
            expires_at = credentials.expiry
            # google-auth reports naive UTC
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = self.expiry_from_now()

        scopes = list(credentials.scopes or self.settings.scopes)
        return CredentialRecord(  # nosec B106 - "Bearer" is OAuth token type, not a password
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=expires_at,
            scope=" ".join(scopes),
            token_type="Bearer",
        )

    def _record_to_credentials(self, record: CredentialRecord) -> Credentials:
        """Convert a CredentialRecord to google-auth Credentials."""
        client_id, client_secret = self.settings.require_client_credentials()
        return Credentials(  # nosec B106 - token_uri is public Google OAuth endpoint
            token=record.access_token,
            refresh_token=record.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=record.scope.split() or None,
        )


class GoogleCalendarProvider(GoogleProvider):
    name = "gcal"
    title = "Google Calendar"
    api_base_url = "https://www.googleapis.com/calendar/v3"
    identity_url = "https://www.googleapis.com/calendar/v3/calendars/primary"
    _identity_parser = staticmethod(_calendar_identity)


class GmailProvider(GoogleProvider):
    name = "gmail"
    title = "Gmail"
    api_base_url = "https://gmail.googleapis.com/gmail/v1"
    identity_url = "https://gmail.googleapis.com/gmail/v1/users/me/profile"
    _identity_parser = staticmethod(_gmail_identity)


class GoogleDriveProvider(GoogleProvider):
    name = "gdrive"
    title = "Google Drive"
    api_base_url = "https://www.googleapis.com/drive/v3"
    identity_url = "https://www.googleapis.com/drive/v3/about?fields=user"
    _identity_parser = staticmethod(_drive_identity)
