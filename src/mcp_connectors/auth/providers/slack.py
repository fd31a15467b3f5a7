"""Slack OAuth v2 adapter for user tokens.

Slack answers HTTP 200 even on failure and signals errors with
``{"ok": false, "error": "..."}``, so every response is checked for ``ok``.
"""

import logging
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from mcp_connectors.auth.errors import RefreshFailed, UserDeniedOrProviderError
from mcp_connectors.auth.models import CredentialRecord, Identity
from mcp_connectors.auth.providers.base import CallbackMode, ProviderAdapter

logger = logging.getLogger(__name__)

SLACK_AUTHORIZE_URL = "https://slack.com/oauth/v2/authorize"
SLACK_TOKEN_URL = "https://slack.com/api/oauth.v2.access"  # nosec B105 - public endpoint
SLACK_AUTH_TEST_URL = "https://slack.com/api/auth.test"


class SlackProvider(ProviderAdapter):
    """Authorization code grant for Slack user tokens.

    User tokens without token rotation never expire; they get the default
    lifetime so that the uniform expiry rule still applies.
    """

    name = "slack"
    title = "Slack"
    callback_mode = CallbackMode.CODE
    required_params = ("code",)
    uses_state = True
    default_token_lifetime = timedelta(days=365)
    api_base_url = "https://slack.com/api"

    @property
    def supports_refresh(self) -> bool:
        return True

    def build_consent_url(self, redirect_uri: str, state: str) -> str:
        client_id, _ = self.settings.require_client_credentials()
        query = urlencode(
            {
                "client_id": client_id,
                "user_scope": ",".join(self.settings.scopes),
                "redirect_uri": redirect_uri,
                "state": state,
            }
        )
        return f"{SLACK_AUTHORIZE_URL}?{query}"

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        client_id, client_secret = self.settings.require_client_credentials()
        async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0)) as client:
            response = await client.post(
                SLACK_TOKEN_URL,
                data={"client_id": client_id, "client_secret": client_secret, **data},
            )
            response.raise_for_status()
            result: dict[str, Any] = response.json()
        return result

    async def exchange_code(self, code: str, redirect_uri: str) -> CredentialRecord:
        payload = await self._post_token({"code": code, "redirect_uri": redirect_uri})
        if not payload.get("ok") or not payload.get("authed_user"):
            raise UserDeniedOrProviderError(payload.get("error") or "Failed to get user token")
        return self._payload_to_record(payload)

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        if not record.refresh_token:
            raise RefreshFailed("No refresh token available")
        try:
            payload = await self._post_token(
                {"grant_type": "refresh_token", "refresh_token": record.refresh_token}
            )
        except httpx.HTTPError as e:
            raise RefreshFailed(f"Slack token refresh failed: {e}") from e
        if not payload.get("ok"):
            raise RefreshFailed(f"Slack token refresh failed: {payload.get('error', 'unknown')}")

        try:
            renewed = self._payload_to_record(payload)
        except KeyError as e:
            raise RefreshFailed("Slack refresh response carried no access token") from e
        return renewed.model_copy(
            update={
                "refresh_token": renewed.refresh_token or record.refresh_token,
                "identity": record.identity or renewed.identity,
                "extra": {**record.extra, **renewed.extra},
            }
        )

    async def resolve_identity(self, record: CredentialRecord) -> CredentialRecord:
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
                response = await client.post(SLACK_AUTH_TEST_URL, headers=self.auth_headers(record))
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not resolve Slack identity: %s", e)
            return record
        if not data.get("ok"):
            logger.warning("Slack auth.test failed: %s", data.get("error"))
            return record
        return record.model_copy(
            update={"identity": Identity(display_name=data.get("user"), email=None)}
        )

    def _payload_to_record(self, payload: dict[str, Any]) -> CredentialRecord:
        # User tokens live under authed_user; rotation refreshes may return them top level
        user = payload.get("authed_user") or payload
        team = payload.get("team") or {}
        extra = {
            key: value
            for key, value in {
                "user_id": user.get("id") or payload.get("user_id"),
                "team_id": team.get("id"),
                "team_name": team.get("name"),
            }.items()
            if value
        }
        return CredentialRecord(  # nosec B106 - "Bearer" is OAuth token type, not a password
            access_token=user["access_token"],
            refresh_token=user.get("refresh_token"),
            expires_at=self.expiry_from_now(user.get("expires_in")),
            scope=user.get("scope", ""),
            token_type="Bearer",
            extra=extra,
        )
