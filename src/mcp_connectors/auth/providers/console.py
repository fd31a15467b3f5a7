"""Console session-cookie adapter.

The console backend runs its own Google sign-in and hands the resulting
session token straight to the local redirect, so there is no code exchange.
"""

from datetime import timedelta
from urllib.parse import urlencode

from mcp_connectors.auth.errors import AuthError, MalformedCallback
from mcp_connectors.auth.models import CredentialRecord, Identity, RedirectResult
from mcp_connectors.auth.providers.base import CallbackMode, ProviderAdapter

DEFAULT_COOKIE_NAME = "__Secure-next-auth.session-token"


class ConsoleProvider(ProviderAdapter):
    """Session-cookie login against the console backend."""

    name = "console"
    title = "Console"
    callback_mode = CallbackMode.TOKEN
    required_params = ("token", "cookie_name", "email")
    uses_state = False
    default_token_lifetime = timedelta(days=30)

    @property
    def api_base_url(self) -> str:  # type: ignore[override]
        return self.settings.console_url

    def build_consent_url(self, redirect_uri: str, state: str) -> str:
        # The console only needs the port; the path is fixed on its side
        return f"{self.settings.console_url}/api/auth/mcp-login?port={self.settings.port}"

    def record_from_redirect(self, result: RedirectResult) -> CredentialRecord:
        token = result.get("token")
        cookie_name = result.get("cookie_name")
        email = result.get("email")
        if not token or not cookie_name or not email:
            raise MalformedCallback("Missing token, cookie_name, or email in callback")

        return CredentialRecord(
            access_token=token,
            expires_at=self.expiry_from_now(),
            scope="session",
            token_type="Cookie",
            identity=Identity(email=email, display_name=result.get("name") or None),
            extra={"cookie_name": cookie_name},
        )

    def record_from_manual_token(self, token: str) -> CredentialRecord:
        """Accept either ``name=value`` or a bare session token value."""
        cookie_name, sep, value = token.strip().partition("=")
        if not sep:
            cookie_name, value = DEFAULT_COOKIE_NAME, cookie_name
        record = super().record_from_manual_token(value)
        return record.model_copy(
            update={"token_type": "Cookie", "scope": "session", "extra": {"cookie_name": cookie_name}}
        )

    def auth_headers(self, record: CredentialRecord) -> dict[str, str]:
        cookie_name = record.extra.get("cookie_name", DEFAULT_COOKIE_NAME)
        return {"Cookie": f"{cookie_name}={record.access_token}"}

    def callback_redirect(self, params: dict[str, str], error: AuthError | None) -> str | None:
        if error is not None:
            query = urlencode({"status": "error", "message": str(error)})
        else:
            query = urlencode({"status": "success", "email": params.get("email", "")})
        return f"{self.settings.console_url}/mcp-auth?{query}"
