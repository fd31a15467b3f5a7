"""Provider adapter interface.

The auth core only talks to upstream providers through this interface, so
neither the login flow nor the client factory ever sees raw SDK responses.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum

from mcp_connectors.auth.errors import AuthError, RefreshFailed
from mcp_connectors.auth.models import CredentialRecord, RedirectResult
from mcp_connectors.config import ProviderSettings


class CallbackMode(str, Enum):
    """What the provider redirect carries."""

    # Authorization code to exchange at the token endpoint
    CODE = "code"
    # Final session token minted by the provider backend
    TOKEN = "token"


class ProviderAdapter(ABC):
    """Narrow adapter between the auth core and one upstream provider.

    Subclasses set the class attributes and implement the methods relevant to
    their callback mode.

    Attributes:
        name: Provider key (gcal, gmail, ...).
        title: Human readable provider name.
        callback_mode: Whether the redirect carries a code or a final token.
        required_params: Query parameters a successful redirect must carry.
        uses_state: Whether the provider echoes the OAuth state parameter.
        default_token_lifetime: Lifetime stamped when upstream omits expiry.
        api_base_url: Base URL for the upstream client handle.
    """

    name: str = ""
    title: str = ""
    callback_mode: CallbackMode = CallbackMode.CODE
    required_params: tuple[str, ...] = ("code",)
    uses_state: bool = True
    default_token_lifetime: timedelta = timedelta(hours=1)
    api_base_url: str = ""

    def __init__(self, settings: ProviderSettings) -> None:
        self.settings = settings

    @property
    def supports_refresh(self) -> bool:
        return False

    def expiry_from_now(self, expires_in: float | int | None = None) -> datetime:
        """Absolute expiry from a relative lifetime, or the provider default."""
        lifetime = (
            timedelta(seconds=float(expires_in)) if expires_in else self.default_token_lifetime
        )
        return datetime.now(timezone.utc) + lifetime

    @abstractmethod
    def build_consent_url(self, redirect_uri: str, state: str) -> str:
        """Build the URL the user's browser is sent to."""

    async def exchange_code(self, code: str, redirect_uri: str) -> CredentialRecord:
        """Exchange an authorization code for a credential record."""
        raise NotImplementedError(f"{self.title} does not use an authorization code")

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        """Renew an expiring record.

        Raises:
            RefreshFailed: Renewal was rejected, failed, or is unsupported.
        """
        raise RefreshFailed(f"{self.title} does not support token refresh")

    def record_from_redirect(self, result: RedirectResult) -> CredentialRecord:
        """Build a record from a redirect that already carries the token."""
        raise NotImplementedError(f"{self.title} redirects with an authorization code")

    def record_from_manual_token(self, token: str) -> CredentialRecord:
        """Build an in-memory record from a pre-supplied token."""
        return CredentialRecord(
            access_token=token,
            expires_at=datetime.now(timezone.utc) + timedelta(days=1),
            scope=" ".join(self.settings.scopes),
        )

    async def resolve_identity(self, record: CredentialRecord) -> CredentialRecord:
        """Fill in identity if it can be looked up. Best effort."""
        return record

    def auth_headers(self, record: CredentialRecord) -> dict[str, str]:
        """Headers that authenticate upstream requests."""
        return {"Authorization": f"{record.token_type or 'Bearer'} {record.access_token}"}

    def callback_redirect(self, params: dict[str, str], error: AuthError | None) -> str | None:
        """Confirmation page to send the browser to after the redirect, if any."""
        return None
