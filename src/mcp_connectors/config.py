"""Per-provider configuration resolved from the environment.

Environment Variables (``<P>`` is GCAL, GMAIL, GDRIVE, SLACK or CONSOLE):
    <P>_CALLBACK_PORT: Local port for the OAuth redirect listener.
    <P>_TOKEN_PATH: Credential file location.
    <P>_CLIENT_ID / <P>_CLIENT_SECRET: OAuth client credentials.
    <P>_CREDENTIALS_PATH: JSON file with client_id, client_secret, redirect_uri.
        Its redirect URI, when present, decides the callback host, port and path.
    <P>_SESSION_TOKEN: Pre-supplied session token, used without a login.
    <P>_AUTO_POPUP: "false" to never open a browser from a tool call.
    CONSOLE_URL: Console backend base URL.
    MCP_CONNECTORS_HOME: Directory for credential files (default ~/.mcp-connectors).
"""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from urllib.parse import urlparse

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONSOLE_URL = "https://console.auxia.io"
DEFAULT_CALLBACK_HOST = "127.0.0.1"
DEFAULT_LOGIN_TIMEOUT = 120.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ProviderDefaults(BaseModel):
    """Built-in defaults for one provider."""

    env_prefix: str
    port: int
    callback_path: str = "/oauth2callback"
    scopes: list[str] = Field(default_factory=list)


PROVIDER_DEFAULTS: dict[str, ProviderDefaults] = {
    "gcal": ProviderDefaults(
        env_prefix="GCAL",
        port=3036,
        scopes=[
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        ],
    ),
    "gmail": ProviderDefaults(
        env_prefix="GMAIL",
        port=3035,
        scopes=[
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.send",
            "https://www.googleapis.com/auth/gmail.modify",
            "https://www.googleapis.com/auth/gmail.labels",
        ],
    ),
    "gdrive": ProviderDefaults(
        env_prefix="GDRIVE",
        port=3000,
        scopes=["https://www.googleapis.com/auth/drive"],
    ),
    "slack": ProviderDefaults(
        env_prefix="SLACK",
        port=3036,
        scopes=[
            "channels:history",
            "channels:read",
            "channels:write",
            "chat:write",
            "groups:history",
            "groups:read",
            "im:history",
            "im:read",
            "im:write",
            "mpim:history",
            "mpim:read",
            "reactions:read",
            "reactions:write",
            "search:read",
            "team:read",
            "users:read",
            "users:read.email",
            "users.profile:read",
        ],
    ),
    "console": ProviderDefaults(
        env_prefix="CONSOLE",
        port=8765,
        callback_path="/callback",
    ),
}


class ProviderSettings(BaseModel):
    """Resolved settings for one provider instance.

    Attributes:
        provider: Provider name.
        host: Interface the callback listener binds.
        port: Callback listener port.
        callback_path: Path the provider redirects to.
        token_path: Credential file.
        client_id: OAuth client ID (code-grant providers).
        client_secret: OAuth client secret (code-grant providers).
        scopes: Requested scopes.
        session_token: Pre-supplied token, bypasses login when set.
        auto_popup: Whether tool calls may open the browser.
        login_timeout: Seconds to wait for the redirect.
        console_url: Console backend base URL.
    """

    provider: str
    host: str = DEFAULT_CALLBACK_HOST
    port: int
    callback_path: str
    token_path: Path
    client_id: str | None = None
    client_secret: str | None = None
    redirect_host: str = "localhost"
    scopes: list[str] = Field(default_factory=list)
    session_token: str | None = None
    auto_popup: bool = True
    login_timeout: float = DEFAULT_LOGIN_TIMEOUT
    console_url: str = DEFAULT_CONSOLE_URL

    @property
    def redirect_uri(self) -> str:
        """Redirect URI registered with the provider; must match exactly."""
        return f"http://{self.redirect_host}:{self.port}{self.callback_path}"

    def require_client_credentials(self) -> tuple[str, str]:
        """Return (client_id, client_secret) or raise ConfigurationError."""
        from mcp_connectors.auth.errors import ConfigurationError

        if not self.client_id or not self.client_secret:
            prefix = PROVIDER_DEFAULTS[self.provider].env_prefix
            raise ConfigurationError(
                "Client ID and secret required. "
                f"Set {prefix}_CLIENT_ID and {prefix}_CLIENT_SECRET, "
                f"or point {prefix}_CREDENTIALS_PATH at a credentials JSON file."
            )
        return self.client_id, self.client_secret


def _load_credentials_file(path: Path) -> dict[str, str]:
    from mcp_connectors.auth.errors import ConfigurationError

    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read client credentials from {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Client credentials file {path} must contain a JSON object")
    # Google's downloaded client_secret.json nests under "installed" or "web"
    for key in ("installed", "web"):
        if isinstance(data.get(key), dict):
            nested = data[key]
            uris = nested.get("redirect_uris") or []
            return {
                "client_id": nested.get("client_id", ""),
                "client_secret": nested.get("client_secret", ""),
                "redirect_uri": uris[0] if uris else "",
            }
    return {k: str(v) for k, v in data.items() if isinstance(v, str)}


def load_settings(provider: str, environ: Mapping[str, str] | None = None) -> ProviderSettings:
    """Resolve settings for a provider from environment variables.

    Args:
        provider: Provider name.
        environ: Environment mapping. Defaults to os.environ.

    Returns:
        Validated ProviderSettings.

    Raises:
        ConfigurationError: Unknown provider or unreadable credentials file.
    """
    from mcp_connectors.auth.errors import ConfigurationError
    from mcp_connectors.auth.token_storage import DEFAULT_HOME, get_token_path

    if provider not in PROVIDER_DEFAULTS:
        raise ConfigurationError(
            f"Unknown provider '{provider}'. Choose from: {', '.join(sorted(PROVIDER_DEFAULTS))}"
        )
    env = os.environ if environ is None else environ
    defaults = PROVIDER_DEFAULTS[provider]
    prefix = defaults.env_prefix

    def get(name: str) -> str | None:
        value = env.get(f"{prefix}_{name}")
        return value if value else None

    home = DEFAULT_HOME
    if env.get("MCP_CONNECTORS_HOME"):
        home = Path(env["MCP_CONNECTORS_HOME"]).expanduser()
    token_path = get_token_path(provider, home)
    if get("TOKEN_PATH"):
        token_path = Path(get("TOKEN_PATH")).expanduser()  # type: ignore[arg-type]

    client_id = get("CLIENT_ID")
    client_secret = get("CLIENT_SECRET")
    port = defaults.port
    callback_path = defaults.callback_path
    redirect_host = "localhost"

    credentials_path = get("CREDENTIALS_PATH")
    if credentials_path:
        file_values = _load_credentials_file(Path(credentials_path).expanduser())
        client_id = file_values.get("client_id") or client_id
        client_secret = file_values.get("client_secret") or client_secret
        if file_values.get("redirect_uri"):
            # The registered redirect URI decides where the listener must bind
            parsed = urlparse(file_values["redirect_uri"])
            redirect_host = parsed.hostname or redirect_host
            port = parsed.port or port
            callback_path = parsed.path or callback_path

    if get("CALLBACK_PORT"):
        try:
            port = int(get("CALLBACK_PORT"))  # type: ignore[arg-type]
        except ValueError as e:
            raise ConfigurationError(f"{prefix}_CALLBACK_PORT must be an integer") from e

    auto_popup = True
    if get("AUTO_POPUP") is not None:
        auto_popup = get("AUTO_POPUP").lower() in _TRUE_VALUES  # type: ignore[union-attr]

    settings = ProviderSettings(
        provider=provider,
        port=port,
        callback_path=callback_path,
        token_path=token_path,
        client_id=client_id,
        client_secret=client_secret,
        redirect_host=redirect_host,
        scopes=list(defaults.scopes),
        session_token=get("SESSION_TOKEN"),
        auto_popup=auto_popup,
        console_url=(env.get("CONSOLE_URL") or DEFAULT_CONSOLE_URL).rstrip("/"),
    )
    logger.debug("Loaded settings for %s (port %d, token %s)", provider, port, token_path)
    return settings
