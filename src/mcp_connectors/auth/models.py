"""Data models for stored credentials and in-flight authorizations.

CredentialRecord is the only thing persisted to disk. PendingAuthorization
and RedirectResult live in memory for the duration of one login.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class TokenStatus(str, Enum):
    """State of a provider's stored credential file."""

    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INVALID = "invalid"


class Identity(BaseModel):
    """Resolved principal behind a credential. Best effort."""

    email: str | None = Field(default=None, description="Account email address")
    display_name: str | None = Field(default=None, description="Human readable name")


class CredentialRecord(BaseModel):
    """Persisted credential for a single provider.

    Attributes:
        access_token: Bearer token or session secret used on upstream calls.
        refresh_token: Present only for providers that support silent renewal.
        expires_at: Absolute expiry instant. None is treated as already expired.
        scope: Granted permissions, space or comma joined. Informational.
        identity: Account the credential belongs to, if known.
        token_type: OAuth token type.
        extra: Provider specific extras (Slack team, Console cookie name).
    """

    access_token: str = Field(..., min_length=1, description="Access token or session secret")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    expires_at: datetime | None = Field(default=None, description="Token expiration time (UTC)")
    scope: str = Field(default="", description="Granted scopes")
    identity: Identity | None = Field(default=None, description="Resolved identity")
    token_type: str = Field(default="Bearer", description="Token type")
    extra: dict[str, str] = Field(default_factory=dict, description="Provider extras")

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, buffer_seconds: int = 0, now: datetime | None = None) -> bool:
        """Check whether the token is expired or expires within the buffer.

        Args:
            buffer_seconds: Look-ahead window in seconds.
            now: Reference instant. Defaults to the current UTC time.

        Returns:
            True if there is no expiry or it falls at or before now + buffer.
        """
        if self.expires_at is None:
            return True
        if now is None:
            now = datetime.now(timezone.utc)
        return self.expires_at <= now + timedelta(seconds=buffer_seconds)

    @property
    def email(self) -> str | None:
        return self.identity.email if self.identity else None


class AuthorizationState(str, Enum):
    """Lifecycle of a single interactive login."""

    LISTENING = "listening"
    AWAITING_EXCHANGE = "awaiting_exchange"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


_TERMINAL_STATES = {
    AuthorizationState.COMPLETE,
    AuthorizationState.FAILED,
    AuthorizationState.TIMED_OUT,
}


class PendingAuthorization(BaseModel):
    """One in-flight interactive login.

    The resolution is set exactly once; settling twice is a bug in the caller.
    """

    model_config = {"arbitrary_types_allowed": True}

    listener_port: int
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    state: AuthorizationState = AuthorizationState.LISTENING
    resolution: CredentialRecord | Exception | None = None

    @property
    def settled(self) -> bool:
        return self.state in _TERMINAL_STATES

    def mark_awaiting_exchange(self) -> None:
        if self.settled:
            raise RuntimeError("Authorization already settled")
        self.state = AuthorizationState.AWAITING_EXCHANGE

    def resolve(self, record: CredentialRecord) -> None:
        self._settle(AuthorizationState.COMPLETE, record)

    def fail(self, error: Exception, timed_out: bool = False) -> None:
        state = AuthorizationState.TIMED_OUT if timed_out else AuthorizationState.FAILED
        self._settle(state, error)

    def _settle(self, state: AuthorizationState, resolution: Any) -> None:
        if self.settled:
            raise RuntimeError(f"Authorization already settled as {self.state.value}")
        self.state = state
        self.resolution = resolution


class RedirectResult(BaseModel):
    """Query parameters captured from the provider redirect."""

    params: dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.params.get(key, default)

    @property
    def code(self) -> str | None:
        return self.params.get("code")
