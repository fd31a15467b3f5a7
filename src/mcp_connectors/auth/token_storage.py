"""Credential persistence for a single provider.

Each provider owns one JSON file, by default
~/.mcp-connectors/<provider>-token.json. The directory is created 0700 and
the file is only ever written through a 0600 temp file that is renamed into
place, so readers see either the previous record or the new one, never a
partial write.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from mcp_connectors.auth.models import CredentialRecord, TokenStatus

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".mcp-connectors"


def get_token_path(provider: str, home: Path | None = None) -> Path:
    """Get the default credential path for a provider.

    Args:
        provider: Provider name (gcal, gmail, gdrive, slack, console).
        home: Base directory. Defaults to ~/.mcp-connectors.

    Returns:
        Path to <home>/<provider>-token.json.
    """
    return (home or DEFAULT_HOME) / f"{provider}-token.json"


class CredentialStore:
    """JSON file storage for one provider's CredentialRecord.

    Attributes:
        token_path: Path to the credential file.

    Example:
        ```python
        store = CredentialStore(get_token_path("gcal"))
        store.save(CredentialRecord(access_token="abc", expires_at=...))

        record = store.load()
        if record is None:
            print("Not authenticated or expired")
        ```
    """

    def __init__(self, token_path: Path) -> None:
        self.token_path = Path(token_path)

    @property
    def credentials_dir(self) -> Path:
        return self.token_path.parent

    def _ensure_credentials_dir(self) -> None:
        """Create credentials directory with secure permissions if needed."""
        if not self.credentials_dir.exists():
            self.credentials_dir.mkdir(parents=True, mode=0o700)

    def _read(self) -> CredentialRecord | None:
        if not self.token_path.exists():
            return None

        try:
            with open(self.token_path) as f:
                data = json.load(f)
            return CredentialRecord.model_validate(data)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read credentials at %s: %s", self.token_path, e)
        except ValidationError as e:
            logger.warning(
                "Credentials at %s are malformed (%d errors)", self.token_path, e.error_count()
            )
        return None

    def load(self, *, allow_expired: bool = False) -> CredentialRecord | None:
        """Load the stored credential.

        Args:
            allow_expired: Return expired records too. The client factory uses
                this to reach the refresh token of an expired record.

        Returns:
            The record, or None if missing, unreadable, or expired.
        """
        now = datetime.now(timezone.utc)
        record = self._read()
        if record is None:
            return None

        if not allow_expired and record.is_expired(now=now):
            logger.info("Stored credentials at %s have expired", self.token_path)
            return None

        return record

    def save(self, record: CredentialRecord) -> None:
        """Atomically replace the stored credential.

        Args:
            record: Fully formed record to persist.

        Raises:
            OSError: If the directory or file cannot be written. The previous
                record is left untouched.
        """
        self._ensure_credentials_dir()
        payload = record.model_dump_json(indent=2)

        # mkstemp creates the file 0600 before any byte is written
        fd, tmp_name = tempfile.mkstemp(
            dir=self.credentials_dir, prefix=f".{self.token_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.token_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        logger.info("Credentials saved to %s", self.token_path)

    def clear(self) -> bool:
        """Delete the stored credential.

        Returns:
            True if a file was removed, False if none existed.
        """
        try:
            self.token_path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Credentials cleared at %s", self.token_path)
        return True

    def get_status(self) -> TokenStatus:
        """Get the status of the stored credential.

        Returns:
            TokenStatus indicating the credential's current state.
        """
        if not self.token_path.exists():
            return TokenStatus.MISSING

        record = self._read()
        if record is None:
            return TokenStatus.INVALID

        if record.is_expired():
            return TokenStatus.EXPIRED

        return TokenStatus.VALID
