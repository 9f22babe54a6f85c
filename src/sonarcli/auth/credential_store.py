"""Persistent token store scoped per server account.

Stores tokens in ``~/.local/share/sonarcli/credentials/<account>.json``
(XDG) or the platform-equivalent directory.  Files are written atomically
through :func:`sonarcli.config._atomic_write` with ``0o600`` permissions so
that tokens are never world-readable, even momentarily.

The account key identifies the server the token belongs to:

* SonarQube Server: the hostname, e.g. ``sonar.example.com``.
* SonarQube Cloud: hostname and organization, e.g. ``sonarcloud.io:my-org``.

The loopback login flow never writes here; ``sonar auth login`` stores the
token only after it has been validated against the API.

See Also:
    :func:`sonarcli.config.resolve_auth` -- reads tokens back for commands.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from sonarcli.config import _atomic_write, get_data_dir


class CredentialEntry(BaseModel):
    """A single stored token.

    Attributes:
        account: Account key (``host`` or ``host:org``).
        server_url: Server the token was issued by.
        org_key: SonarQube Cloud organization, if any.
        token: The secret token value.
        created_at: UTC time the token was stored.
    """

    account: str = Field(description="Account key: hostname or hostname:org")
    server_url: str
    org_key: Optional[str] = None
    token: str = Field(description="The token value")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def account_key(server_url: str, org_key: Optional[str] = None) -> str:
    """Build the account key for a server/organization pair.

    Falls back to the raw *server_url* when it cannot be parsed.
    """
    try:
        hostname = urlsplit(server_url).hostname
    except ValueError:
        hostname = None
    hostname = hostname or server_url
    if org_key:
        return f"{hostname}:{org_key}"
    return hostname


def _credentials_dir() -> Path:
    """Return the credentials directory, creating it if needed."""
    path = get_data_dir() / "credentials"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _file_name(account: str) -> str:
    # ':' is not allowed in Windows file names.
    return re.sub(r"[^A-Za-z0-9._-]", "_", account) + ".json"


class CredentialStore:
    """Read/write tokens, one JSON file per account.

    Args:
        directory: Override for the storage directory (defaults to
            ``<data_dir>/credentials``).

    Example::

        store = CredentialStore()
        store.save_token("https://sonarcloud.io", "squ_123", org_key="my-org")
        assert store.get_token("https://sonarcloud.io", "my-org") == "squ_123"
    """

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._dir = directory if directory is not None else _credentials_dir()

    @property
    def directory(self) -> Path:
        """The directory holding credential files."""
        return self._dir

    def path_for(self, server_url: str, org_key: Optional[str] = None) -> Path:
        """Filesystem path of the entry for a server/organization pair."""
        return self._dir / _file_name(account_key(server_url, org_key))

    def save_token(self, server_url: str, token: str, org_key: Optional[str] = None) -> CredentialEntry:
        """Persist *token* atomically with ``0o600`` permissions.

        Raises:
            OSError: If the file cannot be written (permissions, disk full, etc.).
        """
        entry = CredentialEntry(
            account=account_key(server_url, org_key),
            server_url=server_url,
            org_key=org_key,
            token=token,
        )
        text = json.dumps(entry.model_dump(mode="json"), indent=2) + "\n"
        _atomic_write(self.path_for(server_url, org_key), text, mode=0o600)
        return entry

    def load(self, server_url: str, org_key: Optional[str] = None) -> Optional[CredentialEntry]:
        """Load the stored entry, or ``None`` if missing or unreadable."""
        return self._read(self.path_for(server_url, org_key))

    def get_token(self, server_url: str, org_key: Optional[str] = None) -> Optional[str]:
        """Return the stored token for a server/organization pair, if any."""
        entry = self.load(server_url, org_key)
        return entry.token if entry is not None else None

    def delete_token(self, server_url: str, org_key: Optional[str] = None) -> bool:
        """Delete the stored token.

        Returns:
            ``True`` if a file was removed, ``False`` if none existed.
        """
        path = self.path_for(server_url, org_key)
        if path.is_file():
            path.unlink()
            return True
        return False

    def list_entries(self) -> list[CredentialEntry]:
        """Return every readable entry, sorted by account key."""
        entries = [
            entry
            for entry in (self._read(p) for p in self._dir.glob("*.json"))
            if entry is not None
        ]
        return sorted(entries, key=lambda e: e.account)

    def purge(self) -> int:
        """Delete every credential file.

        Returns:
            The number of files removed.
        """
        removed = 0
        for path in self._dir.glob("*.json"):
            if path.is_file():
                path.unlink()
                removed += 1
        return removed

    @staticmethod
    def _read(path: Path) -> Optional[CredentialEntry]:
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CredentialEntry.model_validate(data)
        except (json.JSONDecodeError, ValueError, OSError):
            return None
