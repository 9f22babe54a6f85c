"""Configuration management with XDG paths, atomic writes, and auth resolution.

This module handles all persistent configuration for sonarcli:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.sonarcli/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Constants** -- SonarQube Cloud addresses, the reserved loopback port
  range used by the login flow, and the login deadline.
* **State** -- a single :class:`~sonarcli.models.CliState` JSON file that
  records the active connection. Managed via :func:`load_state`,
  :func:`save_state` and the connection helpers.
* **Auth resolution** -- :func:`resolve_auth` merges environment variables,
  CLI flags, the active connection, and the credential store into the token
  and server URL a command should use.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import hashlib
import json
import os
import platform
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlsplit

from sonarcli.exceptions import AuthError, ConfigError
from sonarcli.models import AuthConnection, CliState, ServerType

_APP_NAME = "sonarcli"
_STATE_FILENAME = "state.json"

SONARCLOUD_HOSTNAME = "sonarcloud.io"
SONARCLOUD_URL = "https://sonarcloud.io"

# Port range shared with the IDE plugins. The server refuses to deliver a
# token to a callback port outside 64120-64130.
AUTH_PORT_START = 64120
AUTH_PORT_COUNT = 11

AUTH_TIMEOUT_SECONDS = 50.0

_DEFAULT_PORTS = {"http": 80, "https": 443}

ENV_TOKEN = "SONAR_CLI_TOKEN"
ENV_SERVER = "SONAR_CLI_SERVER"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG base directories (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/sonarcli/`` (default ``~/.config/sonarcli/``).
    On macOS/Windows: ``~/.sonarcli/``.
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_CONFIG_HOME", (".config",))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (state, credentials, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/sonarcli/`` (default ``~/.local/share/sonarcli/``).
    On macOS/Windows: ``~/.sonarcli/data/``.
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_DATA_HOME", (".local", "share"))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    When *mode* is given it is applied to the temp file before any content
    is written, so secrets are never readable by others, even momentarily.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close in finally
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Server classification ---


def is_cloud_server(server_url: str) -> bool:
    """Return True when *server_url* points at SonarQube Cloud."""
    try:
        hostname = urlsplit(server_url).hostname
    except ValueError:
        return False
    return hostname == SONARCLOUD_HOSTNAME


def server_origin(server_url: str) -> str:
    """Return the ``scheme://host[:port]`` origin of *server_url*, lower-cased.

    Browsers send the origin in this normalised form (default ports
    omitted), so it can be compared directly against an ``Origin`` request
    header.

    Raises:
        ConfigError: If *server_url* is not an absolute http(s) URL.
    """
    try:
        parts = urlsplit(server_url)
        port = parts.port
    except ValueError as exc:
        raise ConfigError(f"Invalid server URL: {server_url}") from exc
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        raise ConfigError(f"Invalid server URL: {server_url}")
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    origin = f"{scheme}://{host}"
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        origin += f":{port}"
    return origin


def is_ci_environment(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return True when running under a CI system (``CI=true``)."""
    env = os.environ if environ is None else environ
    return env.get("CI", "").lower() == "true"


# --- State ---


def _state_path() -> Path:
    """Path to the state file."""
    return get_data_dir() / _STATE_FILENAME


def load_state() -> CliState:
    """Load the CLI state from the data directory.

    Returns:
        The deserialised :class:`~sonarcli.models.CliState`. If the file
        does not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = _state_path()
    if not path.is_file():
        return CliState()
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text)
        return CliState.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid state file at {path}: {exc}") from exc


def save_state(state: CliState) -> None:
    """Persist the CLI state atomically to disk."""
    from sonarcli import __version__

    state.version = __version__
    data = state.model_dump(mode="json")
    _atomic_write(_state_path(), json.dumps(data, indent=2) + "\n")


def connection_id(server_url: str, org_key: Optional[str] = None) -> str:
    """Derive the stable connection identifier for a server/organization pair."""
    key = f"{server_url}:{org_key}" if org_key else server_url
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def add_or_update_connection(
    state: CliState,
    server_url: str,
    keystore_key: str,
    org_key: Optional[str] = None,
) -> AuthConnection:
    """Record *server_url* as the single active connection.

    Only one connection is kept: logging in to a different server replaces
    the previous one.
    """
    connection = AuthConnection(
        id=connection_id(server_url, org_key),
        type=ServerType.CLOUD if is_cloud_server(server_url) else ServerType.ON_PREMISE,
        server_url=server_url,
        org_key=org_key,
        keystore_key=keystore_key,
    )
    state.auth.connections = [connection]
    state.auth.active_connection_id = connection.id
    state.auth.is_authenticated = True
    return connection


def get_active_connection(state: CliState) -> Optional[AuthConnection]:
    """Return the active connection, or ``None`` when logged out."""
    if not state.auth.active_connection_id:
        return None
    for connection in state.auth.connections:
        if connection.id == state.auth.active_connection_id:
            return connection
    return None


def find_connection(
    state: CliState, server_url: str, org_key: Optional[str] = None
) -> Optional[AuthConnection]:
    """Find the connection recorded for a server/organization pair."""
    wanted = connection_id(server_url, org_key)
    for connection in state.auth.connections:
        if connection.id == wanted:
            return connection
    return None


def remove_connection(
    state: CliState, server_url: str, org_key: Optional[str] = None
) -> bool:
    """Drop the connection for a server/organization pair.

    Returns:
        ``True`` if a connection was removed.
    """
    wanted = connection_id(server_url, org_key)
    remaining = [c for c in state.auth.connections if c.id != wanted]
    if len(remaining) == len(state.auth.connections):
        return False
    state.auth.connections = remaining
    if state.auth.active_connection_id == wanted:
        state.auth.active_connection_id = None
    state.auth.is_authenticated = bool(remaining)
    return True


# --- Auth resolution ---


@dataclass
class ResolvedAuth:
    """Token and server a command should talk to.

    ``source`` records where the token came from: ``environment``,
    ``flag`` or ``stored``.
    """

    token: str
    server_url: str
    org_key: Optional[str] = None
    source: str = "stored"


def resolve_auth(
    token: Optional[str] = None,
    server: Optional[str] = None,
    org: Optional[str] = None,
) -> ResolvedAuth:
    """Resolve the token and server URL with full precedence chain.

    Precedence (high to low):
        1. Both ``SONAR_CLI_TOKEN`` and ``SONAR_CLI_SERVER`` set -- used as-is.
        2. Only one of them set -- warned about and ignored.
        3. Server: ``server`` argument, then the active connection.
        4. Token: ``token`` argument, then the credential store.

    Raises:
        AuthError: If no server or no token can be found.
    """
    from sonarcli.auth.credential_store import CredentialStore
    from sonarcli.output import debug, warning

    env_token = os.environ.get(ENV_TOKEN)
    env_server = os.environ.get(ENV_SERVER)

    if env_token and env_server:
        debug("Using environment variable authentication")
        return ResolvedAuth(
            token=env_token, server_url=env_server, org_key=org, source="environment"
        )

    if env_token or env_server:
        missing = ENV_SERVER if env_token else ENV_TOKEN
        warning(
            f"{missing} is not set. Both {ENV_TOKEN} and {ENV_SERVER} are required "
            "for environment variable authentication. Falling back to saved credentials."
        )

    active: Optional[AuthConnection] = None
    try:
        active = get_active_connection(load_state())
    except ConfigError as exc:
        debug(f"Failed to load state: {exc}")

    server_url = server or (active.server_url if active else None)
    if not server_url:
        raise AuthError(
            f"No server URL found. Set {ENV_TOKEN} + {ENV_SERVER}, or run: sonar auth login"
        )
    org_key = org or (active.org_key if active else None)

    if token:
        return ResolvedAuth(token=token, server_url=server_url, org_key=org_key, source="flag")

    stored = CredentialStore().get_token(server_url, org_key)
    if stored:
        return ResolvedAuth(token=stored, server_url=server_url, org_key=org_key)

    raise AuthError(
        f"No authentication token found. Set {ENV_TOKEN} + {ENV_SERVER}, "
        "or run: sonar auth login"
    )
