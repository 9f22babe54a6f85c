"""Synchronous SonarQube Web API client.

:class:`SonarQubeClient` wraps :class:`httpx.Client` with Bearer-token
authentication and maps HTTP failures onto the sonarcli exception
hierarchy so commands exit with the right code:

- 401 / 403 -- :class:`~sonarcli.exceptions.AuthError`
- 404 -- :class:`~sonarcli.exceptions.NotFoundError`
- other 4xx and 5xx -- :class:`~sonarcli.exceptions.ServerError`
- transport failures -- :class:`~sonarcli.exceptions.ConnectionError_`
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from sonarcli import __version__
from sonarcli.exceptions import (
    AuthError,
    ConnectionError_,
    NotFoundError,
    ServerError,
    SonarCliError,
)
from sonarcli.models import Organization, SystemStatus
from sonarcli.output import get_output

DEFAULT_TIMEOUT = 30.0


class SonarQubeClient:
    """Client for a SonarQube Server or SonarQube Cloud instance.

    Must be used as a context manager so that the underlying transport is
    opened and closed properly.

    Args:
        server_url: Base URL of the server. A trailing slash is ignored.
        token: User token sent as ``Authorization: Bearer <token>``.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests pass
            :class:`httpx.MockTransport`).

    Example::

        with SonarQubeClient("https://sonarcloud.io", token) as client:
            if client.validate_token():
                orgs = client.get_organizations()
    """

    def __init__(
        self,
        server_url: str,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def __enter__(self) -> SonarQubeClient:
        self._client = httpx.Client(
            base_url=self.server_url,
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._token}",
                "User-Agent": f"sonarcli/{__version__}",
                "Accept": "application/json",
            },
        )
        return self

    def __exit__(self, *args: object) -> None:
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------ #
    # Endpoints
    # ------------------------------------------------------------------ #

    def validate_token(self) -> bool:
        """Return ``True`` if the server accepts the token.

        Any failure, including an unreachable server, counts as invalid.
        """
        try:
            data = self.get("/api/authentication/validate")
        except SonarCliError as exc:
            get_output().debug(f"Token validation failed: {exc}")
            return False
        return bool(data.get("valid")) if isinstance(data, dict) else False

    def get_organizations(self) -> list[Organization]:
        """Organizations the token's user is a member of (SonarQube Cloud)."""
        data = self.get("/api/organizations/search", params={"member": "true", "ps": 500})
        return [Organization.model_validate(o) for o in data.get("organizations", [])]

    def check_organization(self, organization_key: str) -> bool:
        """Return ``True`` if *organization_key* exists and is visible to the user."""
        try:
            data = self.get(
                "/api/organizations/search", params={"organizations": organization_key}
            )
        except SonarCliError as exc:
            get_output().debug(f"Organization lookup failed: {exc}")
            return False
        return any(o.get("key") == organization_key for o in data.get("organizations", []))

    def get_system_status(self) -> SystemStatus:
        """Server health and version from ``/api/system/status``."""
        return SystemStatus.model_validate(self.get("/api/system/status"))

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #

    def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Send a GET request and return the decoded JSON body.

        Raises:
            AuthError: On 401 / 403.
            NotFoundError: On 404.
            ServerError: On other error statuses or a non-JSON body.
            ConnectionError_: On network / timeout errors.
        """
        assert self._client is not None, "Client not initialised -- use as context manager"

        get_output().debug(f"GET {self.server_url}{path}")
        try:
            response = self._client.get(path, params=params)
        except httpx.TransportError as exc:
            raise ConnectionError_(f"Cannot reach {self.server_url}: {exc}") from exc

        self._map_response_error(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ServerError(f"Invalid JSON from {path}") from exc

    @staticmethod
    def _map_response_error(response: httpx.Response) -> None:
        """Raise a typed exception for error HTTP status codes."""
        status = response.status_code
        if status < 400:
            return

        try:
            detail = response.json()
            errors = detail.get("errors") if isinstance(detail, dict) else None
            if errors:
                msg = "; ".join(str(e.get("msg", e)) for e in errors)
            else:
                msg = ""
        except ValueError:
            msg = response.text[:200] if response.text else ""

        prefix = f"HTTP {status}"
        full_msg = f"{prefix}: {msg}" if msg else prefix

        if status in (401, 403):
            raise AuthError(full_msg)
        if status == 404:
            raise NotFoundError(full_msg)
        raise ServerError(full_msg)
