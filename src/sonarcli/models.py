"""Pydantic models shared across sonarcli modules.

**State models** -- serialised as JSON in the user's data directory by
:mod:`sonarcli.config`:
    :class:`ServerType`, :class:`AuthConnection`, :class:`AuthState` and
    :class:`CliState`.

**API models** -- parsed from SonarQube REST responses by
:class:`~sonarcli.client.SonarQubeClient`:
    :class:`Organization` and :class:`SystemStatus`.

Tokens are never part of these models; they live in the credential store
(:mod:`sonarcli.auth.credential_store`) and connections only reference them
through ``keystore_key``.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# --- State ---


class ServerType(str, enum.Enum):
    """Kind of SonarQube deployment a connection points to."""

    CLOUD = "cloud"
    ON_PREMISE = "on-premise"


class AuthConnection(BaseModel):
    """A server (and, for SonarQube Cloud, organization) the CLI is logged in to.

    Example::

        AuthConnection(
            id="3f2a9c0d1e4b5a67",
            type=ServerType.CLOUD,
            server_url="https://sonarcloud.io",
            org_key="my-org",
            keystore_key="sonarcloud.io:my-org",
        )
    """

    id: str = Field(description="16-hex-char hash of server URL and organization")
    type: ServerType
    server_url: str
    org_key: Optional[str] = Field(
        default=None, description="Organization key (SonarQube Cloud only)"
    )
    authenticated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    keystore_key: str = Field(description="Credential store account holding the token")


class AuthState(BaseModel):
    """Authentication section of :class:`CliState`."""

    is_authenticated: bool = False
    connections: list[AuthConnection] = Field(default_factory=list)
    active_connection_id: Optional[str] = None


class CliState(BaseModel):
    """Persistent CLI state stored at ``<data_dir>/state.json``.

    Unknown keys written by newer versions are preserved so that a
    downgrade does not destroy them.
    """

    model_config = ConfigDict(extra="allow")

    version: Optional[str] = None
    auth: AuthState = Field(default_factory=AuthState)


# --- API payloads ---


class Organization(BaseModel):
    """A SonarQube Cloud organization the user is a member of."""

    model_config = ConfigDict(extra="ignore")

    key: str
    name: str = ""


class SystemStatus(BaseModel):
    """Response of ``/api/system/status``."""

    model_config = ConfigDict(extra="ignore")

    status: str
    version: str = ""
