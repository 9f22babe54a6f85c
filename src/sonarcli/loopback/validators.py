"""Origin and Host header validation for the loopback listener.

A local HTTP server is reachable by any web page the developer has open:
the page can ``fetch()`` it (cross-origin) or, through DNS rebinding, make
the browser believe a remote name resolves to ``127.0.0.1``. Two checks
close both doors:

* the ``Origin`` header, when present, must be a loopback origin or one of
  the explicitly trusted origins (the SonarQube server delivering the token);
* the ``Host`` header must name a loopback host, which a rebinding page
  cannot forge since the browser sends the attacker's hostname.

Every predicate here is total: malformed input yields ``False`` and never
raises.
"""

from __future__ import annotations

from typing import AbstractSet, Optional
from urllib.parse import urlsplit

LOOPBACK_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1"})

_FORBIDDEN_HOST_CHARS = frozenset("/?#@\\ \t\r\n")


def _is_loopback_hostname(url: str) -> bool:
    try:
        parts = urlsplit(url)
        _ = parts.port  # raises ValueError on a malformed port
    except ValueError:
        return False
    if parts.scheme.lower() not in ("http", "https"):
        return False
    return parts.hostname in LOOPBACK_HOSTNAMES


def is_valid_loopback_origin(origin: Optional[str]) -> bool:
    """Return True if *origin* is an http(s) URL on a loopback host.

    Accepts ``localhost``, ``127.0.0.1`` and ``[::1]`` with any port and a
    case-insensitive scheme. ``https://localhost.com`` or
    ``http://192.168.1.1:8080`` are rejected.

    Example::

        >>> is_valid_loopback_origin("HTTP://[::1]:64120")
        True
        >>> is_valid_loopback_origin("http://evil.com")
        False
    """
    if not origin:
        return False
    return _is_loopback_hostname(origin)


def is_valid_loopback_host(host: Optional[str]) -> bool:
    """Return True if a ``Host`` header value (``host[:port]``) is a loopback host."""
    if not host or any(ch in _FORBIDDEN_HOST_CHARS for ch in host):
        return False
    return _is_loopback_hostname(f"http://{host}")


def is_allowed_origin(origin: str, allowed_origins: AbstractSet[str]) -> bool:
    """Return True if *origin* is loopback or explicitly trusted."""
    return is_valid_loopback_origin(origin) or origin in allowed_origins


def is_trusted_request(
    origin: Optional[str],
    host: Optional[str],
    allowed_origins: AbstractSet[str] = frozenset(),
) -> bool:
    """Decide whether a request may reach the handler.

    Args:
        origin: The ``Origin`` header, or ``None`` when absent. Requests
            without an origin (top-level navigations, curl) are allowed.
        host: The ``Host`` header, or ``None`` when absent. A missing host
            is rejected.
        allowed_origins: Extra non-loopback origins to trust.
    """
    if origin is not None and not is_allowed_origin(origin, allowed_origins):
        return False
    return is_valid_loopback_host(host)
