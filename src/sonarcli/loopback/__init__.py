"""Hardened loopback HTTP listener.

- :func:`start_listener` -- bind a :class:`LoopbackListener` on the first
  free port of a :class:`PortRange`.
- :class:`SecurityPolicy` -- extra trusted origins for CORS and the Origin
  check.
- :mod:`sonarcli.loopback.validators` -- Origin/Host predicates.

Typical usage::

    listener = await start_listener(handler, SecurityPolicy({"https://sonarcloud.io"}))
    try:
        ...
    finally:
        await listener.close()
"""

from sonarcli.loopback.server import (
    AUTH_PORT_RANGE,
    LoopbackListener,
    PortRange,
    Request,
    Response,
    SecurityPolicy,
    start_listener,
)
from sonarcli.loopback.validators import (
    is_trusted_request,
    is_valid_loopback_host,
    is_valid_loopback_origin,
)

__all__ = [
    "AUTH_PORT_RANGE",
    "LoopbackListener",
    "PortRange",
    "Request",
    "Response",
    "SecurityPolicy",
    "is_trusted_request",
    "is_valid_loopback_host",
    "is_valid_loopback_origin",
    "start_listener",
]
