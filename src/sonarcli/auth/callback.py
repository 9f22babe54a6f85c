"""Token extraction and the loopback request handler.

The handler is split in two:

* :func:`decide` -- a pure function from the request parts to an
  :class:`Allow`, :class:`Deny` or :class:`NoOp` outcome;
* :func:`make_callback_handler` -- a thin adapter turning outcomes into
  :class:`~sonarcli.loopback.Response` objects and firing the delivery
  callback.

Requests without a token get the same confirmation page as requests with
one, so a probing page cannot tell the branches apart.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import AbstractSet, Callable, Mapping, Optional, Union
from urllib.parse import parse_qs, urlsplit

from sonarcli.loopback.server import Request, Response
from sonarcli.loopback.validators import is_trusted_request

SUCCESS_TITLE = "Sonar CLI Authentication"
SUCCESS_MESSAGE = "Authentication Successful"

SUCCESS_HTML = f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>{SUCCESS_TITLE}</title>
  <style>
    body {{
      font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
      display: flex;
      justify-content: center;
      align-items: center;
      height: 100vh;
      margin: 0;
      background: #f5f5f5;
    }}
    .container {{
      background: white;
      padding: 40px;
      border-radius: 8px;
      box-shadow: 0 2px 10px rgba(0, 0, 0, 0.1);
      text-align: center;
    }}
    .success {{ color: #52c41a; font-size: 48px; margin-bottom: 20px; }}
    h1 {{ color: #333; margin-bottom: 10px; }}
    p {{ color: #666; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="success">&#10003;</div>
    <h1>{SUCCESS_MESSAGE}</h1>
    <p>You can close this window and return to the terminal.</p>
  </div>
</body>
</html>
"""


class TokenSource(str, enum.Enum):
    """Where a delivered token came from."""

    POST_BODY = "post-body"
    GET_QUERY = "get-query"
    MANUAL_PASTE = "manual-paste"


@dataclass(frozen=True)
class TokenDelivery:
    """A non-empty token and the channel it arrived through."""

    token: str
    source: TokenSource

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("token must be a non-empty string")


# --- Extraction ---


def extract_token_from_post_body(body: Union[str, bytes]) -> Optional[str]:
    """Return the ``token`` field of a JSON body, or ``None``.

    Invalid JSON, a non-object document, a missing field, a non-string value
    and an empty string all count as "no token".

    Example::

        >>> extract_token_from_post_body('{"token": "squ_abc123"}')
        'squ_abc123'
        >>> extract_token_from_post_body('{"token": 42}') is None
        True
    """
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, dict):
        return None
    token = data.get("token")
    if isinstance(token, str) and token:
        return token
    return None


def extract_token_from_query(host: Optional[str], target: Optional[str]) -> Optional[str]:
    """Return the ``token`` query parameter of ``http://<host><target>``, or ``None``."""
    if not host or not target:
        return None
    try:
        query = urlsplit(f"http://{host}{target}").query
    except ValueError:
        return None
    values = parse_qs(query).get("token")
    if values and values[0]:
        return values[0]
    return None


# --- Decision ---


@dataclass(frozen=True)
class Allow:
    """A token was found; confirm and deliver it."""

    delivery: TokenDelivery


@dataclass(frozen=True)
class Deny:
    """The request failed the Origin/Host check."""


@dataclass(frozen=True)
class NoOp:
    """Nothing to deliver.

    Attributes:
        confirm: Answer with the confirmation page (GET/POST) rather than a
            bare ``OK``.
    """

    confirm: bool = False


Decision = Union[Allow, Deny, NoOp]


def decide(
    method: str,
    target: str,
    headers: Mapping[str, str],
    body: Union[str, bytes] = b"",
    allowed_origins: AbstractSet[str] = frozenset(),
) -> Decision:
    """Decide what a loopback request amounts to.

    Args:
        method: HTTP method.
        target: Request target (path and query).
        headers: Request headers; only ``Origin`` and ``Host`` are read.
        body: Raw request body.
        allowed_origins: Non-loopback origins to trust.
    """
    origin = headers.get("Origin")
    host = headers.get("Host")
    if not is_trusted_request(origin, host, allowed_origins):
        return Deny()

    method = method.upper()
    if method == "POST":
        token = extract_token_from_post_body(body)
        source = TokenSource.POST_BODY
    elif method == "GET":
        token = extract_token_from_query(host, target)
        source = TokenSource.GET_QUERY
    else:
        return NoOp()

    if token is None:
        return NoOp(confirm=True)
    return Allow(TokenDelivery(token, source))


# --- Adapter ---


def _confirmation_page() -> Response:
    return Response(
        200,
        {"Content-Type": "text/html; charset=utf-8"},
        SUCCESS_HTML.encode("utf-8"),
    )


def make_callback_handler(
    on_token: Callable[[TokenDelivery], None],
    allowed_origins: AbstractSet[str] = frozenset(),
) -> Callable[[Request], Response]:
    """Build the listener handler that reports tokens through *on_token*.

    *on_token* runs after the response has been built, once per request
    carrying a token. Deduplication across requests is the caller's job.
    """

    def handler(request: Request) -> Response:
        outcome = decide(
            request.method, request.target, request.headers, request.body, allowed_origins
        )
        if isinstance(outcome, Deny):
            return Response(403, body=b"Forbidden")
        if isinstance(outcome, NoOp):
            if outcome.confirm:
                return _confirmation_page()
            return Response(200, {"Content-Type": "text/plain"}, b"OK")
        response = _confirmation_page()
        on_token(outcome.delivery)
        return response

    return handler
