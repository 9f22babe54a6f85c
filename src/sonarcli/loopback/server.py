"""Loopback HTTP listener used to receive a token from the browser.

The listener is a minimal HTTP/1.1 server on top of
:func:`asyncio.start_server`. It answers exactly one request per
connection (``Connection: close``) and keeps the request handler a plain
synchronous function of :class:`Request` to :class:`Response`, so the
token-handling logic in :mod:`sonarcli.auth.callback` stays testable
without sockets.

Around the handler the listener enforces:

* **Origin/Host checks** -- see :mod:`sonarcli.loopback.validators`.
  Rejected requests get a bare 403 and never reach the handler.
* **CORS preflight** -- ``OPTIONS`` from an allowed origin is answered
  directly, including the private-network-access flag Chrome requires
  before a public page may call a loopback address.
* **Body cap** -- request bodies above ``max_body_bytes`` are refused
  with 413 without buffering more than the cap.
* **Security headers** -- see :func:`security_headers`.

Ports are taken from a reserved range (64120-64130) that the SonarQube
server knows about. Each port is bound on both ``127.0.0.1`` and ``::1``:
browsers that resolve ``localhost`` to ``::1`` first would otherwise be
refused and the login would hang until its deadline.
"""

from __future__ import annotations

import asyncio
import http.client
import io
import socket
from dataclasses import dataclass, field
from functools import lru_cache
from http import HTTPStatus
from typing import AbstractSet, Callable, Iterator, Optional

from sonarcli.config import AUTH_PORT_COUNT, AUTH_PORT_START
from sonarcli.exceptions import PortRangeExhaustedError
from sonarcli.loopback.validators import is_trusted_request
from sonarcli.output import debug

MAX_BODY_BYTES = 4096
REQUEST_READ_TIMEOUT = 10.0
CLOSE_GRACE_PERIOD = 2.0
DRAIN_TIMEOUT = 1.0

_READ_CHUNK = 1024
_MAX_HEAD_BYTES = 16 * 1024


@dataclass(frozen=True)
class PortRange:
    """A contiguous range of TCP ports, tried in ascending order."""

    start: int
    count: int

    @property
    def end(self) -> int:
        """Last port of the range (inclusive)."""
        return self.start + self.count - 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.start + self.count))

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end


AUTH_PORT_RANGE = PortRange(AUTH_PORT_START, AUTH_PORT_COUNT)


@dataclass(frozen=True)
class SecurityPolicy:
    """Non-loopback origins trusted on top of the implicit loopback ones."""

    allowed_origins: AbstractSet[str] = frozenset()


@dataclass
class Request:
    """A parsed request as seen by the handler."""

    method: str
    target: str
    headers: http.client.HTTPMessage
    body: bytes = b""

    @property
    def origin(self) -> Optional[str]:
        return self.headers.get("Origin")

    @property
    def host(self) -> Optional[str]:
        return self.headers.get("Host")


@dataclass
class Response:
    """Status, headers and body produced by a handler."""

    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


Handler = Callable[[Request], Response]


class BodyTooLargeError(Exception):
    """Raised while reading a request body that exceeds the cap."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Request body exceeds {limit} bytes")
        self.limit = limit


def security_headers() -> dict[str, str]:
    """Headers added to every response before the handler's own headers."""
    return {
        "Content-Security-Policy": "default-src 'none'; connect-src 'self'",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Cache-Control": "no-store",
    }


def preflight_headers(origin: str) -> dict[str, str]:
    """CORS headers granting *origin* access to the listener."""
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Allow-Private-Network": "true",
        "Vary": "Origin",
    }


# --- Request parsing ---


@dataclass
class _RequestHead:
    method: str
    target: str
    headers: http.client.HTTPMessage
    content_length: int


async def read_request_head(reader: asyncio.StreamReader) -> _RequestHead:
    """Read and parse the request line and headers.

    Raises:
        ValueError: On a malformed request line or ``Content-Length``.
        http.client.HTTPException: On malformed header lines.
        asyncio.LimitOverrunError: If the head exceeds the stream limit.
        asyncio.IncompleteReadError: If the peer closes mid-head.
    """
    raw = await reader.readuntil(b"\r\n\r\n")
    request_line, _, header_block = raw.partition(b"\r\n")
    parts = request_line.decode("latin-1").split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/1."):
        raise ValueError(f"Malformed request line: {request_line[:80]!r}")
    method, target, _version = parts

    headers = http.client.parse_headers(io.BytesIO(header_block))
    if headers.get("Transfer-Encoding"):
        raise ValueError("Chunked request bodies are not supported")
    raw_length = headers.get("Content-Length", "0")
    # int() would also take "+5", "1_0" and padded values.
    if not (raw_length.isascii() and raw_length.isdigit()):
        raise ValueError(f"Invalid Content-Length: {raw_length[:40]!r}")
    return _RequestHead(method.upper(), target, headers, int(raw_length))


async def read_capped_body(
    reader: asyncio.StreamReader, length: int, limit: int = MAX_BODY_BYTES
) -> bytes:
    """Read *length* body bytes, refusing to hold more than *limit* of them.

    The body is read in small chunks and the running total is checked after
    each one, so a lying or missing ``Content-Length`` cannot make the
    listener buffer more than ``limit`` bytes.

    Raises:
        BodyTooLargeError: As soon as the running total exceeds *limit*.
        asyncio.IncompleteReadError: If the peer closes before *length* bytes.
    """
    chunks: list[bytes] = []
    total = 0
    while total < length:
        chunk = await reader.read(min(_READ_CHUNK, length - total))
        if not chunk:
            raise asyncio.IncompleteReadError(b"".join(chunks), length)
        total += len(chunk)
        if total > limit:
            raise BodyTooLargeError(limit)
        chunks.append(chunk)
    return b"".join(chunks)


async def _discard(reader: asyncio.StreamReader) -> None:
    while await reader.read(_READ_CHUNK):
        pass


def _encode_response(response: Response) -> bytes:
    try:
        reason = HTTPStatus(response.status).phrase
    except ValueError:
        reason = ""
    lines = [f"HTTP/1.1 {response.status} {reason}".rstrip()]
    lines.extend(f"{name}: {value}" for name, value in response.headers.items())
    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("latin-1") + response.body


# --- Listener ---


class LoopbackListener:
    """One bound loopback server. Create it with :func:`start_listener`.

    Only the code that started the listener should close it; handlers
    never do.
    """

    def __init__(
        self,
        handler: Handler,
        policy: SecurityPolicy,
        max_body_bytes: int = MAX_BODY_BYTES,
    ) -> None:
        self._handler = handler
        self._policy = policy
        self._max_body_bytes = max_body_bytes
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: set[asyncio.StreamWriter] = set()
        self._closed = False
        self.port = 0

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        return self._closed

    async def _bind(self, hosts: tuple[str, ...], port: int) -> None:
        self._server = await asyncio.start_server(
            self._serve,
            host=list(hosts),
            port=port,
            limit=_MAX_HEAD_BYTES,
        )
        self.port = port

    async def close(self) -> None:
        """Stop accepting connections and release the port.

        In-flight exchanges get :data:`CLOSE_GRACE_PERIOD` seconds to finish
        before their transports are aborted. Calling this more than once is
        a no-op.
        """
        if self._closed:
            return
        self._closed = True
        if self._server is None:
            return
        self._server.close()
        try:
            await asyncio.wait_for(self._server.wait_closed(), CLOSE_GRACE_PERIOD)
        except asyncio.TimeoutError:
            debug(f"Aborting {len(self._writers)} lingering connection(s) on port {self.port}")
            for writer in list(self._writers):
                writer.transport.abort()
            await self._server.wait_closed()
        debug(f"Loopback listener on port {self.port} closed")

    # ------------------------------------------------------------------ #
    # Connection handling
    # ------------------------------------------------------------------ #

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            await self._exchange(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            debug(f"Loopback connection dropped: {exc!r}")
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _exchange(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await asyncio.wait_for(read_request_head(reader), REQUEST_READ_TIMEOUT)
        except asyncio.TimeoutError:
            debug("Loopback request timed out before its headers arrived")
            return
        except (ValueError, http.client.HTTPException, asyncio.LimitOverrunError) as exc:
            debug(f"Malformed loopback request: {exc}")
            await self._send(writer, Response(400, body=b"Bad Request"))
            return

        origin = head.headers.get("Origin")
        host = head.headers.get("Host")
        if not is_trusted_request(origin, host, self._policy.allowed_origins):
            debug(f"Rejected {head.method} request (origin={origin!r}, host={host!r})")
            await self._send(writer, Response(403, body=b"Forbidden"))
            await self._drain(reader, writer, head.content_length > 0)
            return

        if head.method == "OPTIONS":
            headers = preflight_headers(origin) if origin else {}
            await self._send(writer, Response(200, headers=headers))
            await self._drain(reader, writer, head.content_length > 0)
            return

        try:
            body = await asyncio.wait_for(
                read_capped_body(reader, head.content_length, self._max_body_bytes),
                REQUEST_READ_TIMEOUT,
            )
        except BodyTooLargeError as exc:
            debug(f"Refused {head.method} request: {exc}")
            await self._send(writer, Response(413, body=b"Payload Too Large"))
            await self._drain(reader, writer, True)
            return
        except asyncio.TimeoutError:
            debug("Loopback request timed out while reading its body")
            return

        request = Request(head.method, head.target, head.headers, body)
        try:
            response = self._handler(request)
        except Exception as exc:
            debug(f"Loopback handler failed: {exc!r}")
            response = Response(500, body=b"Internal Server Error")

        if origin:
            response.headers.setdefault("Access-Control-Allow-Origin", origin)
            response.headers.setdefault("Vary", "Origin")
        await self._send(writer, response)

    async def _send(self, writer: asyncio.StreamWriter, response: Response) -> None:
        headers = security_headers()
        headers.update(response.headers)
        headers["Content-Length"] = str(len(response.body))
        headers["Connection"] = "close"
        writer.write(_encode_response(Response(response.status, headers, response.body)))
        await writer.drain()

    async def _drain(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, pending: bool
    ) -> None:
        # Closing with unread data makes the kernel send RST, which can wipe
        # the response out of the client's receive buffer.
        if not pending:
            return
        if writer.can_write_eof():
            writer.write_eof()
        try:
            await asyncio.wait_for(_discard(reader), DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            debug("Gave up discarding an unread request body")


# --- Binding ---


@lru_cache(maxsize=None)
def _has_ipv6_loopback() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as sock:
            sock.bind(("::1", 0))
    except OSError:
        return False
    return True


def loopback_hosts() -> tuple[str, ...]:
    """Addresses every listener binds to.

    ``::1`` is dropped only when the machine has no IPv6 loopback at all
    (IPv6 disabled in the kernel, some containers). A port that is busy on
    ``::1`` alone is still skipped.
    """
    if _has_ipv6_loopback():
        return ("127.0.0.1", "::1")
    return ("127.0.0.1",)


async def start_listener(
    handler: Handler,
    policy: Optional[SecurityPolicy] = None,
    port_range: PortRange = AUTH_PORT_RANGE,
    max_body_bytes: int = MAX_BODY_BYTES,
) -> LoopbackListener:
    """Bind a :class:`LoopbackListener` on the first free port of *port_range*.

    Args:
        handler: Called once per trusted, non-preflight request.
        policy: Extra trusted origins. Defaults to loopback origins only.
        port_range: Ports to try, in order.
        max_body_bytes: Request body cap; larger bodies get 413.

    Returns:
        The bound listener. The caller owns it and must ``await close()``.

    Raises:
        PortRangeExhaustedError: If no port of the range could be bound.
    """
    hosts = loopback_hosts()
    if len(hosts) == 1:
        debug("No IPv6 loopback interface, listening on 127.0.0.1 only")

    for port in port_range:
        listener = LoopbackListener(handler, policy or SecurityPolicy(), max_body_bytes)
        try:
            await listener._bind(hosts, port)
        except OSError as exc:
            debug(f"Port {port} unavailable: {exc.strerror or exc}")
            continue
        debug(f"Loopback listener bound on port {port} ({', '.join(hosts)})")
        return listener

    raise PortRangeExhaustedError(
        f"No free port between {port_range.start} and {port_range.end}. "
        "Close other SonarQube tools (IDE plugins use the same ports) and retry."
    )
