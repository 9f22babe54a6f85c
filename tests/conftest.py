"""Shared test fixtures for sonarcli.

Provides isolated config/data directories, output state management, a CLI
runner, and small helpers for talking to a real loopback listener from
synchronous tests.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from sonarcli.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time.  When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file").  Resetting forces a fresh manager
    to be created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path
    so that tests never touch real user state or tokens. Clears the
    SONAR_CLI_* and CI environment variables and changes the working
    directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("sonarcli.config._is_xdg_platform", lambda: True)

    for var in ["SONAR_CLI_TOKEN", "SONAR_CLI_SERVER", "CI"]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def plain_output() -> OutputManager:
    """Install a PLAIN-format, colourless, verbose OutputManager."""
    output = OutputManager(format=OutputFormat.PLAIN, no_color=True, verbose=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


# ---------------------------------------------------------------------------
# Raw HTTP helper
# ---------------------------------------------------------------------------


async def raw_request(
    port: int,
    method: str = "GET",
    target: str = "/",
    headers: Optional[dict[str, str]] = None,
    body: bytes = b"",
    host: str = "127.0.0.1",
) -> tuple[int, dict[str, str], bytes]:
    """Send one HTTP/1.1 request over a plain socket and parse the reply.

    Used instead of an HTTP client so tests control every header (including
    a missing or hostile ``Host``).
    """
    reader, writer = await asyncio.open_connection(host, port)
    all_headers = {"Host": f"127.0.0.1:{port}"}
    all_headers.update(headers or {})
    if body:
        all_headers.setdefault("Content-Length", str(len(body)))
    lines = [f"{method} {target} HTTP/1.1"]
    lines.extend(f"{k}: {v}" for k, v in all_headers.items() if v is not None)
    writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body)
    try:
        await writer.drain()
    except ConnectionError:
        pass

    raw = await reader.read()
    writer.close()
    try:
        await writer.wait_closed()
    except ConnectionError:
        pass

    head, _, payload = raw.partition(b"\r\n\r\n")
    status_line, *header_lines = head.decode("latin-1").split("\r\n")
    status = int(status_line.split()[1])
    parsed = {}
    for line in header_lines:
        name, _, value = line.partition(":")
        parsed[name.strip().lower()] = value.strip()
    return status, parsed, payload


@pytest.fixture
def raw_http():
    """The :func:`raw_request` coroutine function."""
    return raw_request
