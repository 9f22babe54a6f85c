"""Non-blocking stdin prompt used as the manual-paste fallback of the login."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from typing import IO, Optional, Protocol

from sonarcli.output import prompt as print_prompt

PROMPT_MESSAGE = "Waiting for browser... or paste token and press Enter:"

_READ_SIZE = 4096


class PromptCancelledError(Exception):
    """The operator pressed Ctrl-C or closed stdin."""


class PromptUnavailableError(Exception):
    """stdin cannot be watched by the running event loop (e.g. Windows)."""


class TokenPrompt(Protocol):
    async def read_token(self) -> str: ...


class TerminalTokenPrompt:
    """Read one line from a terminal without blocking the event loop.

    The file descriptor is registered with :meth:`loop.add_reader`, so the
    listener keeps serving while the operator types, and cancelling the
    awaiting task unregisters it immediately. While waiting, ``SIGINT``
    cancels the read instead of raising :class:`KeyboardInterrupt` in the
    middle of the event loop.

    Bytes are read straight from the descriptor and split into lines here;
    a buffered ``readline()`` could swallow several pasted lines at once
    and leave the descriptor idle.

    Args:
        stream: Input stream. Defaults to ``sys.stdin``.
    """

    def __init__(self, stream: Optional[IO] = None) -> None:
        self._stream = stream if stream is not None else sys.stdin
        self._pending = b""
        self._eof = False

    async def read_token(self) -> str:
        """Print the prompt and return the first non-empty line, stripped.

        Raises:
            PromptCancelledError: On end-of-input or ``SIGINT``.
            PromptUnavailableError: If the loop cannot watch the stream.
        """
        print_prompt(PROMPT_MESSAGE)
        while True:
            token = (await self._read_line()).strip()
            if token:
                return token

    def _take_line(self) -> Optional[str]:
        if b"\n" in self._pending:
            line, _, self._pending = self._pending.partition(b"\n")
        elif self._eof and self._pending:
            line, self._pending = self._pending, b""
        else:
            return None
        return line.decode("utf-8", errors="replace")

    async def _read_line(self) -> str:
        line = self._take_line()
        if line is not None:
            return line
        if self._eof:
            raise PromptCancelledError("End of input")

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[str] = loop.create_future()

        def on_readable() -> None:
            if waiter.done():
                return
            try:
                chunk = os.read(fd, _READ_SIZE)
            except OSError as exc:
                waiter.set_exception(exc)
                return
            if chunk:
                self._pending += chunk
            else:
                self._eof = True
            line = self._take_line()
            if line is not None:
                waiter.set_result(line)
            elif self._eof:
                waiter.set_exception(PromptCancelledError("End of input"))

        def on_interrupt() -> None:
            if not waiter.done():
                waiter.set_exception(PromptCancelledError("Interrupted"))

        try:
            fd = self._stream.fileno()
            loop.add_reader(fd, on_readable)
        except (NotImplementedError, OSError) as exc:
            raise PromptUnavailableError(str(exc)) from exc

        handles_sigint = _install_sigint(loop, on_interrupt)
        try:
            return await waiter
        finally:
            loop.remove_reader(fd)
            if handles_sigint:
                loop.remove_signal_handler(signal.SIGINT)


def _install_sigint(loop: asyncio.AbstractEventLoop, callback) -> bool:
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError, ValueError):
        # Not the main thread, or a loop without signal support.
        return False
    return True
