"""Terminal output for sonarcli.

Data and diagnostics never share a stream:

* **stdout** carries results only (the ``auth status`` table), so scripts
  can pipe it.
* **stderr** carries everything else: progress, warnings, errors, hints,
  the login URL and the paste prompt.

Formatting follows `clig.dev <https://clig.dev/>`_: Rich styling when
stdout is a terminal, plain text otherwise, and no colour at all under
``NO_COLOR``, ``TERM=dumb`` or ``--no-color``.

:func:`~sonarcli.app.main_callback` builds one :class:`OutputManager` from
the global flags and installs it with :func:`set_output`. Everything else
goes through the module-level helpers (:func:`info`, :func:`debug`, ...).

Requests the loopback listener turns away are reported through
:func:`debug`, so stray local traffic stays out of sight unless
``--verbose`` is given.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormat(str, Enum):
    """How tables are rendered.

    ``AUTO`` picks ``RICH`` for a colour-capable terminal and ``PLAIN``
    for anything else; ``--json`` and ``--plain`` force a format.
    """

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Routes results to stdout and diagnostics to stderr.

    Args:
        format: Table format; ``AUTO`` is resolved from the terminal.
        no_color: Print plain text without Rich markup.
        quiet: Hide info, success and hint messages.
        verbose: Show debug messages.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose

        if format == OutputFormat.AUTO:
            rich_terminal = _is_tty() and not self._no_color
            format = OutputFormat.RICH if rich_terminal else OutputFormat.PLAIN
        self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    # ------------------------------------------------------------------ #
    # stdout
    # ------------------------------------------------------------------ #

    def print_data(self, text: str) -> None:
        """Write one line of result data to stdout."""
        print(text, file=sys.stdout, flush=True)

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Write a table to stdout.

        JSON mode emits a list of objects keyed by header, plain mode emits
        tab-separated lines with a header line, Rich mode draws a table.
        """
        if self._format == OutputFormat.JSON:
            records = [dict(zip(headers, row)) for row in rows]
            self.print_data(json.dumps(records, indent=2, ensure_ascii=False))
            return
        if self._format == OutputFormat.PLAIN:
            for line in [headers, *rows]:
                self.print_data("\t".join(line))
            return

        table = Table(title=title, show_header=True, header_style="bold cyan")
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*(escape(cell) for cell in row))
        self._stdout.print(table)

    # ------------------------------------------------------------------ #
    # stderr
    # ------------------------------------------------------------------ #

    def _emit(self, text: str, style: Optional[str] = None, label: str = "") -> None:
        """Write *label* + *text* to stderr, styled unless colour is off.

        *label* is written verbatim in plain mode and wrapped in *style*
        in Rich mode; *text* is always escaped.
        """
        if self._no_color:
            print(f"{label}{text}", file=sys.stderr, flush=True)
        elif label:
            self._stderr.print(f"[{style}]{escape(label)}[/{style}]{escape(text)}")
        elif style:
            self._stderr.print(f"[{style}]{escape(text)}[/{style}]")
        else:
            self._stderr.print(escape(text))

    def info(self, message: str) -> None:
        """Progress message. Hidden by ``--quiet``."""
        if not self._quiet:
            self._emit(message)

    def success(self, message: str) -> None:
        """Green confirmation. Hidden by ``--quiet``."""
        if not self._quiet:
            self._emit(message, "green")

    def warning(self, message: str) -> None:
        """Yellow warning. Always shown."""
        self._emit(message, "yellow", "Warning: ")

    def error(self, message: str) -> None:
        """Red error. Always shown."""
        self._emit(message, "bold red", "Error: ")

    def suggest(self, message: str) -> None:
        """Dimmed next-step hint. Hidden by ``--quiet``."""
        if not self._quiet:
            self._emit(f"→ {message}", "dim")

    def debug(self, message: str) -> None:
        """Diagnostic detail. Shown only with ``--verbose``."""
        if self._verbose:
            self._emit(message, "dim", "[debug] ")

    def prompt(self, message: str) -> None:
        """A line the operator must see before typing. Always shown.

        The login prints its URL and the paste prompt this way, so both
        survive ``--quiet``.
        """
        if self._no_color:
            self._emit(message)
        else:
            self._emit(message, "dim", "›  ")


# ------------------------------------------------------------------ #
# Environment detection
# ------------------------------------------------------------------ #


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when ``NO_COLOR`` is set (to anything) or ``TERM=dumb``."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Process-wide manager
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """The installed manager, or a default ``AUTO`` one created on first use."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Forget the installed manager (tests call this between cases)."""
    global _output
    _output = None


def info(message: str) -> None:
    get_output().info(message)


def error(message: str) -> None:
    get_output().error(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def debug(message: str) -> None:
    get_output().debug(message)


def prompt(message: str) -> None:
    get_output().prompt(message)
