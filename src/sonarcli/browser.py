"""Best-effort system browser launcher."""

from __future__ import annotations

import webbrowser

from sonarcli.output import debug


def open_browser(url: str) -> bool:
    """Open *url* in the default browser.

    Returns:
        ``True`` if a browser was launched. Failures are reported through
        the return value only, never raised.
    """
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as exc:
        debug(f"Browser launch failed: {exc}")
        return False
    if not opened:
        debug("No runnable browser found")
    return bool(opened)
