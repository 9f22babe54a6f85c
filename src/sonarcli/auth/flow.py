"""Browser-based token acquisition over a loopback listener.

:class:`TokenAcquisition` drives one login attempt::

    Init -> Listening -> Racing -> {Resolved | TimedOut | Cancelled} -> Closed

Once the listener is bound, up to three branches race for the outcome:

1. the SonarQube page delivers the token to the listener (POST body or
   GET query);
2. the operator pastes the token at the terminal prompt, offered only in
   :attr:`InteractionMode.INTERACTIVE`;
3. the deadline, counted from the moment the listener is bound.

The first branch to settle the :class:`~sonarcli.auth.session.AuthSession`
wins. Whatever the outcome, :meth:`AuthSession.dispose` runs before
:meth:`TokenAcquisition.run` returns or raises.

The token is returned as-is; validating and storing it is up to the
caller (see :mod:`sonarcli.commands.auth`).
"""

from __future__ import annotations

import asyncio
import enum
import sys
from typing import Callable, Mapping, Optional, TextIO

from sonarcli.auth.callback import TokenDelivery, TokenSource, make_callback_handler
from sonarcli.auth.prompt import (
    PromptCancelledError,
    PromptUnavailableError,
    TerminalTokenPrompt,
    TokenPrompt,
)
from sonarcli.auth.session import AuthSession
from sonarcli.browser import open_browser
from sonarcli.config import AUTH_TIMEOUT_SECONDS, is_ci_environment, server_origin
from sonarcli.exceptions import AuthCancelledError, AuthTimeoutError
from sonarcli.loopback.server import AUTH_PORT_RANGE, PortRange, SecurityPolicy, start_listener
from sonarcli.output import debug, info, warning
from sonarcli.output import prompt as print_prompt

_CLOUD_MARKERS = ("sonarcloud", "sonarqube.us")


class InteractionMode(enum.Enum):
    """Whether the operator can be asked to type at the terminal."""

    INTERACTIVE = "interactive"
    NON_INTERACTIVE = "non-interactive"

    @classmethod
    def detect(
        cls,
        no_input: bool = False,
        environ: Optional[Mapping[str, str]] = None,
        stdin: Optional[TextIO] = None,
    ) -> InteractionMode:
        """Resolve the mode from ``--no-input``, ``CI=true`` and stdin being a TTY."""
        if no_input or is_ci_environment(environ):
            return cls.NON_INTERACTIVE
        stream = stdin if stdin is not None else sys.stdin
        if stream is None or not stream.isatty():
            return cls.NON_INTERACTIVE
        return cls.INTERACTIVE


def build_auth_url(server_url: str, port: int) -> str:
    """Return the page that mints a token and delivers it to ``localhost:<port>``.

    SonarQube Cloud (any URL containing ``sonarcloud`` or ``sonarqube.us``)
    has a dedicated CLI page. SonarQube Server reuses the IDE page.

    Example::

        >>> build_auth_url("https://sonarcloud.io/", 64120)
        'https://sonarcloud.io/auth?product=cli&port=64120'
    """
    clean = server_url[:-1] if server_url.endswith("/") else server_url
    if any(marker in server_url for marker in _CLOUD_MARKERS):
        return f"{clean}/auth?product=cli&port={port}"
    return f"{clean}/sonarlint/auth?ideName=sonarqube-cli&port={port}"


class TokenAcquisition:
    """Obtain a user token for *server_url* through the browser.

    Args:
        server_url: SonarQube Server or Cloud base URL. Its origin is trusted
            by the listener so the login page may POST the token.
        mode: Interaction mode, resolved by the caller.
        timeout: Seconds to wait once the listener is bound.
        port_range: Loopback ports to try.
        browser: Launcher returning ``False`` on failure.
        prompt: Manual-entry prompt used in interactive mode. Defaults to
            :class:`~sonarcli.auth.prompt.TerminalTokenPrompt`.
        launch_browser: ``False`` to only print the URL (CI).
    """

    def __init__(
        self,
        server_url: str,
        mode: InteractionMode = InteractionMode.NON_INTERACTIVE,
        timeout: float = AUTH_TIMEOUT_SECONDS,
        port_range: PortRange = AUTH_PORT_RANGE,
        browser: Callable[[str], bool] = open_browser,
        prompt: Optional[TokenPrompt] = None,
        launch_browser: bool = True,
    ) -> None:
        self.server_url = server_url
        self.mode = mode
        self.timeout = timeout
        self.port_range = port_range
        self._browser = browser
        self._prompt = prompt if prompt is not None else TerminalTokenPrompt()
        self._launch_browser = launch_browser
        self._allowed_origins = frozenset({server_origin(server_url)})

    async def run(self) -> str:
        """Run the login and return the token.

        Raises:
            AuthTimeoutError: If nothing settled before the deadline.
            AuthCancelledError: If the operator interrupted the prompt.
            PortRangeExhaustedError: If no loopback port could be bound.
        """
        session = AuthSession()
        try:
            return await self._race(session)
        finally:
            await session.dispose()

    async def _race(self, session: AuthSession) -> str:
        def on_token(delivery: TokenDelivery) -> None:
            if session.settle(delivery.token):
                debug(f"Token received via {delivery.source.value}")

        session.listener = await start_listener(
            make_callback_handler(on_token, self._allowed_origins),
            SecurityPolicy(self._allowed_origins),
            self.port_range,
        )
        session.start_deadline(
            self.timeout,
            AuthTimeoutError(f"Timeout waiting for token ({self.timeout:g} seconds)"),
        )

        auth_url = build_auth_url(self.server_url, session.listener.port)
        info("Obtaining access token from SonarQube...")
        print_prompt(f"URL: {auth_url}")

        if self._launch_browser and not self._browser(auth_url):
            warning("Failed to open browser automatically")
            info("Copy the URL above and open it manually")

        if self.mode is InteractionMode.INTERACTIVE:
            session.prompt_task = asyncio.ensure_future(self._manual_entry(session))

        return await session.result

    async def _manual_entry(self, session: AuthSession) -> None:
        try:
            token = await self._prompt.read_token()
        except PromptCancelledError:
            session.settle(error=AuthCancelledError("Authentication cancelled"))
        except PromptUnavailableError as exc:
            debug(f"Manual token entry unavailable: {exc}")
        except Exception as exc:
            session.settle(error=exc)
        else:
            try:
                delivery = TokenDelivery(token, TokenSource.MANUAL_PASTE)
            except ValueError:
                debug("Ignoring empty manual token entry")
                return
            if session.settle(delivery.token):
                debug(f"Token received via {delivery.source.value}")
