"""Exception hierarchy for sonarcli.

All exceptions inherit from :class:`SonarCliError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`sonarcli.exit_codes`.
The top-level error handler in :func:`sonarcli.app.main` catches
``SonarCliError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    SonarCliError (exit 1)
    +-- InvalidUsageError        (exit 2)
    +-- AuthError                (exit 3)
    |   +-- AuthTimeoutError     (exit 3)
    |   +-- AuthCancelledError   (exit 130)
    +-- NotFoundError            (exit 4)
    +-- ServerError              (exit 5)
    +-- ConnectionError_         (exit 6)
    |   +-- PortRangeExhaustedError (exit 6)
    +-- ConfigError              (exit 1)
"""

from sonarcli.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_SERVER_ERROR,
)


class SonarCliError(Exception):
    """Base exception for all sonarcli errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`sonarcli.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(SonarCliError):
    """Raised for invalid CLI arguments or missing required parameters."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(SonarCliError):
    """Raised when authentication fails (rejected token, missing credentials)."""

    exit_code = EXIT_AUTH_FAILURE


class AuthTimeoutError(AuthError):
    """Raised when no token was delivered before the login deadline."""


class AuthCancelledError(AuthError):
    """Raised when the operator interrupts the login prompt."""

    exit_code = EXIT_CANCELLED


class NotFoundError(SonarCliError):
    """Raised when the API returns HTTP 404 (resource not found)."""

    exit_code = EXIT_NOT_FOUND


class ServerError(SonarCliError):
    """Raised when the API returns an HTTP 5xx server error."""

    exit_code = EXIT_SERVER_ERROR


class ConnectionError_(SonarCliError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR


class PortRangeExhaustedError(ConnectionError_):
    """Raised when no port of the reserved loopback range could be bound."""


class ConfigError(SonarCliError):
    """Raised for configuration problems (unreadable state file, invalid JSON)."""

    exit_code = EXIT_GENERIC_FAILURE
