"""Auth commands -- log in to SonarQube and manage stored tokens.

Provides the ``sonar auth`` sub-command group. ``login`` obtains a token
through the browser (see :mod:`sonarcli.auth.flow`) unless one is passed
with ``--with-token``, validates it, picks the SonarQube Cloud
organization, stores the token and records the connection as active.

Typical workflow::

    sonar auth login                       # SonarQube Cloud, browser flow
    sonar auth login -s https://sq.corp    # SonarQube Server
    sonar auth status                      # verify the active connection
    sonar auth logout -o my-org            # forget a SonarQube Cloud token
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer

from sonarcli.config import SONARCLOUD_URL, is_cloud_server
from sonarcli.exceptions import (
    AuthError,
    InvalidUsageError,
    NotFoundError,
    SonarCliError,
)
from sonarcli.exit_codes import EXIT_AUTH_FAILURE, EXIT_INVALID_USAGE
from sonarcli.output import debug, error, get_output, info, success, suggest, warning


auth_app = typer.Typer(invoke_without_command=True)


def _flag(ctx: typer.Context, name: str) -> bool:
    """Read a global boolean option stored by the root callback."""
    return bool((ctx.obj or {}).get(name, False))


def _display(server: str, org: Optional[str]) -> str:
    if is_cloud_server(server) and org:
        return f"{server} ({org})"
    return server


@auth_app.callback()
def auth_callback(ctx: typer.Context) -> None:
    """Manage SonarQube authentication. Without a sub-command, logs in."""
    if ctx.invoked_subcommand is None:
        _run(_login, SONARCLOUD_URL, None, None, _flag(ctx, "no_input"))


def _run(func, *args) -> None:
    """Call *func*, turning :class:`SonarCliError` into a clean exit."""
    try:
        func(*args)
    except SonarCliError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


# ------------------------------------------------------------------ #
# login
# ------------------------------------------------------------------ #


@auth_app.command("login")
def auth_login(
    ctx: typer.Context,
    server: str = typer.Option(
        SONARCLOUD_URL, "--server", "-s", help="SonarQube Server or Cloud URL."
    ),
    org: Optional[str] = typer.Option(
        None, "--org", "-o", help="SonarQube Cloud organization key."
    ),
    with_token: Optional[str] = typer.Option(
        None, "--with-token", "-t", help="Use this token instead of the browser flow."
    ),
) -> None:
    """Authenticate and save the token.

    Without ``--with-token`` the browser opens the SonarQube token page,
    which hands the token back to a short-lived local listener. In an
    interactive terminal the token can also be pasted at the prompt.

    Example::

        sonar auth login
        sonar auth login -s https://sonarqube.example.com
        sonar auth login -o my-org -t "$SONAR_TOKEN"
    """
    _run(_login, server, org, with_token, _flag(ctx, "no_input"))


def _login(server: str, org: Optional[str], with_token: Optional[str], no_input: bool) -> None:
    from sonarcli.auth.credential_store import CredentialStore, account_key
    from sonarcli.auth.flow import InteractionMode, TokenAcquisition
    from sonarcli.client import SonarQubeClient
    from sonarcli.config import (
        add_or_update_connection,
        is_ci_environment,
        load_state,
        save_state,
    )

    store = CredentialStore()

    if with_token:
        token = with_token
        interactive = False
    else:
        if store.get_token(server, org):
            success(f"Token already exists for: {_display(server, org)}")
            info("You are already authenticated")
            return

        mode = InteractionMode.detect(no_input=no_input)
        info(f"Authenticating with: {server}")
        acquisition = TokenAcquisition(server, mode, launch_browser=not is_ci_environment())
        token = asyncio.run(acquisition.run())
        success("Token received")
        interactive = mode is InteractionMode.INTERACTIVE

    with SonarQubeClient(server, token) as client:
        if not client.validate_token():
            raise AuthError(f"Token was rejected by {server}")
        if is_cloud_server(server):
            org = _select_organization(client, org, interactive)

    store.save_token(server, token, org_key=org)
    state = load_state()
    add_or_update_connection(state, server, account_key(server, org), org_key=org)
    save_state(state)
    success(f"Authentication successful for: {_display(server, org)}")


def _select_organization(client, org: Optional[str], interactive: bool) -> str:
    """Verify *org*, or choose one of the user's organizations."""
    if org:
        if not client.check_organization(org):
            raise NotFoundError(f'Organization "{org}" not found or not accessible')
        info(f"Using organization: {org}")
        return org

    organizations = client.get_organizations()
    if not organizations:
        raise AuthError("No organizations found. Check your token.")

    if len(organizations) == 1:
        only = organizations[0]
        info(f"Using organization: {only.key} ({only.name})")
        return only.key

    if not interactive:
        info("Available organizations:")
        for o in organizations:
            info(f"  - {o.key} ({o.name})")
        raise InvalidUsageError("Multiple organizations found. Specify one with -o/--org")

    info("Your organizations:")
    for i, o in enumerate(organizations, 1):
        info(f"  {i}) {o.key} ({o.name})")
    choice = typer.prompt("Select organization (number)", type=int)
    if choice < 1 or choice > len(organizations):
        raise InvalidUsageError("Invalid organization selection")

    selected = organizations[choice - 1].key
    info(f"Selected organization: {selected}")
    warning(
        "If the organization is incorrect, later requests may fail with 403. "
        "Log out and log in again if needed."
    )
    return selected


# ------------------------------------------------------------------ #
# logout / purge / status
# ------------------------------------------------------------------ #


@auth_app.command("logout")
def auth_logout(
    server: str = typer.Option(
        SONARCLOUD_URL, "--server", "-s", help="SonarQube Server or Cloud URL."
    ),
    org: Optional[str] = typer.Option(
        None, "--org", "-o", help="SonarQube Cloud organization key."
    ),
) -> None:
    """Remove the stored token for a server (and organization).

    Example::

        sonar auth logout -o my-org
        sonar auth logout -s https://sonarqube.example.com
    """
    from sonarcli.auth.credential_store import CredentialStore
    from sonarcli.config import load_state, remove_connection, save_state

    if is_cloud_server(server) and not org:
        error("Organization key is required for SonarQube Cloud logout")
        suggest("Pass it with: sonar auth logout -o <org>")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    removed = CredentialStore().delete_token(server, org)

    try:
        state = load_state()
        if remove_connection(state, server, org):
            save_state(state)
    except SonarCliError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if not removed:
        info(f"No token found for: {_display(server, org)}")
        return
    success(f"Logged out from: {_display(server, org)}")


@auth_app.command("purge")
def auth_purge(ctx: typer.Context) -> None:
    """Remove every stored token.

    Asks for confirmation unless ``--force`` is given.

    Example::

        sonar --force auth purge
    """
    from sonarcli.auth.credential_store import CredentialStore
    from sonarcli.config import load_state, save_state
    from sonarcli.models import AuthState

    store = CredentialStore()
    entries = store.list_entries()
    if not entries:
        info("No tokens found")
        return

    info(f"Found {len(entries)} token(s):")
    for entry in entries:
        info(f"  - {entry.account}")

    if not _flag(ctx, "force"):
        if _flag(ctx, "no_input"):
            error("Refusing to remove tokens without confirmation.")
            suggest("Pass --force to skip the confirmation.")
            raise typer.Exit(code=EXIT_INVALID_USAGE)
        if not typer.confirm("Remove all tokens?", default=False):
            info("Cancelled")
            return

    count = store.purge()
    state = load_state()
    state.auth = AuthState()
    save_state(state)
    success(f"Removed {count} token(s)")


@auth_app.command("status")
def auth_status() -> None:
    """Show the credentials in use, check the token and the server health.

    ``SONAR_CLI_TOKEN`` and ``SONAR_CLI_SERVER`` take precedence over the
    active connection, as for every other command. Exits with code 3 when
    logged out or when the token is rejected.

    Example::

        sonar auth status
        sonar --json auth status
    """
    from sonarcli.client import SonarQubeClient
    from sonarcli.config import find_connection, get_active_connection, load_state, resolve_auth

    try:
        state = load_state()
    except SonarCliError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    token: Optional[str]
    try:
        resolved = resolve_auth()
        server_url, org_key = resolved.server_url, resolved.org_key
        token, source = resolved.token, resolved.source
    except AuthError as exc:
        active = get_active_connection(state)
        if active is None:
            info("Not logged in")
            suggest("Log in: sonar auth login")
            raise typer.Exit(code=EXIT_AUTH_FAILURE) from None
        debug(str(exc))
        server_url, org_key = active.server_url, active.org_key
        token, source = None, "stored"

    health = "-"
    version = "-"
    valid = False
    with SonarQubeClient(server_url, token or "") as client:
        try:
            system = client.get_system_status()
            health, version = system.status, system.version or "-"
        except SonarCliError as exc:
            debug(f"Server status check failed: {exc}")
            health = "unavailable"
        if token:
            valid = client.validate_token()

    if valid:
        token_state = "valid"
    elif token:
        token_state = "rejected"
    else:
        token_state = "missing"

    connection = find_connection(state, server_url, org_key)
    if connection is not None:
        server_type = connection.type.value
        authenticated_at = connection.authenticated_at.isoformat(timespec="seconds")
    else:
        server_type = "cloud" if is_cloud_server(server_url) else "on-premise"
        authenticated_at = "-"

    rows = [
        ["Server", server_url],
        ["Organization", org_key or "-"],
        ["Type", server_type],
        ["Credentials", source],
        ["Authenticated at", authenticated_at],
        ["Server status", health],
        ["Server version", version],
        ["Token", token_state],
    ]
    get_output().print_table(["Field", "Value"], rows, title="Authentication")

    if not valid:
        suggest("Log in again: sonar auth login")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
