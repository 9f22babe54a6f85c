"""Built-in CLI sub-commands for sonarcli.

* :mod:`~sonarcli.commands.auth` -- log in, log out, purge tokens and show
  the active connection.

Each module exports a :class:`typer.Typer` sub-application registered on
the root app in :mod:`sonarcli.app`.
"""
