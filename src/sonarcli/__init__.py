"""sonarcli -- command-line client for SonarQube Server and SonarQube Cloud.

The package wraps the SonarQube REST API and manages the credentials needed
to call it. Tokens are obtained through a browser login whose result is
delivered to a short-lived HTTP listener bound to the loopback interface,
then stored locally per server (and organization, for SonarQube Cloud).

Typical workflow::

    sonar auth login                          # SonarQube Cloud
    sonar auth login -s https://sq.example   # SonarQube Server
    sonar auth status

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models for persisted state and API payloads.
    config: XDG-aware directories, atomic writes, state and auth resolution.
    client: Synchronous SonarQube REST API client.
    browser: Best-effort system browser launcher.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
    loopback: Hardened loopback HTTP listener and origin/host validation.
    auth: Token delivery, acquisition flow and credential storage.
"""

__version__ = "0.4.0"
