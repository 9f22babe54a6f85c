"""Authentication for sonarcli.

- :class:`TokenAcquisition` -- browser login over a loopback listener,
  racing server delivery, manual paste and a deadline.
- :class:`InteractionMode` -- whether the manual-paste prompt is offered.
- :class:`CredentialStore` -- per-account token storage on disk.

Typical usage::

    from sonarcli.auth import InteractionMode, TokenAcquisition

    token = asyncio.run(
        TokenAcquisition("https://sonarcloud.io", InteractionMode.detect()).run()
    )
"""

from sonarcli.auth.credential_store import CredentialEntry, CredentialStore
from sonarcli.auth.flow import InteractionMode, TokenAcquisition, build_auth_url

__all__ = [
    "CredentialEntry",
    "CredentialStore",
    "InteractionMode",
    "TokenAcquisition",
    "build_auth_url",
]
