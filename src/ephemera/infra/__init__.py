"""Infrastructure layer: external system integration.

This layer wraps all interaction with the provisioning API (through
``requests``) and the local filesystem.  Every raw third-party exception
must be caught here and re-raised as an
:class:`~ephemera.exceptions.EphemeraError` subclass.

Rules
-----
* No imports from ``cli``.
* No user-facing output (no ``print()``, no Rich rendering).
* Must expose clean, typed interfaces consumed by the core layer.
"""

from ephemera.infra.execution_log import JsonExecutionLog
from ephemera.infra.http_client import HttpRemoteClient, classify_status
from ephemera.infra.scripts import DirectoryScriptLibrary

__all__: list[str] = [
    "DirectoryScriptLibrary",
    "HttpRemoteClient",
    "JsonExecutionLog",
    "classify_status",
]
