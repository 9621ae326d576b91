"""Custom exception hierarchy for ephemera.

All exceptions that cross layer boundaries must inherit from
:class:`EphemeraError`.  Raw third-party exceptions (e.g. from
``requests``) must NEVER propagate beyond the infrastructure layer; they
must be caught and re-raised as a typed subclass defined here.

Hierarchy
---------
EphemeraError
├── ValidationError
├── DependencyMissingError
├── OperationTimeoutError
├── UnexpectedError
├── ConfigError
├── ConfigStoreError
├── StorageError
├── EnvironmentError
└── RemoteError
    ├── UnauthorizedError
    ├── PermissionDeniedError
    ├── CommandPendingError
    └── TransientError
"""

from __future__ import annotations

import enum


class EphemeraError(Exception):
    """Base exception for all ephemera errors.

    Every user-visible error condition must map to a subclass of this
    exception so that the CLI error boundary can render a clean message
    without leaking internal stack traces.
    """

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint: str | None = hint
        """Optional actionable guidance shown below the error message."""


# --- Local validation ------------------------------------------------------

class ValidationError(EphemeraError):
    """Raised when user input for a wizard step is rejected.

    Never surfaced as a crash; the wizard renders it inline.
    """


class DependencyMissingError(EphemeraError):
    """Raised when a catalog a step depends on is empty."""

    def __init__(self, dependency: str, *, hint: str | None = None) -> None:
        super().__init__(f"No {dependency} available.", hint=hint)
        self.dependency: str = dependency


class OperationTimeoutError(EphemeraError):
    """Raised when a tracked operation did not settle in time."""


class UnexpectedError(EphemeraError):
    """Wraps an unclassified failure that was logged for diagnosis."""


# --- Configuration ----------------------------------------------------------

class ConfigError(EphemeraError):
    """Raised when the settings file or environment cannot be parsed."""


class ConfigStoreError(EphemeraError):
    """Raised on an unknown field or a write by a non-owning subsystem."""


class StorageError(EphemeraError):
    """Raised when a local file (script, execution log) cannot be read or written."""


# --- Environment / tooling -------------------------------------------------

class EnvironmentError(EphemeraError):
    """Raised when a required runtime dependency is not available."""


# --- Remote API --------------------------------------------------------------

class ErrorKind(enum.Enum):
    """Classification attached to every remote failure."""

    UNAUTHORIZED = "unauthorized"
    PERMISSION_DENIED = "permission-denied"
    PENDING = "pending"
    TRANSIENT = "transient"
    OTHER = "other"


class RemoteError(EphemeraError):
    """Raised when the provisioning API call fails."""

    kind: ErrorKind = ErrorKind.OTHER

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status: int | None = status
        """HTTP status code, when one was received."""


class UnauthorizedError(RemoteError):
    """The API rejected the configured client id / secret."""

    kind = ErrorKind.UNAUTHORIZED


class PermissionDeniedError(RemoteError):
    """The account lacks permission for ephemeral instances."""

    kind = ErrorKind.PERMISSION_DENIED


class CommandPendingError(RemoteError):
    """The requested result is not ready yet."""

    kind = ErrorKind.PENDING


class TransientError(RemoteError):
    """Network failure or server-side error; retrying may succeed."""

    kind = ErrorKind.TRANSIENT
