"""Core / service layer: wizard, tracker, store and instance orchestration.

Rules
-----
* No ``print()`` calls.
* No direct filesystem or network I/O; everything external goes through
  the protocols in :mod:`ephemera.core.protocols`.
* No imports from ``cli`` or ``infra``.
"""

from ephemera.core.config_store import ConfigSnapshot, ConfigStore, Writer
from ephemera.core.instance_service import ActionOutcome, ActionStatus, InstanceService
from ephemera.core.models import CreateRequest, RebuildRequest, RenewRequest
from ephemera.core.protocols import PresentationAdapter, RemoteClient
from ephemera.core.refresh import CatalogRefresher, RefreshReport
from ephemera.core.tracker import OperationTracker, PollPolicy, TrackResult, TrackStatus
from ephemera.core.wizard import (
    CREATE_FLOW,
    REBUILD_FLOW,
    RENEW_FLOW,
    WizardEngine,
    WizardResult,
    WizardStatus,
)

__all__: list[str] = [
    "CREATE_FLOW",
    "REBUILD_FLOW",
    "RENEW_FLOW",
    "ActionOutcome",
    "ActionStatus",
    "CatalogRefresher",
    "ConfigSnapshot",
    "ConfigStore",
    "CreateRequest",
    "InstanceService",
    "OperationTracker",
    "PollPolicy",
    "PresentationAdapter",
    "RebuildRequest",
    "RefreshReport",
    "RemoteClient",
    "RenewRequest",
    "TrackResult",
    "TrackStatus",
    "WizardEngine",
    "WizardResult",
    "WizardStatus",
    "Writer",
]
