"""Domain models for ephemera.

All models are **frozen** dataclasses: immutable value objects with no
behaviour beyond data access.  Requests are "mutated" step by step with
:func:`dataclasses.replace`, so every wizard transition produces a new
value.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union


# ---------------------------------------------------------------------------
# Sentinels
# ---------------------------------------------------------------------------

class Sentinel(enum.Enum):
    """Placeholder values for request fields."""

    UNSET = "unset"
    """Not chosen yet."""

    NONE = "none"
    """Explicitly chosen as "none"."""

    def __repr__(self) -> str:
        return f"Sentinel.{self.name}"


UNSET = Sentinel.UNSET
NONE = Sentinel.NONE

IntField = Union[int, Sentinel]
StrField = Union[str, Sentinel]


def sentinel_to_none(value: object) -> object | None:
    """Map both sentinels to ``None`` for the wire."""
    if isinstance(value, Sentinel):
        return None
    return value


# ---------------------------------------------------------------------------
# Requests (built by the wizard)
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class CreateRequest:
    """Everything needed to create an instance."""

    resource_id: IntField = UNSET
    variant_id: IntField = UNSET
    duration_hours: IntField = UNSET
    key_id: IntField = UNSET
    script_ref: StrField = UNSET


@dataclass(frozen=True, slots=True)
class RebuildRequest:
    """Everything needed to reinstall an existing instance."""

    resource_id: IntField = UNSET
    variant_id: IntField = UNSET
    key_id: IntField = UNSET
    script_ref: StrField = UNSET


@dataclass(frozen=True, slots=True)
class RenewRequest:
    """Extension of an instance's lifetime."""

    duration_hours: IntField = UNSET


WizardRequest = Union[CreateRequest, RebuildRequest, RenewRequest]


# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Variant:
    """An installable OS image."""

    id: int
    name: str
    group: str = ""


@dataclass(frozen=True, slots=True)
class Resource:
    """A purchasable plan (hardware profile)."""

    id: int
    name: str
    cpu: int = 0
    memory_mb: int = 0
    disk_gb: int = 0
    allowed_variant_ids: tuple[int, ...] = ()
    """Embedded allow-list; empty means every variant is allowed."""

    variants: tuple[Variant, ...] = ()
    """Filled in by the catalog refresh."""


@dataclass(frozen=True, slots=True)
class SshKey:
    """A public key registered with the account."""

    id: int
    name: str
    created_at: str = ""


@dataclass(frozen=True, slots=True)
class Permissions:
    """What the account is allowed to provision."""

    max_hours: int | None = None
    """Longest lifetime the account may request; ``None`` when unknown."""

    allowed_resource_ids: tuple[int, ...] = ()
    """Allow-list of resource ids; empty means no restriction."""


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------

class PowerState(str, enum.Enum):
    """Power states the trackers wait for."""

    RUNNING = "running"
    STOPPED = "stopped"


class PowerAction(str, enum.Enum):
    """Power operations accepted by the API."""

    BOOT = "boot"
    SHUTDOWN = "shutdown"
    RESTART = "restart"
    POWEROFF = "poweroff"

    @property
    def target_state(self) -> PowerState:
        """State an instance settles in after this action."""
        if self in (PowerAction.BOOT, PowerAction.RESTART):
            return PowerState.RUNNING
        return PowerState.STOPPED


@dataclass(frozen=True, slots=True)
class MemoryStats:
    """Memory figures in GB."""

    total: float = 0.0
    free: float = 0.0
    available: float = 0.0


@dataclass(frozen=True, slots=True)
class TrafficStats:
    """Traffic counters in GB."""

    inbound: float = 0.0
    outbound: float = 0.0
    total: float = 0.0


@dataclass(frozen=True, slots=True)
class InstanceState:
    """Live state reported for an instance."""

    status: str
    """``"pending"`` while the agent is gathering data, else ``"complete"``."""

    state: str = "unknown"
    cpu: float = 0.0
    memory: MemoryStats = field(default_factory=MemoryStats)
    traffic: TrafficStats = field(default_factory=TrafficStats)

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    @property
    def effective_state(self) -> str:
        """Reported power state, with zero available memory read as stopped."""
        if self.is_complete and self.memory.available == 0:
            return PowerState.STOPPED.value
        return self.state


@dataclass(frozen=True, slots=True)
class Instance:
    """The (single) instance tracked by the store."""

    id: int
    resource_id: int
    created_at: datetime | None = None
    expires_at: datetime | None = None
    state: str = "unknown"


@dataclass(frozen=True, slots=True)
class CreatedInstance:
    """Payload returned by a create call."""

    instance: Instance
    command_uid: str | None = None
    """Identifier of the boot-script execution, if one was queued."""


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Output of a boot-script execution."""

    output: str | None = None

    @property
    def finished(self) -> bool:
        return bool(self.output)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

class AutoConnect(str, enum.Enum):
    """What to do once an instance is ready."""

    OFF = "false"
    CURRENT = "true"
    NEW = "new"


# ---------------------------------------------------------------------------
# Presentation contracts
# ---------------------------------------------------------------------------

class StepKind(enum.Enum):
    CHOICE = "choice"
    INPUT = "input"


class Pseudo(enum.Enum):
    """Option values that are not catalog entries."""

    BACK = "back"


@dataclass(frozen=True, slots=True)
class Option:
    """One selectable entry in a choice step."""

    label: str
    value: object
    detail: str = ""


@dataclass(frozen=True, slots=True)
class StepView:
    """Everything an adapter needs to render one wizard step."""

    kind: StepKind
    title: str
    placeholder: str
    index: int
    """Zero-based position in the flow."""

    total: int
    generation: int
    options: tuple[Option, ...] = ()
    value: object = None
    """Previously entered value, restored on re-render."""

    error: str | None = None
    """Inline validation message from the last rejected input."""

    @property
    def can_go_back(self) -> bool:
        return self.index > 0


class EventAction(enum.Enum):
    SELECT = "select"
    INPUT = "input"
    BACK = "back"
    DISMISS = "dismiss"


@dataclass(frozen=True, slots=True)
class StepEvent:
    """User reaction to a rendered step, tagged with its render generation."""

    generation: int
    action: EventAction
    value: object = None


class NotifyLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
