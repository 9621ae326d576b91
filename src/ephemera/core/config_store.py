"""Process-wide state shared by the wizard, the tracker and the UI.

The store holds an immutable :class:`ConfigSnapshot`.  Readers take a
snapshot synchronously; writers go through :meth:`ConfigStore.update`,
which merges named fields atomically.  Each field has exactly one owning
subsystem (see :data:`FIELD_OWNERS`); a write from any other subsystem
is rejected.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass

from ephemera.core.models import (
    AutoConnect,
    CreateRequest,
    Instance,
    InstanceState,
    Permissions,
    Resource,
    SshKey,
)
from ephemera.exceptions import ConfigStoreError

LOGGER = logging.getLogger(__name__)


class Writer(enum.Enum):
    """Subsystems allowed to write to the store."""

    SETTINGS = "settings"
    REFRESH = "refresh"
    INSTANCES = "instances"


@dataclass(frozen=True, slots=True)
class ConfigSnapshot:
    """Point-in-time view of the store."""

    has_credentials: bool = False
    auto_connect: AutoConnect = AutoConnect.OFF
    auto_connect_host: str = ""
    default_plan: CreateRequest | None = None

    has_permission: bool = False
    """When ``False`` the catalog fields below must not be trusted."""

    permissions: Permissions = Permissions()
    resources: tuple[Resource, ...] = ()
    keys: tuple[SshKey, ...] = ()

    instance: Instance | None = None
    instance_state: InstanceState | None = None
    suppress_expiration_reminder: bool = False
    refresh_task: asyncio.Task[None] | None = None

    def find_resource(self, resource_id: object) -> Resource | None:
        return next((r for r in self.resources if r.id == resource_id), None)

    def find_key(self, key_id: object) -> SshKey | None:
        return next((k for k in self.keys if k.id == key_id), None)


FIELD_OWNERS: dict[str, Writer] = {
    "has_credentials": Writer.SETTINGS,
    "auto_connect": Writer.SETTINGS,
    "auto_connect_host": Writer.SETTINGS,
    "default_plan": Writer.SETTINGS,
    "has_permission": Writer.REFRESH,
    "permissions": Writer.REFRESH,
    "resources": Writer.REFRESH,
    "keys": Writer.REFRESH,
    "instance": Writer.INSTANCES,
    "instance_state": Writer.INSTANCES,
    "suppress_expiration_reminder": Writer.INSTANCES,
    "refresh_task": Writer.INSTANCES,
}


class ConfigStore:
    """Owner of the current :class:`ConfigSnapshot`."""

    def __init__(self, initial: ConfigSnapshot | None = None) -> None:
        self._snapshot: ConfigSnapshot = initial or ConfigSnapshot()
        self._lock = threading.Lock()

    def snapshot(self) -> ConfigSnapshot:
        """Return the current state (immutable, no copy needed)."""
        return self._snapshot

    def update(self, partial: Mapping[str, object], *, writer: Writer) -> None:
        """Shallow-merge *partial* into the current snapshot in one step.

        Raises
        ------
        ConfigStoreError
            If a key is not a snapshot field, or *writer* does not own it.
        """
        for name in partial:
            owner = FIELD_OWNERS.get(name)
            if owner is None:
                raise ConfigStoreError(f"Unknown config field: {name!r}")
            if owner is not writer:
                raise ConfigStoreError(
                    f"Field {name!r} is owned by {owner.value}, "
                    f"not {writer.value}.",
                )
        with self._lock:
            self._snapshot = dataclasses.replace(self._snapshot, **partial)
        LOGGER.debug("store updated by %s: %s", writer.value, sorted(partial))

    def close(self) -> None:
        """Cancel the recurring refresh task, if one is running."""
        task = self._snapshot.refresh_task
        if task is not None and not task.done():
            task.cancel()
