"""Protocols (interfaces) consumed by the core layer.

These define the contracts that infrastructure and CLI adapters must
satisfy.  Core code depends ONLY on these protocols, never on concrete
implementations.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from typing import Any, Protocol

from ephemera.core.models import (
    CommandResult,
    CreatedInstance,
    Instance,
    InstanceState,
    NotifyLevel,
    Permissions,
    PowerAction,
    Resource,
    SshKey,
    StepEvent,
    StepView,
    Variant,
)


class RemoteClient(Protocol):
    """Contract for provisioning-API backends.

    Every method is a coroutine.  Failures are raised as
    :class:`~ephemera.exceptions.RemoteError` subclasses whose ``kind``
    classifies them (unauthorized, permission-denied, pending,
    transient, other); nothing else may escape.
    """

    async def list_instances(self) -> list[Instance]: ...  # pragma: no cover

    async def get_instance_state(self, instance_id: int) -> InstanceState: ...  # pragma: no cover

    async def create_instance(
        self,
        resource_id: int,
        variant_id: int,
        hours: int,
        key_id: int | None = None,
        script_content: str | None = None,
    ) -> CreatedInstance:
        """Create an instance; the result carries the boot-script uid, if any."""
        ...  # pragma: no cover

    async def rebuild_instance(
        self,
        instance_id: int,
        variant_id: int,
        key_id: int | None = None,
        script_content: str | None = None,
    ) -> str | None:
        """Reinstall *instance_id*; returns the boot-script uid, if any."""
        ...  # pragma: no cover

    async def delete_instance(self, instance_id: int) -> None: ...  # pragma: no cover

    async def power_instance(self, instance_id: int, action: PowerAction) -> None: ...  # pragma: no cover

    async def renew_instance(self, instance_id: int, hours: int) -> None: ...  # pragma: no cover

    async def list_resources(self) -> list[Resource]: ...  # pragma: no cover

    async def list_resource_variants(self, resource_id: int) -> list[Variant]: ...  # pragma: no cover

    async def list_keys(self) -> list[SshKey]: ...  # pragma: no cover

    async def get_permissions(self) -> Permissions:
        """Raises ``PermissionDeniedError`` when the account has no access."""
        ...  # pragma: no cover

    async def get_command_result(self, instance_id: int, command_uid: str) -> CommandResult:
        """Raises ``CommandPendingError`` while the command is still running."""
        ...  # pragma: no cover


class PresentationAdapter(Protocol):
    """Contract for whatever renders prompts and captures input."""

    async def render_choice_step(self, view: StepView) -> StepEvent:
        """Show *view* as a list of options; return the user's reaction.

        The returned event must carry ``view.generation``.
        """
        ...  # pragma: no cover

    async def render_input_step(self, view: StepView) -> StepEvent: ...  # pragma: no cover

    def progress(self, title: str) -> AbstractContextManager[Callable[[str], None]]:
        """Show an indeterminate progress display.

        The context manager yields a ``tick(message)`` callable used to
        report coarse milestones.
        """
        ...  # pragma: no cover

    async def notify(
        self,
        level: NotifyLevel,
        message: str,
        actions: Sequence[str] = (),
    ) -> str | None:
        """Show *message*; return the chosen action label, if any."""
        ...  # pragma: no cover


class ScriptLibrary(Protocol):
    """Source of boot scripts offered by the wizard."""

    def list_scripts(self) -> list[str]: ...  # pragma: no cover

    def read_script(self, name: str) -> str: ...  # pragma: no cover


class ExecutionLog(Protocol):
    """Append/update-only record of boot-script executions."""

    def add_entry(
        self,
        instance_id: int,
        operation: str,
        script_name: str,
        command_uid: str,
    ) -> object: ...  # pragma: no cover

    def update_entry(self, command_uid: str, status: str, output: str | None) -> object: ...  # pragma: no cover

    def entries_for_instance(self, instance_id: int) -> list[dict[str, Any]]: ...  # pragma: no cover

    def get(self, command_uid: str) -> dict[str, Any] | None: ...  # pragma: no cover
