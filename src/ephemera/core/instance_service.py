"""Instance lifecycle orchestration.

Turns validated requests into remote mutations, waits for them to settle
with the operation trackers, records boot-script executions and keeps
the store's instance fields current.

Guarantees
----------
* Every public action returns an :class:`ActionOutcome`; remote failures
  never escape.
* Every terminal outcome produces exactly one notification.  Transient
  mutation failures offer a "Retry" that re-runs the same action.
* A failed mutation never enters the polling phase.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from ephemera.core.config_store import ConfigStore, Writer
from ephemera.core.models import (
    AutoConnect,
    CreateRequest,
    Instance,
    InstanceState,
    NotifyLevel,
    PowerAction,
    PowerState,
    RebuildRequest,
    RenewRequest,
    sentinel_to_none,
)
from ephemera.core.protocols import (
    ExecutionLog,
    PresentationAdapter,
    RemoteClient,
    ScriptLibrary,
)
from ephemera.core.tracker import (
    COMMAND_RESULT_POLICY,
    INSTANCE_STATE_POLICY,
    Milestone,
    PollPolicy,
    SleepFn,
    TrackStatus,
    track_command_result,
    track_instance_state,
)
from ephemera.core.wizard import RENEW_FLOW, WizardEngine, WizardStatus, unset_fields
from ephemera.exceptions import (
    EphemeraError,
    TransientError,
    UnauthorizedError,
    UnexpectedError,
    ValidationError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RETRY = "Retry"
DELETE = "Delete"
RENEW = "Renew"
DONT_REMIND = "Don't remind again"
SHOW_OUTPUT = "Show output"

EXPIRY_WARNING = timedelta(minutes=5)


class ActionStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    status: ActionStatus
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is ActionStatus.SUCCEEDED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceService:
    """Runs instance actions against the remote API.

    Parameters
    ----------
    client:
        Provisioning API.
    store:
        Shared state; this service owns the ``instance*`` fields.
    presenter:
        Used for progress, notifications and the renew prompt.
    scripts:
        Resolves a script reference to its content.
    execution_log:
        Records boot-script executions, when provided.
    """

    def __init__(
        self,
        client: RemoteClient,
        store: ConfigStore,
        presenter: PresentationAdapter,
        *,
        scripts: ScriptLibrary | None = None,
        execution_log: ExecutionLog | None = None,
        state_policy: PollPolicy = INSTANCE_STATE_POLICY,
        command_policy: PollPolicy = COMMAND_RESULT_POLICY,
        monitor_interval: float = 60.0,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._store = store
        self._presenter = presenter
        self._scripts = scripts
        self._log = execution_log
        self._state_policy = state_policy
        self._command_policy = command_policy
        self._monitor_interval = monitor_interval
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def refresh_instances(self) -> Instance | None:
        """Re-list instances and track the first one (or none).

        Raises
        ------
        RemoteError
            When the listing fails; the store is left untouched.
        """
        instances = await self._client.list_instances()
        instance = instances[0] if instances else None
        partial: dict[str, object] = {"instance": instance}
        if instance is None:
            partial.update(instance_state=None, suppress_expiration_reminder=False)
        self._store.update(partial, writer=Writer.INSTANCES)
        return instance

    async def refresh_state(self) -> InstanceState | None:
        """Fetch the live state of the tracked instance, if any."""
        instance = self._store.snapshot().instance
        if instance is None:
            return None
        state = await self._client.get_instance_state(instance.id)
        self._store.update({"instance_state": state}, writer=Writer.INSTANCES)
        return state

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, request: CreateRequest) -> ActionOutcome:
        """Create an instance from a completed request and wait for it."""
        label = "Creating the instance"
        missing = unset_fields(request)
        if missing:
            return await self._fail(label, ValidationError(f"Missing values for: {', '.join(missing)}"))
        try:
            script = self._script_content(request.script_ref)
        except EphemeraError as exc:
            return await self._fail(label, exc)

        created, error = await self._attempt(
            lambda: self._client.create_instance(
                int(request.resource_id),
                int(request.variant_id),
                int(request.duration_hours),
                sentinel_to_none(request.key_id),
                script,
            ),
        )
        if error is not None or created is None:
            return await self._fail(label, error, retry=lambda: self.create(request))

        instance = created.instance
        self._store.update(
            {"instance": instance, "instance_state": None, "suppress_expiration_reminder": False},
            writer=Writer.INSTANCES,
        )
        script_name = _script_name(request.script_ref)
        self._log_start(instance.id, "create", script_name, created.command_uid)

        outcome = await self._settle(
            instance.id,
            PowerState.RUNNING,
            title=f"Creating instance {instance.id}...",
            done=f"Instance {instance.id} created",
            command_uid=created.command_uid,
            script_name=script_name,
            connect=True,
        )
        await self._refresh_quietly()
        return outcome

    async def rebuild(self, instance_id: int, request: RebuildRequest) -> ActionOutcome:
        """Reinstall *instance_id* and wait until it runs again."""
        label = "Reinstalling the instance"
        try:
            script = self._script_content(request.script_ref)
        except EphemeraError as exc:
            return await self._fail(label, exc)

        command_uid, error = await self._attempt(
            lambda: self._client.rebuild_instance(
                instance_id,
                int(request.variant_id),
                sentinel_to_none(request.key_id),
                script,
            ),
        )
        if error is not None:
            return await self._fail(label, error, retry=lambda: self.rebuild(instance_id, request))

        script_name = _script_name(request.script_ref)
        self._log_start(instance_id, "rebuild", script_name, command_uid)
        outcome = await self._settle(
            instance_id,
            PowerState.RUNNING,
            title=f"Reinstalling instance {instance_id}...",
            done=f"Instance {instance_id} reinstalled",
            command_uid=command_uid,
            script_name=script_name,
            connect=True,
        )
        await self._refresh_quietly()
        return outcome

    async def power(self, instance_id: int, action: PowerAction) -> ActionOutcome:
        """Send a power action and wait for the matching state."""
        label = f"Power action '{action.value}'"
        _, error = await self._attempt(lambda: self._client.power_instance(instance_id, action))
        if error is not None:
            return await self._fail(label, error, retry=lambda: self.power(instance_id, action))
        return await self._settle(
            instance_id,
            action.target_state,
            title=f"Running '{action.value}' on instance {instance_id}...",
            done=f"Instance {instance_id}: '{action.value}' completed",
        )

    async def renew(self, instance_id: int, hours: int) -> ActionOutcome:
        """Extend the lifetime of *instance_id* by *hours*."""
        _, error = await self._attempt(lambda: self._client.renew_instance(instance_id, hours))
        if error is not None:
            return await self._fail(
                "Extending the instance", error, retry=lambda: self.renew(instance_id, hours),
            )
        await self._refresh_quietly()
        await self._presenter.notify(NotifyLevel.INFO, f"Instance {instance_id} extended by {hours} hours")
        return ActionOutcome(ActionStatus.SUCCEEDED)

    async def prompt_renew(self, instance_id: int) -> ActionOutcome:
        """Ask for a duration with the renew wizard, then renew."""
        engine = WizardEngine(RENEW_FLOW, self._store, self._presenter)
        result = await engine.run()
        if result.status is WizardStatus.CANCELLED:
            return ActionOutcome(ActionStatus.CANCELLED)
        if result.status is WizardStatus.ERROR or not isinstance(result.request, RenewRequest):
            error = result.error or UnexpectedError("Renew wizard returned no request.")
            return await self._fail("Extending the instance", error)
        return await self.renew(instance_id, int(result.request.duration_hours))

    async def delete(self, instance_id: int, *, confirm: bool = True) -> ActionOutcome:
        """Delete *instance_id* (after confirmation) and forget it."""
        if confirm:
            choice = await self._presenter.notify(
                NotifyLevel.WARNING, f"Delete instance {instance_id}?", (DELETE,),
            )
            if choice != DELETE:
                return ActionOutcome(ActionStatus.CANCELLED)

        _, error = await self._attempt(lambda: self._client.delete_instance(instance_id))
        if error is not None:
            return await self._fail(
                "Deleting the instance", error, retry=lambda: self.delete(instance_id, confirm=False),
            )
        await self.clear_instance()
        await self._presenter.notify(NotifyLevel.INFO, f"Instance {instance_id} deleted")
        return ActionOutcome(ActionStatus.SUCCEEDED)

    # ------------------------------------------------------------------
    # Expiration and the recurring monitor
    # ------------------------------------------------------------------

    async def check_expiration(self, now: datetime | None = None) -> None:
        """Warn when the tracked instance is about to expire."""
        snapshot = self._store.snapshot()
        instance = snapshot.instance
        if instance is None or instance.expires_at is None:
            return
        if snapshot.suppress_expiration_reminder:
            return

        remaining = instance.expires_at - (now or self._clock())
        if remaining < timedelta(0):
            await self._refresh_quietly()
            if self._store.snapshot().instance is not None:
                return
            await self._presenter.notify(
                NotifyLevel.ERROR,
                f"Instance {instance.id} has expired and was removed "
                "(or its expiration time is wrong; please verify).",
            )
            await self.clear_instance()
            return

        if remaining < EXPIRY_WARNING:
            minutes = int(remaining.total_seconds() // 60) + 1
            choice = await self._presenter.notify(
                NotifyLevel.WARNING,
                f"Instance {instance.id} expires in less than {minutes} minutes. "
                "Back up your data. Extend it?",
                (RENEW, DONT_REMIND),
            )
            if choice == RENEW:
                await self.prompt_renew(instance.id)
            elif choice == DONT_REMIND:
                self._store.update(
                    {"suppress_expiration_reminder": True}, writer=Writer.INSTANCES,
                )

    def start_monitor(self) -> asyncio.Task[None]:
        """Start (or return) the recurring status refresh task."""
        current = self._store.snapshot().refresh_task
        if current is not None and not current.done():
            return current
        task = asyncio.create_task(self._monitor())
        self._store.update({"refresh_task": task}, writer=Writer.INSTANCES)
        return task

    async def clear_instance(self) -> None:
        """Forget the tracked instance and stop the monitor."""
        task = self._store.snapshot().refresh_task
        self._store.update(
            {
                "instance": None,
                "instance_state": None,
                "suppress_expiration_reminder": False,
                "refresh_task": None,
            },
            writer=Writer.INSTANCES,
        )
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _monitor(self) -> None:
        while True:
            await self._sleep(self._monitor_interval)
            if self._store.snapshot().instance is None:
                return
            try:
                await self.refresh_state()
            except EphemeraError as exc:
                LOGGER.warning("status refresh failed: %s", exc)
            except Exception:  # noqa: BLE001
                LOGGER.exception("unexpected error while refreshing instance state")
            try:
                await self.check_expiration()
            except Exception:  # noqa: BLE001
                LOGGER.exception("expiration check failed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _settle(
        self,
        instance_id: int,
        target: PowerState,
        *,
        title: str,
        done: str,
        command_uid: str | None = None,
        script_name: str | None = None,
        connect: bool = False,
    ) -> ActionOutcome:
        with self._presenter.progress(title) as tick:

            def on_progress(milestone: Milestone) -> None:
                if milestone is Milestone.START:
                    tick(f"Waiting for instance {instance_id} to be {target.value}...")
                elif milestone is Milestone.REACHED:
                    tick(f"Instance {instance_id} is {target.value}")
                elif milestone is Milestone.EXECUTING:
                    tick(f"Running boot script {script_name}...")

            state_result = await track_instance_state(
                self._client,
                instance_id,
                target,
                policy=self._state_policy,
                sleep=self._sleep,
                on_progress=on_progress,
            )
            if state_result.reached:
                self._store.update({"instance_state": state_result.value}, writer=Writer.INSTANCES)

            script_result = None
            if state_result.reached and command_uid and script_name:
                on_progress(Milestone.EXECUTING)
                script_result = await track_command_result(
                    self._client,
                    instance_id,
                    command_uid,
                    policy=self._command_policy,
                    sleep=self._sleep,
                )

        if state_result.status is TrackStatus.FAILED:
            self._log_finish(command_uid, "failed", str(state_result.error))
            return await self._fail(title.rstrip("."), state_result.error)

        if state_result.status is TrackStatus.TIMED_OUT:
            self._log_finish(command_uid, "failed", "instance did not settle")
            message = (
                f"Instance {instance_id} did not report '{target.value}' within "
                f"{self._state_policy.ceiling:.0f} seconds; check its status later."
            )
            await self._presenter.notify(NotifyLevel.WARNING, message)
            return ActionOutcome(ActionStatus.TIMED_OUT, message)

        if script_result is None:
            await self._presenter.notify(NotifyLevel.INFO, self._with_connect_hint(done, connect))
            return ActionOutcome(ActionStatus.SUCCEEDED)

        if script_result.status is TrackStatus.REACHED and script_result.value is not None:
            output = script_result.value.output or ""
            self._log_finish(command_uid, "completed", output)
            choice = await self._presenter.notify(
                NotifyLevel.INFO,
                self._with_connect_hint(f"{done}; boot script {script_name} finished", connect),
                (SHOW_OUTPUT,),
            )
            if choice == SHOW_OUTPUT:
                await self._presenter.notify(NotifyLevel.INFO, output)
            return ActionOutcome(ActionStatus.SUCCEEDED)

        if script_result.status is TrackStatus.TIMED_OUT:
            self._log_finish(command_uid, "failed", "timed out waiting for the result")
            message = f"Timed out waiting for the result of boot script {script_name}"
            await self._presenter.notify(NotifyLevel.WARNING, message)
            return ActionOutcome(ActionStatus.TIMED_OUT, message)

        self._log_finish(command_uid, "failed", str(script_result.error))
        return await self._fail(f"Boot script {script_name}", script_result.error)

    def _with_connect_hint(self, message: str, connect: bool) -> str:
        snapshot = self._store.snapshot()
        if not connect or snapshot.auto_connect is AutoConnect.OFF:
            return message
        host = snapshot.auto_connect_host.strip()
        if not host:
            return f"{message}. No SSH host alias is configured for auto-connect."
        return f"{message}. {connect_hint(host, snapshot.auto_connect)}"

    async def _attempt(
        self,
        call: Callable[[], Awaitable[T]],
    ) -> tuple[T | None, EphemeraError | None]:
        try:
            return await call(), None
        except EphemeraError as exc:
            return None, exc
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("remote call failed unexpectedly")
            return None, UnexpectedError(f"{type(exc).__name__}: {exc}")

    async def _fail(
        self,
        label: str,
        error: EphemeraError | None,
        *,
        retry: Callable[[], Awaitable[ActionOutcome]] | None = None,
    ) -> ActionOutcome:
        error = error or UnexpectedError("unknown error")
        message = f"{label} failed: {error}"
        if isinstance(error, UnauthorizedError):
            message += " Check your client id and secret."
        elif error.hint:
            message += f" {error.hint}"

        if retry is not None and isinstance(error, TransientError):
            choice = await self._presenter.notify(NotifyLevel.ERROR, message, (RETRY,))
            if choice == RETRY:
                return await retry()
        else:
            await self._presenter.notify(NotifyLevel.ERROR, message)
        return ActionOutcome(ActionStatus.FAILED, message)

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh_instances()
        except EphemeraError as exc:
            LOGGER.warning("could not refresh the instance list: %s", exc)

    def _script_content(self, script_ref: object) -> str | None:
        name = _script_name(script_ref)
        if name is None:
            return None
        if self._scripts is None:
            raise ValidationError(
                f"Boot script {name!r} requested but no script directory is configured.",
            )
        return self._scripts.read_script(name)

    def _log_start(
        self,
        instance_id: int,
        operation: str,
        script_name: str | None,
        command_uid: str | None,
    ) -> None:
        if self._log is None or not script_name or not command_uid:
            return
        try:
            self._log.add_entry(instance_id, operation, script_name, command_uid)
        except EphemeraError as exc:
            LOGGER.warning("could not record execution %s: %s", command_uid, exc)

    def _log_finish(self, command_uid: str | None, status: str, output: str) -> None:
        if self._log is None or not command_uid:
            return
        try:
            self._log.update_entry(command_uid, status, output)
        except EphemeraError as exc:
            LOGGER.warning("could not update execution %s: %s", command_uid, exc)


def connect_hint(host: str, mode: AutoConnect) -> str:
    """How to reach the instance through the configured SSH host alias."""
    if mode is AutoConnect.NEW:
        return f"Connect from a new terminal with: ssh {host}"
    return f"Connect with: ssh {host}"


def _script_name(script_ref: object) -> str | None:
    value = sentinel_to_none(script_ref)
    return str(value) if value else None
