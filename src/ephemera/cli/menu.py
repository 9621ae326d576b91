"""Interactive menus and the actions behind every subcommand.

Each ``*_action`` coroutine is a complete user-facing command: it runs
the wizard when input is needed, delegates the work to
:class:`~ephemera.core.instance_service.InstanceService` and returns an
:class:`~ephemera.core.instance_service.ActionOutcome`.  :func:`run_menu`
loops over the same actions, showing the create menu while no instance
exists and the control menu once one does.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from ephemera.cli import exit_codes
from ephemera.cli.console import console
from ephemera.cli.runtime import RECHECK, Runtime
from ephemera.core.config_store import ConfigSnapshot, Writer
from ephemera.core.instance_service import ActionOutcome, ActionStatus, connect_hint
from ephemera.core.models import (
    UNSET,
    AutoConnect,
    CreateRequest,
    Instance,
    NotifyLevel,
    Option,
    PowerAction,
    RebuildRequest,
    Sentinel,
)
from ephemera.core.wizard import (
    CREATE_FLOW,
    REBUILD_FLOW,
    WizardEngine,
    WizardFlow,
    WizardResult,
    WizardStatus,
    unset_fields,
    validate_duration,
)
from ephemera.exceptions import (
    DependencyMissingError,
    EnvironmentError,
    EphemeraError,
    PermissionDeniedError,
    ValidationError,
)
from ephemera.settings import save_default_plan

Action = Callable[[], Awaitable[ActionOutcome]]

CANCELLED = ActionOutcome(ActionStatus.CANCELLED)

POWER_LABELS: dict[PowerAction, str] = {
    PowerAction.BOOT: "Boot",
    PowerAction.SHUTDOWN: "Shut down",
    PowerAction.RESTART: "Restart",
    PowerAction.POWEROFF: "Power off (forced)",
}


def outcome_exit_code(outcome: ActionOutcome) -> int:
    if outcome.status in (ActionStatus.FAILED, ActionStatus.TIMED_OUT):
        return exit_codes.GENERAL_ERROR
    return exit_codes.SUCCESS


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

def _import_rich_table() -> type[Any]:
    """Import rich table lazily for status rendering."""
    try:
        from rich.table import Table
    except ModuleNotFoundError as exc:
        raise EnvironmentError(
            "rich is not installed. Install with: pip install rich",
        ) from exc
    return Table


def _name_or_none(value: object, lookup: Callable[[object], Any], empty: str) -> str:
    if isinstance(value, Sentinel):
        return empty if value is not UNSET else "?"
    found = lookup(value)
    return found.name if found is not None else f"#{value}"


def describe_plan(snapshot: ConfigSnapshot, plan: CreateRequest | None) -> str:
    """One-line summary of a (default) plan."""
    if plan is None:
        return "No default plan yet; choose to create one"
    if not snapshot.has_permission:
        return "Default plan unavailable until permissions are confirmed"
    resource = snapshot.find_resource(plan.resource_id)
    variant = None
    if resource is not None:
        variant = next((v for v in resource.variants if v.id == plan.variant_id), None)
    hours = "?" if plan.duration_hours is UNSET else plan.duration_hours
    script = plan.script_ref if isinstance(plan.script_ref, str) else "none"
    return (
        f"Plan: {resource.name if resource else f'#{plan.resource_id}'} | "
        f"OS: {variant.name if variant else f'#{plan.variant_id}'} | "
        f"Duration: {hours} hours | "
        f"SSH key: {_name_or_none(plan.key_id, snapshot.find_key, 'none')} | "
        f"Script: {script}"
    )


def plan_is_usable(snapshot: ConfigSnapshot, plan: CreateRequest | None) -> bool:
    """Complete, and its plan and OS are still offered to this account."""
    if not snapshot.has_permission or plan is None or unset_fields(plan):
        return False
    resource = snapshot.find_resource(plan.resource_id)
    if resource is None:
        return False
    return any(v.id == plan.variant_id for v in resource.variants)


def describe_state(snapshot: ConfigSnapshot) -> str:
    state = snapshot.instance_state
    if state is None:
        return "State: unknown"
    if not state.is_complete:
        return "State: gathering data..."
    return (
        f"State: {state.effective_state} | CPU: {state.cpu:g}% | "
        f"Available memory: {state.memory.available:g} GB | "
        f"Traffic: {state.traffic.total:g} GB"
    )


def render_status(snapshot: ConfigSnapshot) -> None:
    """Print a table describing the tracked instance."""
    instance = snapshot.instance
    if instance is None:
        console.print("[yellow]No instance.[/yellow]")
        return

    table_class = _import_rich_table()
    table = table_class(
        title=f"Instance {instance.id}",
        show_header=False,
        border_style="dim",
    )
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")

    resource = snapshot.find_resource(instance.resource_id)
    table.add_row("Plan", resource.name if resource else f"#{instance.resource_id}")
    table.add_row("Created", _format_time(instance.created_at))
    table.add_row("Expires", _format_time(instance.expires_at))

    state = snapshot.instance_state
    if state is not None and state.is_complete:
        table.add_row("State", state.effective_state)
        table.add_row("CPU", f"{state.cpu:g}%")
        table.add_row(
            "Memory",
            f"{state.memory.available:g} GB available of {state.memory.total:g} GB",
        )
        table.add_row(
            "Traffic",
            f"{state.traffic.inbound:g} GB in, {state.traffic.outbound:g} GB out, "
            f"{state.traffic.total:g} GB total",
        )
    else:
        table.add_row("State", instance.state if state is None else "gathering data...")

    console.print()
    console.print(table)
    console.print()


def _format_time(value: object) -> str:
    if value is None:
        return "unknown"
    return value.strftime("%Y-%m-%d %H:%M:%S %Z")  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

async def _run_wizard(
    runtime: Runtime,
    flow: WizardFlow,
    seed: object = None,
) -> WizardResult:
    engine = WizardEngine(flow, runtime.store, runtime.presenter, scripts=runtime.scripts)
    result = await engine.run(seed)  # type: ignore[arg-type]
    if result.status is WizardStatus.ERROR and result.error is not None:
        await _report_error(runtime, result.error)
    return result


async def _report_error(runtime: Runtime, error: EphemeraError) -> ActionOutcome:
    """Show *error*; missing permission or catalogs offer a re-check."""
    message = str(error)
    if error.hint:
        message = f"{message} {error.hint}"
    if isinstance(error, (PermissionDeniedError, DependencyMissingError)):
        choice = await runtime.presenter.notify(NotifyLevel.ERROR, message, (RECHECK,))
        if choice == RECHECK:
            await runtime.refresh()
    else:
        await runtime.presenter.notify(NotifyLevel.ERROR, message)
    return ActionOutcome(ActionStatus.FAILED, str(error))


def _wizard_outcome(result: WizardResult) -> ActionOutcome:
    if result.status is WizardStatus.ERROR:
        return ActionOutcome(ActionStatus.FAILED, result.reason or "")
    return CANCELLED


async def _require_instance(runtime: Runtime) -> Instance | None:
    instance = runtime.store.snapshot().instance
    if instance is None:
        await runtime.presenter.notify(NotifyLevel.ERROR, "There is no instance to manage.")
    return instance


async def create_action(runtime: Runtime, *, use_default: bool = False) -> ActionOutcome:
    """Create an instance from the wizard, or from the default plan."""
    snapshot = runtime.store.snapshot()
    if use_default:
        if not snapshot.has_permission:
            return await _report_error(
                runtime,
                PermissionDeniedError(
                    "Your account does not have permission to create instances.",
                    hint="Re-check permissions after updating your account.",
                ),
            )
        plan = snapshot.default_plan
        if plan is not None and plan_is_usable(snapshot, plan):
            return await runtime.service.create(plan)
        await runtime.presenter.notify(
            NotifyLevel.WARNING,
            "No usable default plan; set one up first.",
        )
        return await edit_default_plan_action(runtime)

    result = await _run_wizard(runtime, CREATE_FLOW)
    if result.status is not WizardStatus.COMPLETED or not isinstance(result.request, CreateRequest):
        return _wizard_outcome(result)
    return await runtime.service.create(result.request)


async def edit_default_plan_action(runtime: Runtime) -> ActionOutcome:
    """Run the create wizard seeded with the default plan and save the result."""
    seed = runtime.store.snapshot().default_plan
    result = await _run_wizard(runtime, CREATE_FLOW, seed)
    if result.status is not WizardStatus.COMPLETED or not isinstance(result.request, CreateRequest):
        return _wizard_outcome(result)
    try:
        save_default_plan(runtime.settings.config_file, result.request)
    except EphemeraError as exc:
        await runtime.presenter.notify(NotifyLevel.ERROR, f"Could not save the default plan: {exc}")
        return ActionOutcome(ActionStatus.FAILED, str(exc))
    runtime.store.update({"default_plan": result.request}, writer=Writer.SETTINGS)
    await runtime.presenter.notify(NotifyLevel.INFO, "Default plan saved")
    return ActionOutcome(ActionStatus.SUCCEEDED)


async def rebuild_action(runtime: Runtime) -> ActionOutcome:
    """Reinstall the current instance with a new OS, key and script."""
    instance = await _require_instance(runtime)
    if instance is None:
        return ActionOutcome(ActionStatus.FAILED, "no instance")
    result = await _run_wizard(runtime, REBUILD_FLOW, RebuildRequest(resource_id=instance.resource_id))
    if result.status is not WizardStatus.COMPLETED or not isinstance(result.request, RebuildRequest):
        return _wizard_outcome(result)
    return await runtime.service.rebuild(instance.id, result.request)


async def delete_action(runtime: Runtime, *, confirm: bool = True) -> ActionOutcome:
    instance = await _require_instance(runtime)
    if instance is None:
        return ActionOutcome(ActionStatus.FAILED, "no instance")
    return await runtime.service.delete(instance.id, confirm=confirm)


async def power_action(runtime: Runtime, action: PowerAction | None = None) -> ActionOutcome:
    """Send a power action, asking which one when *action* is ``None``."""
    instance = await _require_instance(runtime)
    if instance is None:
        return ActionOutcome(ActionStatus.FAILED, "no instance")
    if action is None:
        chosen = await runtime.presenter.choose(
            "Power action:",
            [Option(label, value) for value, label in POWER_LABELS.items()],
        )
        if chosen is None:
            return CANCELLED
        action = PowerAction(chosen)
    return await runtime.service.power(instance.id, action)


async def renew_action(runtime: Runtime, hours: int | None = None) -> ActionOutcome:
    """Extend the current instance, asking for the duration when not given."""
    instance = await _require_instance(runtime)
    if instance is None:
        return ActionOutcome(ActionStatus.FAILED, "no instance")
    if hours is None:
        return await runtime.service.prompt_renew(instance.id)
    try:
        hours = validate_duration(str(hours), runtime.store.snapshot().permissions.max_hours)
    except ValidationError as exc:
        await runtime.presenter.notify(NotifyLevel.ERROR, str(exc))
        return ActionOutcome(ActionStatus.FAILED, str(exc))
    return await runtime.service.renew(instance.id, hours)


async def status_action(runtime: Runtime) -> ActionOutcome:
    render_status(runtime.store.snapshot())
    return ActionOutcome(ActionStatus.SUCCEEDED)


async def refresh_action(runtime: Runtime) -> ActionOutcome:
    report = await runtime.refresh()
    if report is not None and not report.ok:
        return ActionOutcome(ActionStatus.FAILED, "refresh incomplete")
    return ActionOutcome(ActionStatus.SUCCEEDED)


async def history_action(runtime: Runtime) -> ActionOutcome:
    """List boot-script executions of the current instance and show one."""
    instance = await _require_instance(runtime)
    if instance is None:
        return ActionOutcome(ActionStatus.FAILED, "no instance")
    if runtime.execution_log is None:
        await runtime.presenter.notify(NotifyLevel.WARNING, "The execution log is disabled.")
        return CANCELLED
    try:
        entries = runtime.execution_log.entries_for_instance(instance.id)
    except EphemeraError as exc:
        await runtime.presenter.notify(NotifyLevel.ERROR, str(exc))
        return ActionOutcome(ActionStatus.FAILED, str(exc))
    if not entries:
        await runtime.presenter.notify(NotifyLevel.INFO, f"No boot scripts have run on instance {instance.id}.")
        return CANCELLED

    options = [
        Option(
            f"{entry.get('script_name')} ({entry.get('operation')})",
            entry.get("command_uid"),
            f"{entry.get('status')}, {entry.get('created_at')}",
        )
        for entry in entries
    ]
    chosen = await runtime.presenter.choose("Boot script executions:", options)
    if chosen is None:
        return CANCELLED
    entry = runtime.execution_log.get(str(chosen)) or {}
    console.print(f"[bold]{entry.get('script_name')}[/bold] [dim]{entry.get('status')}[/dim]")
    console.print(entry.get("output") or "(no output)")
    return ActionOutcome(ActionStatus.SUCCEEDED)


async def connect_action(runtime: Runtime) -> ActionOutcome:
    snapshot = runtime.store.snapshot()
    host = snapshot.auto_connect_host.strip()
    if not host:
        await runtime.presenter.notify(
            NotifyLevel.ERROR,
            "No SSH host alias configured. Add one to your ssh config, then set auto_connect_host.",
        )
        return ActionOutcome(ActionStatus.FAILED, "no host alias")
    mode = snapshot.auto_connect if snapshot.auto_connect is not AutoConnect.OFF else AutoConnect.CURRENT
    await runtime.presenter.notify(NotifyLevel.INFO, connect_hint(host, mode))
    return ActionOutcome(ActionStatus.SUCCEEDED)


async def refresh_status_action(runtime: Runtime) -> ActionOutcome:
    outcome = await refresh_action(runtime)
    render_status(runtime.store.snapshot())
    return outcome


# ---------------------------------------------------------------------------
# Menus
# ---------------------------------------------------------------------------

def _auto_connect_label(snapshot: ConfigSnapshot) -> str:
    mode = {
        AutoConnect.OFF: "Do not connect automatically",
        AutoConnect.CURRENT: "Show the SSH command after create",
        AutoConnect.NEW: "Suggest a new terminal after create",
    }[snapshot.auto_connect]
    return f"{mode} | {snapshot.auto_connect_host or 'no host alias configured'}"


def create_menu_options(runtime: Runtime) -> list[Option]:
    snapshot = runtime.store.snapshot()
    return [
        Option(
            "Refresh",
            lambda: refresh_action(runtime),
            "Reload catalogs" if snapshot.has_permission else "Re-check permissions",
        ),
        Option("Create instance", lambda: create_action(runtime), "Choose plan, OS, duration, key and script"),
        Option(
            "Create with default plan",
            lambda: create_action(runtime, use_default=True),
            describe_plan(snapshot, snapshot.default_plan),
        ),
        Option("Edit default plan", lambda: edit_default_plan_action(runtime)),
        Option("Connection settings", lambda: connect_action(runtime), _auto_connect_label(snapshot)),
    ]


def control_menu_options(runtime: Runtime) -> list[Option]:
    snapshot = runtime.store.snapshot()
    options = [
        Option("Refresh status", lambda: refresh_status_action(runtime), describe_state(snapshot)),
        Option("Delete instance", lambda: delete_action(runtime)),
        Option("Extend lifetime", lambda: renew_action(runtime)),
        Option("Reinstall OS", lambda: rebuild_action(runtime)),
        Option("Power", lambda: power_action(runtime), "Boot, shut down, restart or power off"),
    ]
    if snapshot.auto_connect_host.strip():
        options.insert(1, Option("Connect", lambda: connect_action(runtime), snapshot.auto_connect_host))
    if runtime.execution_log is not None and snapshot.instance is not None:
        try:
            has_history = bool(runtime.execution_log.entries_for_instance(snapshot.instance.id))
        except EphemeraError:
            has_history = False
        if has_history:
            options.append(Option("Script history", lambda: history_action(runtime)))
    return options


async def run_menu(runtime: Runtime) -> int:
    """Interactive loop; returns when the user picks "Exit" or dismisses."""
    await runtime.refresh()
    while True:
        snapshot = runtime.store.snapshot()
        if snapshot.instance is not None:
            runtime.service.start_monitor()
            title = f"Instance {snapshot.instance.id}"
            options = control_menu_options(runtime)
        else:
            title = "ephemera"
            options = create_menu_options(runtime)
        options.append(Option("Exit", None))

        chosen = await runtime.presenter.choose(f"{title}: choose an action", options)
        if chosen is None:
            return exit_codes.SUCCESS
        action: Action = chosen  # type: ignore[assignment]
        await action()
