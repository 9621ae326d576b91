"""Multi-step selection wizard.

The wizard is split in two halves:

* a **pure** part: :func:`build_view` turns the current state plus a
  store snapshot into a :class:`~ephemera.core.models.StepView`, and
  :func:`transition` maps ``(state, view, event)`` to the next state and
  an :class:`Effect`.
* :class:`WizardEngine`, the async driver that renders views through a
  :class:`~ephemera.core.protocols.PresentationAdapter`, feeds events to
  :func:`transition` and resolves the run exactly once.

Every render bumps a generation counter; events tagged with an older
generation are discarded, and :meth:`WizardEngine.dismiss` bumps it too,
so a late accept can never resolve a run that was already cancelled.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import enum
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

from ephemera.core.config_store import ConfigSnapshot, ConfigStore
from ephemera.core.models import (
    NONE,
    UNSET,
    CreateRequest,
    EventAction,
    Option,
    Pseudo,
    RebuildRequest,
    RenewRequest,
    Resource,
    StepEvent,
    StepKind,
    StepView,
    WizardRequest,
)
from ephemera.core.protocols import PresentationAdapter, ScriptLibrary
from ephemera.exceptions import (
    DependencyMissingError,
    EphemeraError,
    PermissionDeniedError,
    UnexpectedError,
    ValidationError,
)

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Steps and flows
# ---------------------------------------------------------------------------

class Step(enum.Enum):
    SELECT_RESOURCE = "resource_id"
    SELECT_VARIANT = "variant_id"
    ENTER_DURATION = "duration_hours"
    SELECT_KEY = "key_id"
    SELECT_SCRIPT = "script_ref"

    @property
    def field(self) -> str:
        """Name of the request field this step fills."""
        return self.value


_STEP_TITLES: dict[Step, str] = {
    Step.SELECT_RESOURCE: "Select a plan",
    Step.SELECT_VARIANT: "Select an OS",
    Step.ENTER_DURATION: "Enter the duration",
    Step.SELECT_KEY: "Select an SSH key (optional)",
    Step.SELECT_SCRIPT: "Select a boot script (optional)",
}

BACK_OPTION = Option(label="← Back", value=Pseudo.BACK)


@dataclass(frozen=True, slots=True)
class WizardFlow:
    """An ordered sequence of steps producing one request type."""

    name: str
    steps: tuple[Step, ...]
    request_type: type[WizardRequest]


CREATE_FLOW = WizardFlow(
    "create",
    (
        Step.SELECT_RESOURCE,
        Step.SELECT_VARIANT,
        Step.ENTER_DURATION,
        Step.SELECT_KEY,
        Step.SELECT_SCRIPT,
    ),
    CreateRequest,
)
REBUILD_FLOW = WizardFlow(
    "rebuild",
    (Step.SELECT_VARIANT, Step.SELECT_KEY, Step.SELECT_SCRIPT),
    RebuildRequest,
)
RENEW_FLOW = WizardFlow("renew", (Step.ENTER_DURATION,), RenewRequest)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class WizardStatus(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class WizardResult:
    """The single resolution of a wizard run."""

    status: WizardStatus
    request: WizardRequest | None = None
    error: EphemeraError | None = None

    @classmethod
    def completed(cls, request: WizardRequest) -> WizardResult:
        return cls(WizardStatus.COMPLETED, request=request)

    @classmethod
    def cancelled(cls) -> WizardResult:
        return cls(WizardStatus.CANCELLED)

    @classmethod
    def failed(cls, error: EphemeraError) -> WizardResult:
        return cls(WizardStatus.ERROR, error=error)

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error is not None else None


# ---------------------------------------------------------------------------
# Pure state machine
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class WizardState:
    flow: WizardFlow
    index: int
    request: WizardRequest
    error: str | None = None

    @property
    def step(self) -> Step:
        return self.flow.steps[self.index]


class Effect(enum.Enum):
    RENDER = "render"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(frozen=True, slots=True)
class Transition:
    state: WizardState
    effect: Effect


_INTEGER = re.compile(r"^[+-]?\d+$")
_FRACTION = re.compile(r"^[+-]?(\d+\.\d*|\.\d+)$")


def validate_duration(text: str, max_hours: int | None) -> int:
    """Parse a duration in whole hours.

    Raises
    ------
    ValidationError
        With a distinct message for non-numeric, fractional,
        non-positive and too-large input.
    """
    raw = text.strip()
    if _FRACTION.match(raw):
        raise ValidationError("Fractional hours are not supported; enter a whole number.")
    if not _INTEGER.match(raw):
        raise ValidationError("Enter the duration as a whole number of hours.")
    hours = int(raw)
    if hours <= 0:
        raise ValidationError("Duration must be at least 1 hour.")
    if max_hours is not None and hours > max_hours:
        raise ValidationError(f"Duration cannot exceed {max_hours} hours.")
    return hours


def initial_state(
    flow: WizardFlow,
    seed: WizardRequest | Mapping[str, object] | None = None,
) -> WizardState:
    """Build the first state, pre-filling values from *seed*."""
    if seed is None:
        request = flow.request_type()
    elif isinstance(seed, Mapping):
        request = flow.request_type(**dict(seed))
    elif isinstance(seed, flow.request_type):
        request = seed
    else:
        raise TypeError(
            f"{flow.name} wizard expects a {flow.request_type.__name__} seed, "
            f"got {type(seed).__name__}",
        )
    return WizardState(flow=flow, index=0, request=request)


def unset_fields(request: WizardRequest) -> list[str]:
    """Names of the fields still holding :data:`UNSET`."""
    return [
        f.name
        for f in dataclasses.fields(request)
        if getattr(request, f.name) is UNSET
    ]


def transition(
    state: WizardState,
    view: StepView,
    event: StepEvent,
    *,
    max_hours: int | None = None,
) -> Transition:
    """Apply *event* to *state*; *view* is what the user was shown."""
    if event.action is EventAction.DISMISS:
        return Transition(state, Effect.CANCEL)

    if event.action is EventAction.BACK or event.value is Pseudo.BACK:
        index = state.index - 1 if state.index > 0 else 0
        return Transition(dataclasses.replace(state, index=index, error=None), Effect.RENDER)

    try:
        value = _accept(state.step, view, event, max_hours)
    except ValidationError as exc:
        return Transition(dataclasses.replace(state, error=str(exc)), Effect.RENDER)

    request = dataclasses.replace(state.request, **{state.step.field: value})
    if state.index + 1 == len(state.flow.steps):
        return Transition(dataclasses.replace(state, request=request, error=None), Effect.COMPLETE)
    return Transition(
        WizardState(flow=state.flow, index=state.index + 1, request=request),
        Effect.RENDER,
    )


def _accept(step: Step, view: StepView, event: StepEvent, max_hours: int | None) -> object:
    if step is Step.ENTER_DURATION:
        if event.action is not EventAction.INPUT:
            raise ValidationError("Enter the duration as a whole number of hours.")
        return validate_duration(str(event.value or ""), max_hours)

    if event.action is not EventAction.SELECT:
        raise ValidationError("Choose one of the listed options.")
    choices = [option.value for option in view.options if option.value is not Pseudo.BACK]
    if event.value not in choices:
        raise ValidationError("Choose one of the listed options.")
    return event.value


# ---------------------------------------------------------------------------
# View construction
# ---------------------------------------------------------------------------

def _resource_detail(resource: Resource) -> str:
    memory_gb = resource.memory_mb / 1024
    return f"CPU: {resource.cpu} cores, memory: {memory_gb:g} GB, disk: {resource.disk_gb} GB"


def _restored(value: object) -> object:
    return None if value is UNSET else value


def build_view(
    state: WizardState,
    snapshot: ConfigSnapshot,
    generation: int,
    scripts: ScriptLibrary | None = None,
) -> StepView:
    """Compute the view for the current step from fresh store contents.

    Raises
    ------
    PermissionDeniedError
        When entering the resource step without permission.
    DependencyMissingError
        When the option list of a required step is empty.
    """
    step = state.step
    request = state.request
    total = len(state.flow.steps)
    title = f"Step {state.index + 1}/{total}: {_STEP_TITLES[step]}"
    options: list[Option] = [BACK_OPTION] if state.index > 0 else []
    placeholder = "Choose an option"

    if step is Step.SELECT_RESOURCE:
        if not snapshot.has_permission:
            raise PermissionDeniedError(
                "Your account does not have permission to create instances.",
                hint="Re-check permissions after updating your account.",
            )
        if not snapshot.resources:
            raise DependencyMissingError(
                "plans",
                hint="Refresh the catalogs or check your account permissions.",
            )
        placeholder = "Choose the plan to create"
        options.extend(
            Option(r.name, r.id, _resource_detail(r)) for r in snapshot.resources
        )

    elif step is Step.SELECT_VARIANT:
        resource_id = getattr(request, "resource_id", UNSET)
        resource = snapshot.find_resource(resource_id)
        if resource is None or not resource.variants:
            label = "the selected plan" if resource_id is UNSET else f"plan {resource_id}"
            raise DependencyMissingError(
                f"operating systems for {label}",
                hint="Refresh the catalogs, or pick another plan.",
            )
        placeholder = "Choose the OS to install"
        options.extend(Option(v.name, v.id, v.group) for v in resource.variants)

    elif step is Step.ENTER_DURATION:
        max_hours = snapshot.permissions.max_hours
        limit = f"1 to {max_hours}" if max_hours is not None else "at least 1"
        title = f"{title} (hours, {limit})"
        return StepView(
            kind=StepKind.INPUT,
            title=title,
            placeholder=f"Enter a whole number of hours, {limit}",
            index=state.index,
            total=total,
            generation=generation,
            options=tuple(options),
            value=_restored(getattr(request, "duration_hours", UNSET)),
            error=state.error,
        )

    elif step is Step.SELECT_KEY:
        placeholder = "Choose an SSH key, or none"
        options.append(Option("No SSH key", NONE))
        options.extend(Option(k.name, k.id, f"created {k.created_at}") for k in snapshot.keys)

    elif step is Step.SELECT_SCRIPT:
        placeholder = "Choose a boot script, or none"
        options.append(Option("No boot script", NONE))
        if scripts is not None:
            options.extend(Option(name, name) for name in scripts.list_scripts())

    return StepView(
        kind=StepKind.CHOICE,
        title=title,
        placeholder=placeholder,
        index=state.index,
        total=total,
        generation=generation,
        options=tuple(options),
        value=_restored(getattr(request, step.field, UNSET)),
        error=state.error,
    )


# ---------------------------------------------------------------------------
# Async driver
# ---------------------------------------------------------------------------

class WizardEngine:
    """Drives one flow through a presentation adapter.

    Parameters
    ----------
    flow:
        Which steps to walk and which request type to build.
    store:
        Source of catalogs; read fresh on every render.
    presenter:
        Renders steps and returns generation-tagged events.
    scripts:
        Optional boot-script source for the script step.
    """

    def __init__(
        self,
        flow: WizardFlow,
        store: ConfigStore,
        presenter: PresentationAdapter,
        *,
        scripts: ScriptLibrary | None = None,
    ) -> None:
        self._flow = flow
        self._store = store
        self._presenter = presenter
        self._scripts = scripts
        self._generation = 0
        self._outcome: asyncio.Future[WizardResult] | None = None

    @property
    def generation(self) -> int:
        return self._generation

    async def run(
        self,
        seed: WizardRequest | Mapping[str, object] | None = None,
    ) -> WizardResult:
        """Walk the flow; never raises, always resolves exactly once."""
        if self._outcome is not None and not self._outcome.done():
            return WizardResult.failed(UnexpectedError("Wizard is already running."))
        outcome: asyncio.Future[WizardResult] = asyncio.get_running_loop().create_future()
        self._outcome = outcome
        driver = asyncio.create_task(self._drive(seed, outcome))
        try:
            return await outcome
        finally:
            driver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await driver

    def dismiss(self) -> bool:
        """Cancel the active run; ``False`` if it had already resolved."""
        self._generation += 1
        return self._resolve(WizardResult.cancelled())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, result: WizardResult) -> bool:
        if self._outcome is None or self._outcome.done():
            LOGGER.debug("wizard %s already resolved; dropping %s", self._flow.name, result.status)
            return False
        self._outcome.set_result(result)
        return True

    async def _drive(
        self,
        seed: WizardRequest | Mapping[str, object] | None,
        outcome: asyncio.Future[WizardResult],
    ) -> None:
        try:
            await self._walk(seed, outcome)
        except asyncio.CancelledError:
            raise
        except EphemeraError as exc:
            self._resolve(WizardResult.failed(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("wizard %s failed unexpectedly", self._flow.name)
            self._resolve(
                WizardResult.failed(UnexpectedError(f"{type(exc).__name__}: {exc}")),
            )

    async def _walk(
        self,
        seed: WizardRequest | Mapping[str, object] | None,
        outcome: asyncio.Future[WizardResult],
    ) -> None:
        if not self._store.snapshot().has_permission:
            raise PermissionDeniedError(
                "Your account does not have permission to manage instances.",
                hint="Re-check permissions after updating your account.",
            )
        state = initial_state(self._flow, seed)

        while not outcome.done():
            self._generation += 1
            snapshot = self._store.snapshot()
            view = build_view(state, snapshot, self._generation, self._scripts)
            event = await self._present(view)

            if outcome.done():
                return
            if event.generation != self._generation:
                LOGGER.debug(
                    "discarding stale event (generation %d, current %d)",
                    event.generation,
                    self._generation,
                )
                continue

            step = transition(
                state, view, event, max_hours=self._store.snapshot().permissions.max_hours,
            )
            state = step.state
            if step.effect is Effect.CANCEL:
                self._resolve(WizardResult.cancelled())
            elif step.effect is Effect.COMPLETE:
                missing = unset_fields(state.request)
                if missing:
                    raise ValidationError(
                        f"Missing values for: {', '.join(missing)}",
                    )
                self._resolve(WizardResult.completed(state.request))

    async def _present(self, view: StepView) -> StepEvent:
        if view.kind is StepKind.INPUT:
            return await self._presenter.render_input_step(view)
        return await self._presenter.render_choice_step(view)

