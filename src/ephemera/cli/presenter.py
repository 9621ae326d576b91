"""Terminal implementation of :class:`~ephemera.core.protocols.PresentationAdapter`.

Prompts go through questionary (``ask_async``) and everything else is
rendered with Rich via :data:`~ephemera.cli.console.console`.  A
``None`` answer from questionary (Esc / Ctrl+C inside the prompt) is a
dismissal.

Prompts are serialised with a lock: the status monitor may ask for an
action while the menu is waiting, and only one prompt can own the
terminal at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

from ephemera.cli.console import console
from ephemera.cli.progress import RichSpinner
from ephemera.core.models import EventAction, NotifyLevel, Option, Pseudo, StepEvent, StepView
from ephemera.exceptions import EnvironmentError

BACK_INPUT = "<"
DISMISS_ACTION = "Dismiss"

_LEVEL_STYLES: dict[NotifyLevel, str] = {
    NotifyLevel.INFO: "[bold green]{}[/bold green]",
    NotifyLevel.WARNING: "[bold yellow]Warning:[/bold yellow] {}",
    NotifyLevel.ERROR: "[bold red]Error:[/bold red] {}",
}


def _import_questionary() -> Any:
    """Import questionary lazily for interactive prompts."""
    try:
        import questionary
    except ModuleNotFoundError as exc:
        raise EnvironmentError(
            "questionary is not installed. Install with: pip install questionary",
        ) from exc
    return questionary


def build_choice_label(option: Option) -> str:
    """Single-line label: ``"name  (detail)"``."""
    if option.detail:
        return f"{option.label}  ({option.detail})"
    return option.label


class QuestionaryPresenter:
    """Renders wizard steps, progress and notifications in the terminal."""

    def __init__(self) -> None:
        self._prompt_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Wizard steps
    # ------------------------------------------------------------------

    async def render_choice_step(self, view: StepView) -> StepEvent:
        questionary = _import_questionary()
        self._print_error(view)

        choices = [
            questionary.Choice(title=build_choice_label(option), value=index)
            for index, option in enumerate(view.options)
        ]
        default = next(
            (
                choices[index]
                for index, option in enumerate(view.options)
                if view.value is not None and option.value == view.value
            ),
            None,
        )
        async with self._prompt_lock:
            answer = await questionary.select(
                view.title,
                choices=choices,
                default=default,
                instruction=f"({view.placeholder})",
                use_arrow_keys=True,
                use_shortcuts=False,
            ).ask_async()

        if answer is None:
            return StepEvent(view.generation, EventAction.DISMISS)
        option = view.options[answer]
        if option.value is Pseudo.BACK:
            return StepEvent(view.generation, EventAction.BACK)
        return StepEvent(view.generation, EventAction.SELECT, option.value)

    async def render_input_step(self, view: StepView) -> StepEvent:
        questionary = _import_questionary()
        self._print_error(view)

        message = view.title
        if view.can_go_back:
            message = f"{message} ['{BACK_INPUT}' to go back]"
        async with self._prompt_lock:
            answer = await questionary.text(
                message,
                default="" if view.value is None else str(view.value),
            ).ask_async()

        if answer is None:
            return StepEvent(view.generation, EventAction.DISMISS)
        if view.can_go_back and answer.strip() == BACK_INPUT:
            return StepEvent(view.generation, EventAction.BACK)
        return StepEvent(view.generation, EventAction.INPUT, answer)

    # ------------------------------------------------------------------
    # Progress and notifications
    # ------------------------------------------------------------------

    def progress(self, title: str) -> RichSpinner:
        return RichSpinner(title)

    async def notify(
        self,
        level: NotifyLevel,
        message: str,
        actions: Sequence[str] = (),
    ) -> str | None:
        """Print *message*; when *actions* are given, ask for one of them.

        Returns the chosen action, or ``None`` when dismissed.
        """
        text = _LEVEL_STYLES[level].format(message)
        if not actions:
            async with self._prompt_lock:
                console.print(text)
            return None
        questionary = _import_questionary()
        async with self._prompt_lock:
            console.print(text)
            answer = await questionary.select(
                "Choose an action:",
                choices=[*actions, DISMISS_ACTION],
                use_arrow_keys=True,
                use_shortcuts=False,
            ).ask_async()
        if answer is None or answer == DISMISS_ACTION:
            return None
        return str(answer)

    # ------------------------------------------------------------------
    # Menus (CLI only, not part of the adapter contract)
    # ------------------------------------------------------------------

    async def choose(self, title: str, options: Sequence[Option]) -> object | None:
        """Ask for one of *options*; returns its value, or ``None`` on cancel."""
        questionary = _import_questionary()
        choices = [
            questionary.Choice(title=build_choice_label(option), value=index)
            for index, option in enumerate(options)
        ]
        async with self._prompt_lock:
            answer = await questionary.select(
                title,
                choices=choices,
                use_arrow_keys=True,
                use_shortcuts=False,
            ).ask_async()
        if answer is None:
            return None
        return options[answer].value

    @staticmethod
    def _print_error(view: StepView) -> None:
        if view.error:
            console.print(f"[red]{view.error}[/red]")
