"""Rich spinner shown while an instance action settles.

:class:`RichSpinner` is the object behind
:meth:`~ephemera.cli.presenter.QuestionaryPresenter.progress`: entering it
starts a transient spinner, calling it replaces the status line, leaving
it stops the display.
"""

from __future__ import annotations

from typing import Any

from ephemera.cli.console import get_rich_console
from ephemera.exceptions import EnvironmentError


class RichSpinner:
    """Callable status line backed by a Rich :class:`~rich.progress.Progress`.

    Usage::

        with RichSpinner("Creating instance 42...") as tick:
            tick("Instance 42 is running")
    """

    def __init__(self, title: str) -> None:
        try:
            from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
        except ModuleNotFoundError as exc:
            raise EnvironmentError(
                "rich is not installed. Install with: pip install rich",
            ) from exc

        self._title = title
        self._progress: Any = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            TextColumn("[dim]{task.fields[status]}"),
            TimeElapsedColumn(),
            console=get_rich_console(),
            transient=True,
        )
        self._task_id: Any = None
        self._started: bool = False
        self.messages: list[str] = []
        """Every status line reported so far."""

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> RichSpinner:
        self.start()
        return self

    def __exit__(self, *_args: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self._started:
            self._progress.start()
            self._task_id = self._progress.add_task(self._title, total=None, status="")
            self._started = True

    def stop(self) -> None:
        """Stop the display (idempotent)."""
        if self._started:
            self._progress.stop()
            self._started = False

    # ------------------------------------------------------------------
    # Tick callback
    # ------------------------------------------------------------------

    def __call__(self, message: str) -> None:
        self.messages.append(message)
        if not self._started:
            return
        self._progress.update(self._task_id, status=message)
