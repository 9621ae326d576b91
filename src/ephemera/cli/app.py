"""CLI application entry point and command routing for ephemera.

This module is the **sole error boundary** for the entire application.
It catches :class:`~ephemera.exceptions.EphemeraError`, ``KeyboardInterrupt``,
and any unexpected ``Exception``, rendering user-friendly messages via Rich
and returning well-defined exit codes.

Architecture notes
------------------
* No business logic lives here; commands are delegated to
  :mod:`ephemera.cli.menu`, which drives the core services.
* This module is the only place that translates between the domain world
  and the OS process exit code.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from ephemera.cli import exit_codes
from ephemera.cli.console import configure_logging, console
from ephemera.core.models import PowerAction
from ephemera.exceptions import EphemeraError
from ephemera.settings import Settings, load_settings
from ephemera.version import __version__

COMMANDS: tuple[str, ...] = (
    "menu",
    "create",
    "status",
    "rebuild",
    "delete",
    "power",
    "renew",
    "refresh",
    "history",
    "default-plan",
    "doctor",
)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Construct the top-level argument parser.

    Without a sub-command the interactive menu is shown.
    """
    parser = argparse.ArgumentParser(
        prog="ephemera",
        description="Create and manage one ephemeral cloud instance from the terminal.",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        metavar="PATH",
        help="Settings file (default: ~/.config/ephemera/config.yml).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log debug output to stderr.",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("menu", help="Interactive menu (default).")

    create = sub.add_parser("create", help="Create an instance.")
    create.add_argument(
        "--default",
        dest="use_default",
        action="store_true",
        help="Use the saved default plan instead of the wizard.",
    )

    sub.add_parser("status", help="Show the current instance.")
    sub.add_parser("rebuild", help="Reinstall the OS of the current instance.")

    delete = sub.add_parser("delete", help="Delete the current instance.")
    delete.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")

    power = sub.add_parser("power", help="Boot, shut down, restart or power off.")
    power.add_argument(
        "action",
        nargs="?",
        choices=[action.value for action in PowerAction],
        help="Power action; asked interactively when omitted.",
    )

    renew = sub.add_parser("renew", help="Extend the lifetime of the current instance.")
    renew.add_argument("--hours", type=int, default=None, help="Hours to add.")

    sub.add_parser("refresh", help="Reload permissions, catalogs and the instance.")
    sub.add_parser("history", help="Show boot-script executions of the current instance.")
    sub.add_parser("default-plan", help="Create or edit the default plan.")
    sub.add_parser("doctor", help="Run environment diagnostics.")
    return parser


# ---------------------------------------------------------------------------
# Command dispatch
# ---------------------------------------------------------------------------

async def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    """Build the runtime, run one command, and tear the runtime down."""
    from ephemera.cli import menu
    from ephemera.cli.runtime import build_runtime

    runtime = build_runtime(settings)
    try:
        command = args.command or "menu"
        if command == "menu":
            return await menu.run_menu(runtime)
        if command == "refresh":
            return menu.outcome_exit_code(await menu.refresh_action(runtime))

        await runtime.refresh()
        if command == "create":
            outcome = await menu.create_action(runtime, use_default=args.use_default)
        elif command == "status":
            outcome = await menu.status_action(runtime)
        elif command == "rebuild":
            outcome = await menu.rebuild_action(runtime)
        elif command == "delete":
            outcome = await menu.delete_action(runtime, confirm=not args.yes)
        elif command == "power":
            action = PowerAction(args.action) if args.action else None
            outcome = await menu.power_action(runtime, action)
        elif command == "renew":
            outcome = await menu.renew_action(runtime, args.hours)
        elif command == "history":
            outcome = await menu.history_action(runtime)
        elif command == "default-plan":
            outcome = await menu.edit_default_plan_action(runtime)
        else:  # pragma: no cover - argparse rejects unknown commands
            raise EphemeraError(f"Unknown command: {command}")
        return menu.outcome_exit_code(outcome)
    finally:
        runtime.close()


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    """Run the ephemera CLI.

    Parameters
    ----------
    argv:
        Explicit argument list.  When ``None`` (default), ``sys.argv[1:]``
        is used.  Accepting *argv* enables deterministic testing without
        monkeypatching.

    Returns
    -------
    int
        OS process exit code.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    settings = load_settings(args.config)

    if args.command == "doctor":
        from ephemera.cli.doctor import run_doctor

        return run_doctor(settings)

    return asyncio.run(_run_command(args, settings))


# ---------------------------------------------------------------------------
# Script-level error boundary
# ---------------------------------------------------------------------------

def cli() -> None:
    """Top-level error boundary invoked by the console-script entry point.

    This function wraps :func:`main` and guarantees the process never
    exits with a raw stack trace during normal usage.
    """
    try:
        code = main()
        sys.exit(code)
    except EphemeraError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        if exc.hint:
            console.print(f"[yellow]Hint:[/yellow] {exc.hint}")
        sys.exit(exit_codes.GENERAL_ERROR)
    except KeyboardInterrupt:
        console.print("\n[yellow]Aborted by user.[/yellow]")
        sys.exit(exit_codes.KEYBOARD_INTERRUPT)
    except Exception as exc:  # noqa: BLE001
        console.print(
            "[bold red]Unexpected error.[/bold red] "
            "Please report this issue.\n"
            f"  {type(exc).__name__}: {exc}"
        )
        sys.exit(exit_codes.UNEXPECTED_ERROR)
