"""``ephemera doctor``: environment diagnostics command.

Collects local facts (interpreter, libraries, settings, directories) and
renders a Rich table summarising whether ephemera can run.  No network
calls are made; ``ephemera refresh`` checks the credentials remotely.
"""

from __future__ import annotations

import platform
import sys
from importlib import metadata

from ephemera.cli import exit_codes
from ephemera.cli.console import console
from ephemera.settings import Settings
from ephemera.version import __version__

OK = "[green]OK[/green]"
WARN = "[yellow]WARN[/yellow]"
FAIL = "[red]FAIL[/red]"

Check = tuple[str, str, str]

REQUIRED_DISTRIBUTIONS: tuple[tuple[str, str], ...] = (
    ("requests", "requests"),
    ("PyYAML", "PyYAML"),
    ("rich", "rich"),
    ("questionary", "questionary"),
)


# ---------------------------------------------------------------------------
# Diagnostic collectors
# ---------------------------------------------------------------------------

def _ephemera_version_check() -> Check:
    return "ephemera", __version__, OK


def _python_version_check() -> Check:
    """Return (label, value, status) for the Python version row."""
    version = platform.python_version()
    ok = sys.version_info[:2] >= (3, 10)
    return "Python", version, OK if ok else "[red]FAIL (>=3.10 required)[/red]"


def _distribution_check(label: str, distribution: str) -> Check:
    try:
        return label, metadata.version(distribution), OK
    except metadata.PackageNotFoundError:
        return label, "NOT INSTALLED", FAIL


def _config_file_check(settings: Settings) -> Check:
    if settings.config_file.is_file():
        return "Config file", str(settings.config_file), OK
    return "Config file", f"{settings.config_file} (missing)", WARN


def _credentials_check(settings: Settings) -> Check:
    if settings.has_credentials:
        return "Credentials", f"client id {settings.client_id}", OK
    return "Credentials", "client_id / secret not set", FAIL


def _script_dir_check(settings: Settings) -> Check:
    directory = settings.boot_script_dir
    if directory is None:
        return "Boot scripts", "disabled", WARN
    if directory.is_dir():
        count = sum(1 for p in directory.iterdir() if p.is_file() and not p.name.startswith("."))
        return "Boot scripts", f"{directory} ({count} scripts)", OK
    return "Boot scripts", f"{directory} (missing)", WARN


def _os_check() -> Check:
    system_raw = platform.system()
    system_display = {"Darwin": "macOS"}.get(system_raw, system_raw)
    return "OS", f"{system_display} {platform.release()} ({platform.machine()})", OK


def collect_checks(settings: Settings) -> list[Check]:
    return [
        _ephemera_version_check(),
        _python_version_check(),
        *(_distribution_check(label, dist) for label, dist in REQUIRED_DISTRIBUTIONS),
        _config_file_check(settings),
        _credentials_check(settings),
        _script_dir_check(settings),
        _os_check(),
    ]


def _status_plain(status: str) -> str:
    """Convert rich-markup status to plain text."""
    for word in ("FAIL", "WARN", "OK"):
        if word in status:
            return word
    return status


def _print_plain_doctor_table(checks: list[Check]) -> None:
    """Render doctor output without Rich."""
    print("\nephemera doctor", file=sys.stderr)
    print("=" * 72, file=sys.stderr)
    print(f"{'Component':<14} {'Value':<46} {'Status':<8}", file=sys.stderr)
    print("-" * 72, file=sys.stderr)
    for label, value, status in checks:
        print(f"{label:<14} {value:<46} {_status_plain(status):<8}", file=sys.stderr)
    print(file=sys.stderr)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def run_doctor(settings: Settings) -> int:
    """Execute all diagnostic checks and render a summary table.

    Returns
    -------
    int
        :data:`exit_codes.SUCCESS` when no check failed,
        :data:`exit_codes.GENERAL_ERROR` otherwise.
    """
    checks = collect_checks(settings)
    has_failure = any("FAIL" in status for _, _, status in checks)

    try:
        from rich.table import Table
    except ModuleNotFoundError:
        _print_plain_doctor_table(checks)
        print("Some checks failed." if has_failure else "All checks passed.", file=sys.stderr)
        return exit_codes.GENERAL_ERROR if has_failure else exit_codes.SUCCESS

    table = Table(
        title="ephemera doctor",
        show_header=True,
        header_style="bold cyan",
        border_style="dim",
    )
    table.add_column("Component", style="bold", min_width=14)
    table.add_column("Value", min_width=20)
    table.add_column("Status", justify="center", min_width=8)
    for label, value, status in checks:
        table.add_row(label, value, status)

    console.print()
    console.print(table)
    console.print()

    if has_failure:
        console.print("[bold red]Some checks failed.[/bold red]")
        return exit_codes.GENERAL_ERROR
    console.print("[bold green]All checks passed.[/bold green]")
    return exit_codes.SUCCESS
