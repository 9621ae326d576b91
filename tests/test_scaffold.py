"""Smoke tests for package wiring.

These tests prove that:
* The CLI entry point is importable and callable.
* The exception hierarchy is correctly structured.
* Version is accessible.
* Exit codes are defined.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from ephemera import __version__
from ephemera.cli import exit_codes
from ephemera.cli.app import cli, main
from ephemera.exceptions import (
    CommandPendingError,
    ConfigError,
    ConfigStoreError,
    DependencyMissingError,
    EnvironmentError,
    EphemeraError,
    ErrorKind,
    OperationTimeoutError,
    PermissionDeniedError,
    RemoteError,
    StorageError,
    TransientError,
    UnauthorizedError,
    UnexpectedError,
    ValidationError,
)


# ---------------------------------------------------------------------------
# Version
# ---------------------------------------------------------------------------

class TestVersion:
    def test_version_is_string(self) -> None:
        assert isinstance(__version__, str)

    def test_version_is_semver_like(self) -> None:
        parts = __version__.split(".")
        assert len(parts) == 3
        assert all(part.isdigit() for part in parts)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class TestExceptions:
    @pytest.mark.parametrize(
        "exc_class",
        [
            ValidationError,
            OperationTimeoutError,
            UnexpectedError,
            ConfigError,
            ConfigStoreError,
            StorageError,
            EnvironmentError,
            RemoteError,
        ],
    )
    def test_all_exceptions_inherit_from_base(self, exc_class: type[EphemeraError]) -> None:
        assert issubclass(exc_class, EphemeraError)

    @pytest.mark.parametrize(
        ("exc_class", "kind"),
        [
            (UnauthorizedError, ErrorKind.UNAUTHORIZED),
            (PermissionDeniedError, ErrorKind.PERMISSION_DENIED),
            (CommandPendingError, ErrorKind.PENDING),
            (TransientError, ErrorKind.TRANSIENT),
            (RemoteError, ErrorKind.OTHER),
        ],
    )
    def test_remote_errors_carry_their_kind(
        self, exc_class: type[RemoteError], kind: ErrorKind
    ) -> None:
        err = exc_class("boom", status=503)
        assert err.kind is kind
        assert err.status == 503
        assert isinstance(err, RemoteError)

    def test_hint_is_stored(self) -> None:
        err = EphemeraError("boom", hint="try this")
        assert str(err) == "boom"
        assert err.hint == "try this"

    def test_hint_defaults_to_none(self) -> None:
        assert EphemeraError("boom").hint is None

    def test_dependency_missing_names_the_dependency(self) -> None:
        err = DependencyMissingError("plans")
        assert str(err) == "No plans available."
        assert err.dependency == "plans"


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

class TestExitCodes:
    def test_codes_are_distinct(self) -> None:
        codes = {
            exit_codes.SUCCESS,
            exit_codes.GENERAL_ERROR,
            exit_codes.KEYBOARD_INTERRUPT,
            exit_codes.UNEXPECTED_ERROR,
        }
        assert len(codes) == 4

    def test_success_is_zero(self) -> None:
        assert exit_codes.SUCCESS == 0

    def test_keyboard_interrupt_follows_posix(self) -> None:
        assert exit_codes.KEYBOARD_INTERRUPT == 130


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

class TestEntryPoint:
    def test_help_exits_cleanly(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--help"])
        assert exc_info.value.code == 0

    def test_version_flag(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    @patch("ephemera.cli.app.main", side_effect=ConfigError("bad config", hint="fix it"))
    def test_cli_maps_known_errors(self, _mock_main: object) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli()
        assert exc_info.value.code == exit_codes.GENERAL_ERROR

    @patch("ephemera.cli.app.main", side_effect=KeyboardInterrupt)
    def test_cli_maps_keyboard_interrupt(self, _mock_main: object) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli()
        assert exc_info.value.code == exit_codes.KEYBOARD_INTERRUPT

    @patch("ephemera.cli.app.main", side_effect=RuntimeError("kaboom"))
    def test_cli_maps_unexpected_errors(self, _mock_main: object) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli()
        assert exc_info.value.code == exit_codes.UNEXPECTED_ERROR

    @patch("ephemera.cli.app.main", return_value=0)
    def test_cli_passes_through_exit_code(self, _mock_main: object) -> None:
        with pytest.raises(SystemExit) as exc_info:
            cli()
        assert exc_info.value.code == 0
