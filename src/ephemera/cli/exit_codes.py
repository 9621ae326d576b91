"""Process exit codes of the ``ephemera`` command.

Action outcomes map onto these in :func:`ephemera.cli.menu.outcome_exit_code`;
:func:`ephemera.cli.app.cli` maps escaped exceptions.
"""

from __future__ import annotations

SUCCESS: int = 0
"""The command finished, or the user backed out of a prompt or wizard."""

GENERAL_ERROR: int = 1
"""An instance action failed or timed out, or an EphemeraError reached the boundary."""

KEYBOARD_INTERRUPT: int = 130
"""Interrupted with Ctrl+C (128 + SIGINT)."""

UNEXPECTED_ERROR: int = 2
"""Any other exception reached the boundary."""
