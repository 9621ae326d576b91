"""Allow ``python -m ephemera`` invocation.

Delegates to the CLI error-boundary entry point so that
``python -m ephemera`` behaves identically to the ``ephemera`` console
script.
"""

from __future__ import annotations

from ephemera.cli.app import cli

if __name__ == "__main__":
    cli()
