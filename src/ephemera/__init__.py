"""ephemera: interactive manager for ephemeral cloud instances.

Guided terminal flows on top of a remote provisioning API, with a strict
layered architecture (``core`` / ``infra`` / ``cli``).
"""

from ephemera.version import __version__

__all__: list[str] = ["__version__"]
