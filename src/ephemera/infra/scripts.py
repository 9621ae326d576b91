"""Boot scripts stored as plain files in a configured directory."""

from __future__ import annotations

import logging
from pathlib import Path

from ephemera.exceptions import StorageError, ValidationError

LOGGER = logging.getLogger(__name__)


class DirectoryScriptLibrary:
    """Concrete :class:`~ephemera.core.protocols.ScriptLibrary`.

    Every regular, non-hidden file directly inside *directory* is a
    script; its file name is the reference stored in requests.
    """

    def __init__(self, directory: Path | None) -> None:
        self._directory = directory.expanduser() if directory is not None else None

    @property
    def directory(self) -> Path | None:
        return self._directory

    def list_scripts(self) -> list[str]:
        if self._directory is None or not self._directory.is_dir():
            return []
        try:
            return sorted(
                entry.name
                for entry in self._directory.iterdir()
                if entry.is_file() and not entry.name.startswith(".")
            )
        except OSError as exc:
            raise StorageError(f"Could not list boot scripts in {self._directory}: {exc}") from exc

    def read_script(self, name: str) -> str:
        """Return the content of script *name*.

        Raises
        ------
        ValidationError
            If *name* is not a plain file name or the script does not exist.
        StorageError
            If the file exists but cannot be read.
        """
        if self._directory is None:
            raise ValidationError("No boot script directory is configured.")
        if not name or Path(name).name != name or name.startswith("."):
            raise ValidationError(f"Invalid boot script name: {name!r}.")
        path = self._directory / name
        if not path.is_file():
            raise ValidationError(
                f"Boot script {name!r} not found in {self._directory}.",
                hint="Pick another script, or add it to the boot script directory.",
            )
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageError(f"Could not read boot script {path}: {exc}") from exc
        LOGGER.debug("read boot script %s (%d bytes)", path, len(content))
        return content
