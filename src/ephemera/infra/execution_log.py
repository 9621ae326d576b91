"""JSON-backed history of boot-script executions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path

from ephemera.exceptions import StorageError

LOGGER = logging.getLogger(__name__)

PENDING = "pending"


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class JsonExecutionLog:
    """Concrete :class:`~ephemera.core.protocols.ExecutionLog`.

    Entries are only ever appended or updated in place, keyed by their
    command identifier.  The file is rewritten atomically on each change.
    """

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def add_entry(
        self,
        instance_id: int,
        operation: str,
        script_name: str,
        command_uid: str,
    ) -> dict[str, object]:
        """Record a newly queued execution with status ``pending``."""
        entry: dict[str, object] = {
            "command_uid": command_uid,
            "instance_id": instance_id,
            "operation": operation,
            "script_name": script_name,
            "status": PENDING,
            "output": None,
            "created_at": _now_iso(),
            "updated_at": None,
        }
        entries = self._read()
        entries.append(entry)
        self._write(entries)
        return entry

    def update_entry(self, command_uid: str, status: str, output: str | None) -> dict[str, object] | None:
        """Set the final status and output of *command_uid*.

        Returns the updated entry, or ``None`` when it is unknown.
        """
        entries = self._read()
        for entry in entries:
            if entry.get("command_uid") == command_uid:
                entry.update(status=status, output=output, updated_at=_now_iso())
                self._write(entries)
                return entry
        LOGGER.warning("no execution log entry for command %s", command_uid)
        return None

    def entries_for_instance(self, instance_id: int) -> list[dict[str, object]]:
        """Entries of *instance_id*, newest first."""
        matching = [e for e in self._read() if e.get("instance_id") == instance_id]
        matching.reverse()
        return matching

    def get(self, command_uid: str) -> dict[str, object] | None:
        return next((e for e in self._read() if e.get("command_uid") == command_uid), None)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read(self) -> list[dict[str, object]]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Execution log corrupted ({self._path}): {exc}") from exc
        executions = data.get("executions") if isinstance(data, Mapping) else None
        if not isinstance(executions, list):
            raise StorageError(f"Execution log must be a JSON object with an 'executions' list ({self._path}).")
        return [dict(item) for item in executions if isinstance(item, Mapping)]

    def _write(self, entries: list[dict[str, object]]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self._path.parent), prefix=f".{self._path.name}.")
        except OSError as exc:
            raise StorageError(f"Failed to prepare execution log {self._path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump({"executions": entries}, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StorageError(f"Failed to write execution log: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
