"""Settings loader for ephemera.

Values are resolved from, in increasing priority:

1. Built-in defaults.
2. ``~/.config/ephemera/config.yml`` (or ``EPHEMERA_CONFIG_FILE``, or the
   ``--config`` path).
3. Environment variables prefixed with ``EPHEMERA_``.

Environment keys use double underscores to express nesting, e.g.::

    export EPHEMERA_SECRET=...
    export EPHEMERA_DEFAULT_PLAN__RESOURCE_ID=3

Values other than credentials and host names are coerced via PyYAML's
``safe_load`` so that booleans and numbers parse naturally.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from ephemera.core.config_store import ConfigStore, Writer
from ephemera.core.models import NONE, UNSET, AutoConnect, CreateRequest, Sentinel
from ephemera.exceptions import ConfigError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "EPHEMERA_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
RAW_ENV_KEYS = {"client_id", "secret", "base_url", "auto_connect_host"}

DEFAULT_CONFIG_FILE = "~/.config/ephemera/config.yml"

DEFAULTS: dict[str, object] = {
    "client_id": "",
    "secret": "",
    "base_url": "https://app.alice.ws/cli/v1",
    "auto_connect": "false",
    "auto_connect_host": "",
    "boot_script_dir": "~/.config/ephemera/scripts",
    "execution_log": "~/.local/state/ephemera/executions.json",
    "status_refresh_seconds": 60.0,
    "request_timeout": 30.0,
    "default_plan": None,
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS) | {"config_file"}
PLAN_KEYS = ("resource_id", "variant_id", "duration_hours", "key_id", "script_ref")


@dataclass(frozen=True)
class Settings:
    """Resolved user settings."""

    config_file: Path
    client_id: str = ""
    secret: str = ""
    base_url: str = "https://app.alice.ws/cli/v1"
    auto_connect: AutoConnect = AutoConnect.OFF
    auto_connect_host: str = ""
    boot_script_dir: Path | None = None
    execution_log: Path | None = None
    status_refresh_seconds: float = 60.0
    request_timeout: float = 30.0
    default_plan: CreateRequest | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.secret)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secret masked)."""
        return {
            "config_file": str(self.config_file),
            "client_id": self.client_id,
            "secret": "***" if self.secret else "",
            "base_url": self.base_url,
            "auto_connect": self.auto_connect.value,
            "auto_connect_host": self.auto_connect_host,
            "boot_script_dir": str(self.boot_script_dir) if self.boot_script_dir else None,
            "execution_log": str(self.execution_log) if self.execution_log else None,
            "status_refresh_seconds": self.status_refresh_seconds,
            "request_timeout": self.request_timeout,
            "default_plan": plan_to_dict(self.default_plan),
        }


def load_settings(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Load and merge settings sources into a :class:`Settings`."""
    merged: dict[str, object] = dict(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)
    config_path = _determine_config_path(config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    unknown = set(merged) - ALLOWED_TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")

    return Settings(
        config_file=config_path,
        client_id=_expect_text(merged["client_id"], "client_id"),
        secret=_expect_text(merged["secret"], "secret"),
        base_url=_expect_text(merged["base_url"], "base_url").rstrip("/"),
        auto_connect=_expect_auto_connect(merged["auto_connect"]),
        auto_connect_host=_expect_text(merged["auto_connect_host"], "auto_connect_host"),
        boot_script_dir=_optional_path(merged["boot_script_dir"]),
        execution_log=_optional_path(merged["execution_log"]),
        status_refresh_seconds=_expect_positive_float(
            merged["status_refresh_seconds"], "status_refresh_seconds",
        ),
        request_timeout=_expect_positive_float(merged["request_timeout"], "request_timeout"),
        default_plan=parse_default_plan(merged["default_plan"]),
    )


def apply_settings(store: ConfigStore, settings: Settings) -> None:
    """Publish the settings-owned fields into *store*."""
    store.update(
        {
            "has_credentials": settings.has_credentials,
            "auto_connect": settings.auto_connect,
            "auto_connect_host": settings.auto_connect_host,
            "default_plan": settings.default_plan,
        },
        writer=Writer.SETTINGS,
    )


# ---------------------------------------------------------------------------
# Default plan
# ---------------------------------------------------------------------------

def parse_default_plan(raw: object) -> CreateRequest | None:
    """Build a :class:`CreateRequest` from its YAML mapping.

    Older configuration files stored ids as strings; those are coerced
    to integers.  ``null`` for the key or script means "none".
    """
    if raw is None:
        return None
    plan = _as_dict(raw, "default_plan")
    if not plan:
        return None
    unknown = set(plan) - set(PLAN_KEYS)
    if unknown:
        raise ConfigError(f"Unknown default_plan keys: {', '.join(sorted(unknown))}.")

    values: dict[str, object] = {}
    for key in ("resource_id", "variant_id", "duration_hours"):
        if plan.get(key) is not None:
            values[key] = _expect_int(plan[key], f"default_plan.{key}")
    if "key_id" in plan:
        key_id = plan["key_id"]
        values["key_id"] = NONE if _is_none(key_id) else _expect_int(key_id, "default_plan.key_id")
    if "script_ref" in plan:
        script = plan["script_ref"]
        values["script_ref"] = NONE if _is_none(script) else str(script)
    return CreateRequest(**values)


def plan_to_dict(plan: CreateRequest | None) -> dict[str, object] | None:
    if plan is None:
        return None
    result: dict[str, object] = {}
    for key in PLAN_KEYS:
        value = getattr(plan, key)
        if value is UNSET:
            continue
        result[key] = None if isinstance(value, Sentinel) else value
    return result


def save_default_plan(path: str | os.PathLike[str], plan: CreateRequest) -> None:
    """Persist *plan* as ``default_plan`` in the YAML file at *path*.

    Other keys in the file are preserved.
    """
    target = Path(path).expanduser()
    data = _load_yaml_file(target)
    data["default_plan"] = plan_to_dict(plan)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not write config file {target}: {exc}") from exc
    LOGGER.info("default plan saved to %s", target)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(DEFAULT_CONFIG_FILE).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        path_segments = [s.lower() for s in key[len(ENV_PREFIX):].split("__") if s]
        if not path_segments:
            continue
        raw = path_segments == [path_segments[0]] and path_segments[0] in RAW_ENV_KEYS
        _assign_nested(overrides, path_segments, value if raw else _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            f"Environment overrides conflict with existing scalar value at {'.'.join(path)}",
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged = dict(existing)
            _deep_merge(merged, value)
            target[key] = merged
            continue
        target[key] = value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _as_dict(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {str(k): v for k, v in value.items()}


def _is_none(value: object) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() in {"", "none"})


def _expect_int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_text(value: object, label: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value)
    raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _expect_positive_float(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return number


def _expect_auto_connect(value: object) -> AutoConnect:
    if isinstance(value, bool):
        return AutoConnect.CURRENT if value else AutoConnect.OFF
    if value is None:
        return AutoConnect.OFF
    try:
        return AutoConnect(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(a.value for a in AutoConnect)
        raise ConfigError(f"auto_connect must be one of: {allowed}. Got {value!r}.") from exc


def _optional_path(value: object) -> Path | None:
    if value is None or value == "":
        return None
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to a path.")
