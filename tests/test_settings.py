"""Tests for the YAML + environment settings loader."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from ephemera.core.config_store import ConfigStore
from ephemera.core.models import NONE, UNSET, AutoConnect, CreateRequest
from ephemera.exceptions import ConfigError
from ephemera.settings import (
    apply_settings,
    load_settings,
    parse_default_plan,
    plan_to_dict,
    save_default_plan,
)


def _write(path: Path, data: object) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoadSettings:
    def test_defaults_when_file_missing(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path / "missing.yml", env={})

        assert settings.config_file == tmp_path / "missing.yml"
        assert settings.client_id == ""
        assert not settings.has_credentials
        assert settings.auto_connect is AutoConnect.OFF
        assert settings.status_refresh_seconds == 60.0
        assert settings.default_plan is None
        assert settings.base_url == "https://app.alice.ws/cli/v1"

    def test_file_values(self, tmp_path: Path) -> None:
        config = _write(
            tmp_path / "config.yml",
            {
                "client_id": "abc",
                "secret": "xyz",
                "auto_connect": "new",
                "auto_connect_host": "evo",
                "boot_script_dir": str(tmp_path / "scripts"),
                "status_refresh_seconds": 30,
            },
        )
        settings = load_settings(config, env={})

        assert settings.has_credentials
        assert settings.auto_connect is AutoConnect.NEW
        assert settings.auto_connect_host == "evo"
        assert settings.boot_script_dir == tmp_path / "scripts"
        assert settings.status_refresh_seconds == 30.0

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "config.yml", {"client_id": "from-file", "auto_connect": False})
        settings = load_settings(
            config,
            env={
                "EPHEMERA_CLIENT_ID": "0123",
                "EPHEMERA_AUTO_CONNECT": "true",
                "EPHEMERA_DEFAULT_PLAN__RESOURCE_ID": "3",
                "UNRELATED": "ignored",
            },
        )
        assert settings.client_id == "0123"
        assert settings.auto_connect is AutoConnect.CURRENT
        assert settings.default_plan == CreateRequest(resource_id=3)

    def test_config_file_from_env(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "other.yml", {"secret": "s"})
        settings = load_settings(env={"EPHEMERA_CONFIG_FILE": str(config)})
        assert settings.config_file == config
        assert settings.secret == "s"

    def test_unknown_key_is_rejected(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "config.yml", {"colour": "blue"})
        with pytest.raises(ConfigError, match="colour"):
            load_settings(config, env={})

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        config = tmp_path / "config.yml"
        config.write_text("client_id: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Failed to parse"):
            load_settings(config, env={})

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        config = tmp_path / "config.yml"
        config.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(config, env={})

    @pytest.mark.parametrize("value", ["maybe", 3])
    def test_invalid_auto_connect(self, tmp_path: Path, value: object) -> None:
        config = _write(tmp_path / "config.yml", {"auto_connect": value})
        with pytest.raises(ConfigError, match="auto_connect"):
            load_settings(config, env={})

    def test_non_positive_interval(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "config.yml", {"status_refresh_seconds": 0})
        with pytest.raises(ConfigError, match="greater than zero"):
            load_settings(config, env={})

    def test_empty_paths_disable_features(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "config.yml", {"boot_script_dir": "", "execution_log": None})
        settings = load_settings(config, env={})
        assert settings.boot_script_dir is None
        assert settings.execution_log is None

    def test_to_dict_masks_secret(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "config.yml", {"client_id": "abc", "secret": "xyz"})
        data = load_settings(config, env={}).to_dict()
        assert data["secret"] == "***"
        assert data["client_id"] == "abc"

    def test_apply_settings_publishes_fields(self, tmp_path: Path) -> None:
        config = _write(
            tmp_path / "config.yml",
            {"client_id": "a", "secret": "b", "auto_connect_host": "evo", "default_plan": {"resource_id": 1}},
        )
        store = ConfigStore()
        apply_settings(store, load_settings(config, env={}))

        snap = store.snapshot()
        assert snap.has_credentials is True
        assert snap.auto_connect_host == "evo"
        assert snap.default_plan == CreateRequest(resource_id=1)


class TestDefaultPlan:
    def test_legacy_string_ids_are_coerced(self) -> None:
        plan = parse_default_plan(
            {"resource_id": "1", "variant_id": "11", "duration_hours": "4", "key_id": "7", "script_ref": "setup.sh"},
        )
        assert plan == CreateRequest(
            resource_id=1,
            variant_id=11,
            duration_hours=4,
            key_id=7,
            script_ref="setup.sh",
        )

    @pytest.mark.parametrize("empty", [None, "none", ""])
    def test_none_markers(self, empty: object) -> None:
        plan = parse_default_plan({"key_id": empty, "script_ref": empty})
        assert plan is not None
        assert plan.key_id is NONE
        assert plan.script_ref is NONE
        assert plan.resource_id is UNSET

    def test_missing_plan(self) -> None:
        assert parse_default_plan(None) is None
        assert parse_default_plan({}) is None

    def test_unknown_plan_key(self) -> None:
        with pytest.raises(ConfigError, match="region"):
            parse_default_plan({"region": "eu"})

    def test_bad_integer(self) -> None:
        with pytest.raises(ConfigError, match="default_plan.resource_id"):
            parse_default_plan({"resource_id": "large"})

    def test_plan_to_dict_omits_unset(self) -> None:
        plan = CreateRequest(resource_id=1, key_id=NONE)
        assert plan_to_dict(plan) == {"resource_id": 1, "key_id": None}
        assert plan_to_dict(None) is None

    def test_save_preserves_other_keys(self, tmp_path: Path) -> None:
        config = _write(tmp_path / "config.yml", {"client_id": "abc", "secret": "xyz"})
        plan = CreateRequest(resource_id=1, variant_id=11, duration_hours=4, key_id=NONE, script_ref="setup.sh")
        save_default_plan(config, plan)

        data = yaml.safe_load(config.read_text(encoding="utf-8"))
        assert data["client_id"] == "abc"
        assert data["default_plan"] == {
            "resource_id": 1,
            "variant_id": 11,
            "duration_hours": 4,
            "key_id": None,
            "script_ref": "setup.sh",
        }
        assert load_settings(config, env={}).default_plan == plan

    def test_save_creates_parent_directories(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "config.yml"
        save_default_plan(target, CreateRequest(resource_id=2))
        assert target.is_file()
