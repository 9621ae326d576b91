"""Tests for the runtime wiring, menu actions and command routing.

The runtime is built around :class:`fakes.FakeClient` and
:class:`fakes.ScriptedPresenter`; the instance service gets a recording
sleep so polling finishes instantly.
"""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import yaml

from ephemera.cli import exit_codes
from ephemera.cli.menu import (
    control_menu_options,
    create_action,
    create_menu_options,
    connect_action,
    delete_action,
    describe_plan,
    describe_state,
    edit_default_plan_action,
    history_action,
    outcome_exit_code,
    plan_is_usable,
    power_action,
    rebuild_action,
    renew_action,
    run_menu,
)
from ephemera.cli.runtime import RECHECK, Runtime, build_runtime
from ephemera.core.instance_service import ActionOutcome, ActionStatus, InstanceService
from ephemera.core.models import NONE, AutoConnect, CreateRequest, NotifyLevel, PowerAction
from ephemera.exceptions import PermissionDeniedError, TransientError
from ephemera.settings import Settings

from fakes import (
    DEBIAN,
    LAPTOP_KEY,
    STARTER,
    FakeClient,
    ScriptedPresenter,
    SleepRecorder,
    enter,
    make_instance,
    make_store,
    running_state,
    select,
    stopped_state,
)

PLAN = CreateRequest(
    resource_id=STARTER.id,
    variant_id=DEBIAN.id,
    duration_hours=4,
    key_id=NONE,
    script_ref=NONE,
)

WIZARD_ANSWERS = [select(STARTER.id), select(DEBIAN.id), enter("4"), select(NONE), select(NONE)]


def _runtime(
    tmp_path: Path,
    client: FakeClient,
    presenter: ScriptedPresenter,
    *,
    sleep: Any = None,
    **overrides: Any,
) -> Runtime:
    values: dict[str, Any] = {
        "config_file": tmp_path / "config.yml",
        "client_id": "abc",
        "secret": "xyz",
        "execution_log": tmp_path / "executions.json",
    }
    values.update(overrides)
    runtime = build_runtime(Settings(**values), client=client, presenter=presenter)  # type: ignore[arg-type]
    runtime.service = InstanceService(
        client,
        runtime.store,
        presenter,
        scripts=runtime.scripts,
        execution_log=runtime.execution_log,
        sleep=sleep or SleepRecorder(),
        monitor_interval=3600.0,
    )
    return runtime


def _run(runtime: Runtime, action: Any) -> Any:
    async def scenario() -> Any:
        await runtime.refresh()
        try:
            return await action(runtime)
        finally:
            runtime.close()

    return asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Runtime.refresh
# ---------------------------------------------------------------------------

class TestRuntimeRefresh:
    def test_without_credentials(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        runtime = _runtime(tmp_path, client, presenter, client_id="", secret="")
        assert asyncio.run(runtime.refresh()) is None
        assert client.calls == []
        assert presenter.levels() == [NotifyLevel.WARNING]
        assert "EPHEMERA_CLIENT_ID" in presenter.notifications[0][1]

    def test_loads_catalogs_instance_and_state(
        self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter
    ) -> None:
        client.instances = [make_instance()]
        runtime = _runtime(tmp_path, client, presenter)
        report = asyncio.run(runtime.refresh())

        assert report is not None and report.ok
        snap = runtime.store.snapshot()
        assert snap.has_permission
        assert snap.instance == make_instance()
        assert snap.instance_state == running_state()
        assert presenter.notifications == []

    def test_permission_error_offers_recheck(self, tmp_path: Path, client: FakeClient) -> None:
        client.errors["get_permissions"] = PermissionDeniedError("no evo access")
        presenter = ScriptedPresenter(notify_answers=[RECHECK])
        runtime = _runtime(tmp_path, client, presenter)
        asyncio.run(runtime.refresh())

        assert len(client.called("get_permissions")) == 2
        assert presenter.notifications[0][2] == (RECHECK,)
        assert runtime.store.snapshot().has_permission is False

    def test_listing_failure_offers_retry(
        self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter
    ) -> None:
        client.errors["list_instances"] = TransientError("HTTP 500")
        runtime = _runtime(tmp_path, client, presenter)
        asyncio.run(runtime.refresh())

        level, message, actions = presenter.notifications[0]
        assert level is NotifyLevel.ERROR
        assert message.startswith("Could not list instances")
        assert actions == ("Retry",)

    def test_failed_catalog_is_a_warning(
        self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter
    ) -> None:
        client.errors["list_keys"] = TransientError("HTTP 502")
        runtime = _runtime(tmp_path, client, presenter)
        asyncio.run(runtime.refresh())
        assert presenter.notifications == [
            (NotifyLevel.WARNING, "Some catalogs could not be loaded: keys", ()),
        ]


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

class TestDescriptions:
    def test_describe_plan(self) -> None:
        snapshot = make_store().snapshot()
        plan = CreateRequest(
            resource_id=STARTER.id,
            variant_id=DEBIAN.id,
            duration_hours=4,
            key_id=LAPTOP_KEY.id,
            script_ref="setup.sh",
        )
        assert describe_plan(snapshot, plan) == (
            "Plan: Starter | OS: Debian 12 | Duration: 4 hours | SSH key: laptop | Script: setup.sh"
        )

    def test_describe_missing_plan(self) -> None:
        assert describe_plan(make_store().snapshot(), None).startswith("No default plan yet")

    def test_plan_is_usable(self) -> None:
        snapshot = make_store().snapshot()
        assert plan_is_usable(snapshot, PLAN)
        assert not plan_is_usable(snapshot, CreateRequest(resource_id=STARTER.id))
        assert not plan_is_usable(snapshot, dataclasses.replace(PLAN, variant_id=999))
        assert not plan_is_usable(make_store(resources=()).snapshot(), PLAN)

    def test_unconfirmed_permission_hides_catalogs(self) -> None:
        snapshot = make_store(has_permission=False).snapshot()
        assert not plan_is_usable(snapshot, PLAN)
        assert describe_plan(snapshot, PLAN) == "Default plan unavailable until permissions are confirmed"

    def test_describe_state(self) -> None:
        assert describe_state(make_store().snapshot()) == "State: unknown"
        snapshot = make_store(instance_state=stopped_state()).snapshot()
        assert describe_state(snapshot).startswith("State: stopped | CPU: 0%")

    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (ActionStatus.SUCCEEDED, exit_codes.SUCCESS),
            (ActionStatus.CANCELLED, exit_codes.SUCCESS),
            (ActionStatus.FAILED, exit_codes.GENERAL_ERROR),
            (ActionStatus.TIMED_OUT, exit_codes.GENERAL_ERROR),
        ],
    )
    def test_outcome_exit_code(self, status: ActionStatus, code: int) -> None:
        assert outcome_exit_code(ActionOutcome(status)) == code


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class TestCreateActions:
    def test_create_through_wizard(self, tmp_path: Path, client: FakeClient) -> None:
        presenter = ScriptedPresenter(list(WIZARD_ANSWERS))
        runtime = _runtime(tmp_path, client, presenter)
        outcome = _run(runtime, create_action)

        assert outcome.ok
        assert client.called("create_instance") == [(STARTER.id, DEBIAN.id, 4, None, None)]

    def test_create_cancelled(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        outcome = _run(_runtime(tmp_path, client, presenter), create_action)
        assert outcome.status is ActionStatus.CANCELLED
        assert client.called("create_instance") == []

    def test_create_from_default_plan(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        runtime = _runtime(tmp_path, client, presenter, default_plan=PLAN)
        outcome = _run(runtime, lambda rt: create_action(rt, use_default=True))

        assert outcome.ok
        assert presenter.views == []
        assert len(client.called("create_instance")) == 1

    def test_unusable_default_opens_editor(
        self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter
    ) -> None:
        runtime = _runtime(tmp_path, client, presenter)
        outcome = _run(runtime, lambda rt: create_action(rt, use_default=True))

        assert outcome.status is ActionStatus.CANCELLED
        assert presenter.notifications[0] == (
            NotifyLevel.WARNING,
            "No usable default plan; set one up first.",
            (),
        )
        assert len(presenter.views) == 1
        assert client.called("create_instance") == []

    def test_edit_default_plan_saves(self, tmp_path: Path, client: FakeClient) -> None:
        presenter = ScriptedPresenter(list(WIZARD_ANSWERS))
        runtime = _runtime(tmp_path, client, presenter)
        outcome = _run(runtime, edit_default_plan_action)

        assert outcome.ok
        assert runtime.store.snapshot().default_plan == PLAN
        saved = yaml.safe_load((tmp_path / "config.yml").read_text(encoding="utf-8"))
        assert saved["default_plan"]["variant_id"] == DEBIAN.id
        assert presenter.notifications[-1] == (NotifyLevel.INFO, "Default plan saved", ())

    def test_wizard_error_is_notified(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.errors["get_permissions"] = PermissionDeniedError("no evo access")
        runtime = _runtime(tmp_path, client, presenter)
        outcome = _run(runtime, create_action)

        assert outcome.status is ActionStatus.FAILED
        assert presenter.notifications[-1][0] is NotifyLevel.ERROR
        assert "permission" in presenter.notifications[-1][1]

    def test_default_plan_needs_confirmed_permission(self, tmp_path: Path, client: FakeClient) -> None:
        presenter = ScriptedPresenter()
        runtime = _runtime(tmp_path, client, presenter, default_plan=PLAN)

        async def scenario() -> ActionOutcome:
            await runtime.refresh()
            client.errors["get_permissions"] = TransientError("HTTP 503")
            await runtime.refresh()
            try:
                return await create_action(runtime, use_default=True)
            finally:
                runtime.close()

        outcome = asyncio.run(scenario())

        snapshot = runtime.store.snapshot()
        assert snapshot.has_permission is False
        assert [r.id for r in snapshot.resources] == [1, 2]
        assert outcome.status is ActionStatus.FAILED
        assert client.called("create_instance") == []
        assert presenter.notifications[-1] == (
            NotifyLevel.ERROR,
            "Your account does not have permission to create instances. "
            "Re-check permissions after updating your account.",
            (RECHECK,),
        )

    def test_wizard_permission_error_offers_recheck(self, tmp_path: Path, client: FakeClient) -> None:
        client.errors["get_permissions"] = PermissionDeniedError("no evo access")
        presenter = ScriptedPresenter(notify_answers=[None, RECHECK])
        runtime = _runtime(tmp_path, client, presenter)

        async def scenario() -> ActionOutcome:
            await runtime.refresh()
            del client.errors["get_permissions"]
            try:
                return await create_action(runtime)
            finally:
                runtime.close()

        outcome = asyncio.run(scenario())

        assert outcome.status is ActionStatus.FAILED
        assert presenter.notifications[1] == (
            NotifyLevel.ERROR,
            "Your account does not have permission to manage instances. "
            "Re-check permissions after updating your account.",
            (RECHECK,),
        )
        assert len(client.called("get_permissions")) == 2
        assert runtime.store.snapshot().has_permission is True

    def test_missing_catalog_offers_recheck(self, tmp_path: Path, client: FakeClient) -> None:
        client.instances = [make_instance()]
        client.variants[STARTER.id] = []
        presenter = ScriptedPresenter(notify_answers=[RECHECK])
        outcome = _run(_runtime(tmp_path, client, presenter), rebuild_action)

        assert outcome.status is ActionStatus.FAILED
        level, message, actions = presenter.notifications[0]
        assert level is NotifyLevel.ERROR
        assert message.startswith("No operating systems for plan 1 available.")
        assert actions == (RECHECK,)
        assert client.called("list_resource_variants").count((STARTER.id,)) == 2


class TestInstanceActions:
    def test_actions_need_an_instance(
        self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter
    ) -> None:
        runtime = _runtime(tmp_path, client, presenter)
        for action in (rebuild_action, delete_action, power_action, renew_action, history_action):
            outcome = _run(runtime, action)
            assert outcome.status is ActionStatus.FAILED
        assert {message for _, message, _ in presenter.notifications} == {"There is no instance to manage."}

    def test_rebuild_is_seeded_with_instance_plan(self, tmp_path: Path, client: FakeClient) -> None:
        client.instances = [make_instance()]
        presenter = ScriptedPresenter([select(DEBIAN.id), select(NONE), select(NONE)])
        outcome = _run(_runtime(tmp_path, client, presenter), rebuild_action)

        assert outcome.ok
        assert presenter.views[0].title == "Step 1/3: Select an OS"
        assert client.called("rebuild_instance") == [(42, DEBIAN.id, None, None)]

    def test_power_asks_for_action(self, tmp_path: Path, client: FakeClient) -> None:
        client.instances = [make_instance()]
        client.states.extend([stopped_state()])
        presenter = ScriptedPresenter(choose_answers=["Shut down"])
        outcome = _run(_runtime(tmp_path, client, presenter), power_action)

        assert outcome.ok
        assert client.called("power_instance") == [(42, PowerAction.SHUTDOWN)]

    def test_power_choice_cancelled(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.instances = [make_instance()]
        outcome = _run(_runtime(tmp_path, client, presenter), power_action)
        assert outcome.status is ActionStatus.CANCELLED

    def test_renew_validates_hours(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.instances = [make_instance()]
        runtime = _runtime(tmp_path, client, presenter)

        outcome = _run(runtime, lambda rt: renew_action(rt, 100))
        assert outcome.status is ActionStatus.FAILED
        assert client.called("renew_instance") == []

        outcome = _run(runtime, lambda rt: renew_action(rt, 3))
        assert outcome.ok
        assert client.called("renew_instance") == [(42, 3)]

    def test_delete_with_yes(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.instances = [make_instance()]
        runtime = _runtime(tmp_path, client, presenter)
        outcome = _run(runtime, lambda rt: delete_action(rt, confirm=False))

        assert outcome.ok
        assert runtime.store.snapshot().instance is None

    @patch("ephemera.cli.menu.console")
    def test_history_shows_output(self, console: MagicMock, tmp_path: Path, client: FakeClient) -> None:
        client.instances = [make_instance()]
        presenter = ScriptedPresenter(choose_answers=["setup.sh (create)"])
        runtime = _runtime(tmp_path, client, presenter)
        assert runtime.execution_log is not None
        runtime.execution_log.add_entry(42, "create", "setup.sh", "uid-1")
        runtime.execution_log.update_entry("uid-1", "completed", "hello\n")

        outcome = _run(runtime, history_action)

        assert outcome.ok
        assert presenter.choices[0][1] == ["setup.sh (create)"]
        console.print.assert_any_call("hello\n")


class TestConnect:
    def test_without_host(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        outcome = _run(_runtime(tmp_path, client, presenter), connect_action)
        assert outcome.status is ActionStatus.FAILED

    def test_with_host(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        runtime = _runtime(tmp_path, client, presenter, auto_connect=AutoConnect.NEW, auto_connect_host="evo")
        outcome = _run(runtime, connect_action)
        assert outcome.ok
        assert presenter.notifications[-1] == (
            NotifyLevel.INFO,
            "Connect from a new terminal with: ssh evo",
            (),
        )


# ---------------------------------------------------------------------------
# Menus
# ---------------------------------------------------------------------------

class TestMenus:
    def test_create_menu_labels(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        runtime = _runtime(tmp_path, client, presenter)
        labels = [o.label for o in create_menu_options(runtime)]
        assert labels == [
            "Refresh",
            "Create instance",
            "Create with default plan",
            "Edit default plan",
            "Connection settings",
        ]

    def test_control_menu_optional_entries(
        self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter
    ) -> None:
        client.instances = [make_instance()]
        runtime = _runtime(tmp_path, client, presenter, auto_connect_host="evo")
        asyncio.run(runtime.refresh())
        labels = [o.label for o in control_menu_options(runtime)]
        assert "Connect" in labels
        assert "Script history" not in labels

        assert runtime.execution_log is not None
        runtime.execution_log.add_entry(42, "create", "setup.sh", "uid-1")
        assert "Script history" in [o.label for o in control_menu_options(runtime)]

    def test_run_menu_exit(self, tmp_path: Path, client: FakeClient) -> None:
        presenter = ScriptedPresenter(choose_answers=["Exit"])
        runtime = _runtime(tmp_path, client, presenter)
        assert asyncio.run(run_menu(runtime)) == exit_codes.SUCCESS
        assert presenter.choices[0][0] == "ephemera: choose an action"

    def test_run_menu_runs_actions_and_starts_monitor(self, tmp_path: Path, client: FakeClient) -> None:
        client.instances = [make_instance()]
        presenter = ScriptedPresenter(choose_answers=["Delete instance", None])

        async def scenario(runtime: Runtime) -> int:
            try:
                return await run_menu(runtime)
            finally:
                runtime.close()

        runtime = _runtime(tmp_path, client, presenter, sleep=asyncio.sleep)
        presenter.notify_answers.append("Delete")
        code = asyncio.run(scenario(runtime))

        assert code == exit_codes.SUCCESS
        assert client.called("delete_instance") == [(42,)]
        assert presenter.choices[0][0] == "Instance 42: choose an action"
        assert presenter.choices[1][0] == "ephemera: choose an action"


# ---------------------------------------------------------------------------
# Command routing
# ---------------------------------------------------------------------------

class TestCommandRouting:
    def _main(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter, *argv: str) -> int:
        from ephemera.cli.app import main

        runtime = _runtime(tmp_path, client, presenter)
        with patch("ephemera.cli.runtime.build_runtime", return_value=runtime):
            return main(["--config", str(tmp_path / "config.yml"), *argv])

    @patch("ephemera.cli.menu.console")
    def test_status(self, _console: MagicMock, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.instances = [make_instance()]
        assert self._main(tmp_path, client, presenter, "status") == exit_codes.SUCCESS
        assert client.called("list_instances")

    def test_renew_with_hours(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.instances = [make_instance()]
        assert self._main(tmp_path, client, presenter, "renew", "--hours", "2") == exit_codes.SUCCESS
        assert client.called("renew_instance") == [(42, 2)]

    def test_failed_action_exit_code(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        assert self._main(tmp_path, client, presenter, "delete", "--yes") == exit_codes.GENERAL_ERROR

    def test_power_argument(self, tmp_path: Path, client: FakeClient, presenter: ScriptedPresenter) -> None:
        client.instances = [make_instance()]
        client.states.extend([stopped_state()])
        assert self._main(tmp_path, client, presenter, "power", "poweroff") == exit_codes.SUCCESS
        assert client.called("power_instance") == [(42, PowerAction.POWEROFF)]

    def test_unknown_power_action_is_rejected(self, tmp_path: Path) -> None:
        from ephemera.cli.app import main

        with pytest.raises(SystemExit) as exc_info:
            main(["power", "explode"])
        assert exc_info.value.code == 2
