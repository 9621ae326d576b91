"""Wiring of settings, store, API client, presenter and services."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ephemera.cli.presenter import QuestionaryPresenter
from ephemera.core.config_store import ConfigStore
from ephemera.core.instance_service import RETRY, InstanceService
from ephemera.core.models import NotifyLevel
from ephemera.core.protocols import RemoteClient
from ephemera.core.refresh import CatalogRefresher, RefreshReport
from ephemera.exceptions import EphemeraError, UnauthorizedError
from ephemera.infra.execution_log import JsonExecutionLog
from ephemera.infra.http_client import HttpRemoteClient
from ephemera.infra.scripts import DirectoryScriptLibrary
from ephemera.settings import Settings, apply_settings

LOGGER = logging.getLogger(__name__)

RECHECK = "Re-check permissions"


@dataclass
class Runtime:
    """Everything a command needs, built once per process."""

    settings: Settings
    store: ConfigStore
    client: RemoteClient
    presenter: QuestionaryPresenter
    scripts: DirectoryScriptLibrary
    execution_log: JsonExecutionLog | None
    refresher: CatalogRefresher
    service: InstanceService

    async def refresh(self, *, catalogs: bool = True) -> RefreshReport | None:
        """Reload catalogs (optionally) and the instance list.

        Problems are reported through the presenter; nothing is raised
        for remote failures.
        """
        if not self.settings.has_credentials:
            await self.presenter.notify(
                NotifyLevel.WARNING,
                "No client id / secret configured. Set client_id and secret in "
                f"{self.settings.config_file} or export EPHEMERA_CLIENT_ID and EPHEMERA_SECRET.",
            )
            return None

        report = None
        if catalogs:
            report = await self.refresher.refresh()
            if report.error is not None:
                choice = await self.presenter.notify(
                    NotifyLevel.ERROR,
                    f"Could not confirm account permissions: {report.error}",
                    (RECHECK,),
                )
                if choice == RECHECK:
                    return await self.refresh(catalogs=catalogs)
            elif report.failed_catalogs:
                await self.presenter.notify(
                    NotifyLevel.WARNING,
                    f"Some catalogs could not be loaded: {', '.join(report.failed_catalogs)}",
                )

        try:
            instance = await self.service.refresh_instances()
        except UnauthorizedError as exc:
            await self.presenter.notify(NotifyLevel.ERROR, f"{exc} {exc.hint or ''}".strip())
            return report
        except EphemeraError as exc:
            choice = await self.presenter.notify(
                NotifyLevel.ERROR, f"Could not list instances: {exc}", (RETRY,),
            )
            if choice == RETRY:
                return await self.refresh(catalogs=False)
            return report

        if instance is not None:
            try:
                await self.service.refresh_state()
            except EphemeraError as exc:
                LOGGER.warning("could not fetch state of instance %s: %s", instance.id, exc)
        return report

    def close(self) -> None:
        self.store.close()


def build_runtime(
    settings: Settings,
    *,
    client: RemoteClient | None = None,
    presenter: QuestionaryPresenter | None = None,
) -> Runtime:
    """Assemble a :class:`Runtime` from resolved *settings*."""
    store = ConfigStore()
    apply_settings(store, settings)

    if client is None:
        client = HttpRemoteClient(
            settings.client_id,
            settings.secret,
            settings.base_url,
            timeout=settings.request_timeout,
        )
    presenter = presenter or QuestionaryPresenter()
    scripts = DirectoryScriptLibrary(settings.boot_script_dir)
    execution_log = JsonExecutionLog(settings.execution_log) if settings.execution_log else None

    service = InstanceService(
        client,
        store,
        presenter,
        scripts=scripts,
        execution_log=execution_log,
        monitor_interval=settings.status_refresh_seconds,
    )
    return Runtime(
        settings=settings,
        store=store,
        client=client,
        presenter=presenter,
        scripts=scripts,
        execution_log=execution_log,
        refresher=CatalogRefresher(client, store),
        service=service,
    )
