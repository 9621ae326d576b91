"""Catalog refresh: pulls permissions, resources, variants and keys.

Order matters: permissions come first and gate everything else.  Each
catalog fetch is isolated: a failure is logged and leaves only that
catalog empty, the rest of the refresh carries on.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field

from ephemera.core.config_store import ConfigStore, Writer
from ephemera.core.models import Permissions, Resource, SshKey, Variant
from ephemera.core.protocols import RemoteClient
from ephemera.exceptions import (
    EphemeraError,
    PermissionDeniedError,
    UnexpectedError,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RefreshReport:
    """What happened during one refresh."""

    skipped: bool = False
    """Credentials were missing; nothing was fetched."""

    has_permission: bool = False
    error: EphemeraError | None = None
    """Why permissions could not be confirmed, if they were not."""

    failed_catalogs: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.skipped and self.has_permission and not self.failed_catalogs


class CatalogRefresher:
    """Runs the refresh protocol against *client*, writing into *store*."""

    def __init__(self, client: RemoteClient, store: ConfigStore) -> None:
        self._client = client
        self._store = store

    async def refresh(self) -> RefreshReport:
        """Refresh every catalog; never raises for remote failures."""
        report = RefreshReport()
        if not self._store.snapshot().has_credentials:
            LOGGER.info("refresh skipped: no credentials configured")
            report.skipped = True
            return report

        permissions = await self._load_permissions(report)
        if permissions is None:
            self._store.update(
                {"has_permission": False, "permissions": Permissions()},
                writer=Writer.REFRESH,
            )
            return report

        report.has_permission = True
        self._store.update(
            {"has_permission": True, "permissions": permissions},
            writer=Writer.REFRESH,
        )

        resources = await self._load_resources(permissions, report)
        self._store.update({"resources": resources}, writer=Writer.REFRESH)

        keys = await self._load_keys(report)
        self._store.update({"keys": keys}, writer=Writer.REFRESH)
        return report

    # ------------------------------------------------------------------
    # Individual catalogs
    # ------------------------------------------------------------------

    async def _load_permissions(self, report: RefreshReport) -> Permissions | None:
        try:
            return await self._client.get_permissions()
        except PermissionDeniedError as exc:
            LOGGER.warning("account has no instance permission: %s", exc)
            report.error = exc
        except EphemeraError as exc:
            LOGGER.warning("permission check failed: %s", exc)
            report.error = exc
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("unexpected error while checking permissions")
            report.error = UnexpectedError(f"{type(exc).__name__}: {exc}")
        return None

    async def _load_resources(
        self,
        permissions: Permissions,
        report: RefreshReport,
    ) -> tuple[Resource, ...]:
        try:
            resources = await self._client.list_resources()
        except Exception as exc:  # noqa: BLE001
            self._record_failure(report, "resources", exc)
            return ()

        if permissions.allowed_resource_ids:
            allowed = set(permissions.allowed_resource_ids)
            resources = [r for r in resources if r.id in allowed]

        loaded = await asyncio.gather(
            *(self._with_variants(resource, report) for resource in resources),
        )
        return tuple(loaded)

    async def _with_variants(self, resource: Resource, report: RefreshReport) -> Resource:
        try:
            variants = await self._client.list_resource_variants(resource.id)
        except Exception as exc:  # noqa: BLE001
            self._record_failure(report, f"variants of resource {resource.id}", exc)
            return dataclasses.replace(resource, variants=())
        return dataclasses.replace(resource, variants=_allowed_variants(resource, variants))

    async def _load_keys(self, report: RefreshReport) -> tuple[SshKey, ...]:
        try:
            return tuple(await self._client.list_keys())
        except Exception as exc:  # noqa: BLE001
            self._record_failure(report, "keys", exc)
            return ()

    @staticmethod
    def _record_failure(report: RefreshReport, catalog: str, exc: Exception) -> None:
        report.failed_catalogs.append(catalog)
        if isinstance(exc, EphemeraError):
            LOGGER.warning("could not load %s: %s", catalog, exc)
        else:
            LOGGER.exception("unexpected error while loading %s", catalog)


def _allowed_variants(resource: Resource, variants: list[Variant]) -> tuple[Variant, ...]:
    """Apply the resource's embedded allow-list, if it has one."""
    if not resource.allowed_variant_ids:
        return tuple(variants)
    allowed = set(resource.allowed_variant_ids)
    return tuple(v for v in variants if v.id in allowed)
