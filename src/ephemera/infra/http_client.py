"""requests-backed implementation of :class:`~ephemera.core.protocols.RemoteClient`.

This module is the **only** place in the codebase that imports
``requests``.  Every requests exception and every non-success response is
mapped to a :class:`~ephemera.exceptions.RemoteError` subclass here; nothing
raw escapes the infrastructure boundary.

The API wraps every payload in an envelope::

    {"code": 200, "message": "ok", "data": ...}

Blocking calls run in a worker thread via :func:`asyncio.to_thread` so the
event loop stays responsive while a request is in flight.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from ephemera.core.models import (
    CommandResult,
    CreatedInstance,
    Instance,
    InstanceState,
    MemoryStats,
    Permissions,
    PowerAction,
    Resource,
    SshKey,
    TrafficStats,
    Variant,
)
from ephemera.exceptions import (
    CommandPendingError,
    EnvironmentError,
    PermissionDeniedError,
    RemoteError,
    TransientError,
    UnauthorizedError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_URL = "https://app.alice.ws/cli/v1"
PERMISSIONS_PATH = "/evo/permissions"

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_KIB_PER_GB = 1024 * 1024
_BYTES_PER_GB = 1024 * 1024 * 1024


def _import_requests() -> Any:
    """Import requests lazily so ``--help`` works without it."""
    try:
        import requests
    except ModuleNotFoundError as exc:
        raise EnvironmentError(
            "requests is not installed. Install with: pip install requests",
        ) from exc
    return requests


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_status(path: str, status: int, message: str = "") -> RemoteError | None:
    """Map an HTTP status to a typed error, or ``None`` for success.

    ==========================  =========================
    Status                      Error
    ==========================  =========================
    200                         none
    202                         :class:`CommandPendingError`
    400 on the permissions URL  :class:`PermissionDeniedError`
    401                         :class:`UnauthorizedError`
    403                         :class:`PermissionDeniedError`
    5xx                         :class:`TransientError`
    anything else               :class:`RemoteError`
    ==========================  =========================
    """
    detail = message or f"HTTP {status}"
    if status == 200:
        return None
    if status == 202:
        return CommandPendingError(f"Result not ready yet ({detail}).", status=status)
    if status == 401:
        return UnauthorizedError(
            f"Authentication failed ({detail}).",
            hint="Check the client id and secret in your configuration.",
            status=status,
        )
    if status == 403 or (status == 400 and path == PERMISSIONS_PATH):
        return PermissionDeniedError(
            f"Your account does not have permission for ephemeral instances ({detail}).",
            hint="Check your account permissions, then re-check.",
            status=status,
        )
    if status >= 500:
        return TransientError(f"Server error on {path} ({detail}).", status=status)
    return RemoteError(f"Request to {path} failed ({detail}).", status=status)


class HttpRemoteClient:
    """Concrete :class:`RemoteClient` talking to the provisioning API.

    Usage::

        client = HttpRemoteClient(client_id, secret)
        instances = await client.list_instances()

    Parameters
    ----------
    client_id, secret:
        API credentials, sent as ``Authorization: Bearer <id>:<secret>``.
    base_url:
        API root without a trailing slash.
    session:
        Pre-built ``requests.Session`` (tests pass a mock).
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        session: Any | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._token = f"{client_id}:{secret}"
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    async def list_instances(self) -> list[Instance]:
        return await self._call("GET", "/evo/instance/list", parse=_parse_instances)

    async def get_instance_state(self, instance_id: int) -> InstanceState:
        return await self._call(
            "GET", "/evo/instance/state", params={"id": instance_id}, parse=_parse_state,
        )

    async def create_instance(
        self,
        resource_id: int,
        variant_id: int,
        hours: int,
        key_id: int | None = None,
        script_content: str | None = None,
    ) -> CreatedInstance:
        payload: dict[str, object] = {"product_id": resource_id, "os_id": variant_id, "time": hours}
        if key_id is not None:
            payload["ssh_key_id"] = key_id
        if script_content is not None:
            payload["boot_script"] = _encode_script(script_content)
        return await self._call("POST", "/evo/instance/deploy", payload=payload, parse=_parse_created)

    async def rebuild_instance(
        self,
        instance_id: int,
        variant_id: int,
        key_id: int | None = None,
        script_content: str | None = None,
    ) -> str | None:
        payload: dict[str, object] = {"id": instance_id, "os_id": variant_id}
        if key_id is not None:
            payload["ssh_key_id"] = key_id
        if script_content is not None:
            payload["boot_script"] = _encode_script(script_content)
        return await self._call("POST", "/evo/instance/rebuild", payload=payload, parse=_parse_script_uid)

    async def delete_instance(self, instance_id: int) -> None:
        await self._call("POST", "/evo/instance/destroy", payload={"id": instance_id})

    async def power_instance(self, instance_id: int, action: PowerAction) -> None:
        await self._call(
            "POST", "/evo/instance/power", payload={"id": instance_id, "action": action.value},
        )

    async def renew_instance(self, instance_id: int, hours: int) -> None:
        await self._call("POST", "/evo/instance/renewal", payload={"id": instance_id, "time": hours})

    async def get_command_result(self, instance_id: int, command_uid: str) -> CommandResult:
        return await self._call(
            "GET",
            "/evo/instance/command-result",
            params={"id": instance_id, "uid": command_uid},
            parse=_parse_command_result,
        )

    # ------------------------------------------------------------------
    # Catalogs
    # ------------------------------------------------------------------

    async def list_resources(self) -> list[Resource]:
        return await self._call("GET", "/evo/plan/list", parse=_parse_resources)

    async def list_resource_variants(self, resource_id: int) -> list[Variant]:
        return await self._call(
            "GET", "/evo/plan/os", params={"plan_id": resource_id}, parse=_parse_variants,
        )

    async def list_keys(self) -> list[SshKey]:
        return await self._call("GET", "/account/ssh-key/list", parse=_parse_keys)

    async def get_permissions(self) -> Permissions:
        return await self._call("GET", PERMISSIONS_PATH, parse=_parse_permissions)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        payload: Mapping[str, object] | None = None,
        parse: Callable[[Any], T] | None = None,
    ) -> Any:
        """Run one request in a worker thread and parse its ``data``.

        Raises
        ------
        RemoteError
            For failed requests, and for payloads *parse* cannot read.
        """
        data = await asyncio.to_thread(self._request, method, path, params, payload)
        if parse is None:
            return data
        try:
            return parse(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            LOGGER.debug("malformed payload from %s: %r", path, data)
            raise RemoteError(
                f"Unexpected response from {path} ({type(exc).__name__}: {exc}).",
            ) from exc

    def _get_session(self) -> Any:
        if self._session is None:
            self._session = _import_requests().Session()
        return self._session

    def _request(
        self,
        method: str,
        path: str,
        params: Mapping[str, object] | None,
        payload: Mapping[str, object] | None,
    ) -> Any:
        """Perform one request and unwrap its envelope.

        Raises
        ------
        RemoteError
            Classified per :func:`classify_status`; connection errors and
            timeouts are :class:`TransientError`.
        """
        requests = _import_requests()
        session = self._get_session()
        url = f"{self._base_url}{path}"
        LOGGER.debug("%s %s params=%s", method, url, params)
        try:
            response = session.request(
                method,
                url,
                params=dict(params) if params else None,
                json=dict(payload) if payload is not None else None,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=self._timeout,
            )
        except requests.exceptions.Timeout as exc:
            raise TransientError(
                f"Request to {path} timed out after {self._timeout:.0f} seconds.",
            ) from exc
        except requests.exceptions.ConnectionError as exc:
            raise TransientError(
                f"Could not reach the API at {self._base_url}.",
                hint="Check your network connection.",
            ) from exc
        except requests.exceptions.RequestException as exc:
            raise RemoteError(f"Request to {path} failed: {exc}") from exc

        return _unwrap(path, response)


def _unwrap(path: str, response: Any) -> Any:
    status = int(response.status_code)
    try:
        body = response.json()
    except ValueError:
        body = None

    message = ""
    if isinstance(body, Mapping):
        message = str(body.get("message") or "")

    error = classify_status(path, status, message)
    if error is not None:
        LOGGER.debug("%s -> %s (%s)", path, status, error.kind.value)
        raise error

    if not isinstance(body, Mapping):
        raise RemoteError(f"Response from {path} is not a JSON object.", status=status)
    code = body.get("code", 200)
    if code != 200:
        raise RemoteError(
            f"Request to {path} was rejected: {message or f'code {code}'}",
            status=status,
        )
    return body.get("data")


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def _as_list(data: Any) -> list[Mapping[str, Any]]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise RemoteError(f"Expected a list in the API response, got {type(data).__name__}.")
    return [item for item in data if isinstance(item, Mapping)]


def _as_mapping(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise RemoteError(f"Expected an object in the API response, got {type(data).__name__}.")
    return data


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _split_ids(value: object) -> tuple[int, ...]:
    """Parse ``"1|2|3"`` (or a list) into integer ids."""
    if value is None or value == "":
        return ()
    parts = value.split("|") if isinstance(value, str) else list(value)  # type: ignore[call-overload]
    return tuple(int(part) for part in parts if str(part).strip())


def _parse_timestamp(value: object) -> datetime | None:
    """Parse an API timestamp; naive values are taken as UTC."""
    if not value:
        return None
    text = str(value)
    try:
        parsed = datetime.strptime(text, _TIMESTAMP_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            LOGGER.warning("unparseable timestamp %r", text)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_instances(data: Any) -> list[Instance]:
    return [_parse_instance(item) for item in _as_list(data)]


def _parse_created(data: Any) -> CreatedInstance:
    body = _as_mapping(data)
    return CreatedInstance(
        instance=_parse_instance(body),
        command_uid=_optional_str(body.get("boot_script_uid")),
    )


def _parse_script_uid(data: Any) -> str | None:
    if isinstance(data, Mapping):
        return _optional_str(data.get("boot_script_uid"))
    return None


def _parse_command_result(data: Any) -> CommandResult:
    if isinstance(data, Mapping):
        return CommandResult(output=_optional_str(data.get("output")))
    return CommandResult(output=_optional_str(data))


def _parse_resources(data: Any) -> list[Resource]:
    return [_parse_resource(item) for item in _as_list(data)]


def _parse_variants(data: Any) -> list[Variant]:
    """Flatten OS groups into variants tagged with their group name."""
    variants: list[Variant] = []
    for group in _as_list(data):
        group_name = str(group.get("group_name", ""))
        for item in group.get("os_list") or []:
            variants.append(Variant(id=int(item["id"]), name=str(item["name"]), group=group_name))
    return variants


def _parse_keys(data: Any) -> list[SshKey]:
    return [
        SshKey(
            id=int(item["id"]),
            name=str(item.get("name", "")),
            created_at=str(item.get("created_at") or ""),
        )
        for item in _as_list(data)
    ]


def _parse_permissions(data: Any) -> Permissions:
    body = _as_mapping(data)
    max_time = body.get("max_time")
    return Permissions(
        max_hours=int(max_time) if max_time not in (None, "") else None,
        allowed_resource_ids=_split_ids(body.get("allow_packages")),
    )


def _parse_instance(data: Mapping[str, Any]) -> Instance:
    return Instance(
        id=int(data["id"]),
        resource_id=int(data.get("plan_id") or 0),
        created_at=_parse_timestamp(data.get("creation_at")),
        expires_at=_parse_timestamp(data.get("expiration_at")),
        state=str(data.get("status") or "unknown"),
    )


def _parse_resource(data: Mapping[str, Any]) -> Resource:
    return Resource(
        id=int(data["id"]),
        name=str(data.get("name", "")),
        cpu=int(data.get("cpu") or 0),
        memory_mb=int(data.get("memory") or 0),
        disk_gb=int(data.get("disk") or 0),
        allowed_variant_ids=_split_ids(data.get("os")),
    )


def _parse_state(data: Any) -> InstanceState:
    """Normalise a state payload: memory from kB and traffic from bytes, both to GB."""
    data = _as_mapping(data)
    status = str(data.get("status") or "pending")
    if status != "complete":
        return InstanceState(status=status)

    block = data.get("state") or {}
    memory = block.get("memory") or {}
    traffic = block.get("traffic") or {}
    return InstanceState(
        status=status,
        state=str(block.get("state") or "unknown"),
        cpu=float(block.get("cpu") or 0.0),
        memory=MemoryStats(
            total=_scaled(memory.get("memtotal"), _KIB_PER_GB),
            free=_scaled(memory.get("memfree"), _KIB_PER_GB),
            available=_scaled(memory.get("memavailable"), _KIB_PER_GB),
        ),
        traffic=TrafficStats(
            inbound=_scaled(traffic.get("in"), _BYTES_PER_GB),
            outbound=_scaled(traffic.get("out"), _BYTES_PER_GB),
            total=_scaled(traffic.get("total"), _BYTES_PER_GB),
        ),
    )


def _scaled(value: object, divisor: int) -> float:
    try:
        return round(float(value or 0) / divisor, 2)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def _encode_script(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")
