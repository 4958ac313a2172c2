"""Control API client (raw protocol layer).

Encodes requests, sends them over a ControlTransport, and decodes responses
into models, raising typed errors. The public, Outcome-returning facade is
ManagementClient (management.py).

Serialization:
    The protocol carries no correlation identifiers, so responses are matched
    to requests purely by order. _execute() holds an asyncio lock around each
    round trip: at most one request is in flight per transport and
    concurrent callers queue.

Errors:
    - TransportError: channel closed, unreachable, timed out (from transport)
    - ProtocolError: non-2xx status (fault_message attached), undecodable
      body, or body missing required fields
"""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from microvm_control import constants
from microvm_control._logging import get_logger
from microvm_control.api_protocol import (
    ApiErrorBody,
    ApiSchema,
    BootSourceBody,
    DriveBody,
    DrivePatchBody,
    InstanceActionBody,
    MachineConfigResponse,
    VmStateBody,
    machine_config_body,
)
from microvm_control.exceptions import ProtocolError
from microvm_control.models import BootSource, Drive, MachineConfiguration, VmInfo, VmStateTarget
from microvm_control.transport import ControlTransport, TransportResponse

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _body_preview(body: bytes) -> str:
    return body[: constants.API_ERROR_BODY_PREVIEW_BYTES].decode(errors="replace")


class ControlApiClient:
    """Protocol client bound to one control transport.

    Attributes:
        schema: Endpoint schema selected from the hypervisor version
    """

    __slots__ = (
        "_lock",
        "_request_timeout",
        "_transport",
        "_vm_id",
        "schema",
    )

    def __init__(
        self,
        transport: ControlTransport,
        schema: ApiSchema,
        *,
        request_timeout: float = constants.DEFAULT_REQUEST_TIMEOUT_SECONDS,
        vm_id: str = "",
    ) -> None:
        self._transport = transport
        self.schema = schema
        self._request_timeout = request_timeout
        self._vm_id = vm_id
        self._lock = asyncio.Lock()

    @property
    def transport(self) -> ControlTransport:
        return self._transport

    async def close(self) -> None:
        await self._transport.close()

    # -------------------------------------------------------------------------
    # Protocol core
    # -------------------------------------------------------------------------

    async def _execute(self, method: str, path: str, body: dict[str, Any] | None = None) -> TransportResponse:
        """Send one request (serialized) and check its status.

        Raises:
            TransportError: From the transport.
            ProtocolError: Non-2xx response.
        """
        async with self._lock:
            response = await self._transport.request(method, path, body, timeout=self._request_timeout)

        if not response.ok:
            fault: str | None
            try:
                fault = ApiErrorBody.model_validate_json(response.body).fault_message
            except ValidationError:
                fault = None
            raise ProtocolError(
                f"{method} {path} failed with status {response.status_code}"
                + (f": {fault}" if fault else ""),
                {"vm_id": self._vm_id, "method": method, "path": path, "body": _body_preview(response.body)},
                status_code=response.status_code,
                fault_message=fault,
            )
        return response

    async def _query(self, path: str, model: type[M]) -> M:
        """GET path and validate the body into model (fail closed on missing fields)."""
        response = await self._execute("GET", path)
        try:
            return model.model_validate_json(response.body)
        except ValidationError as e:
            raise ProtocolError(
                f"Malformed response from GET {path}: {e.error_count()} error(s)",
                {
                    "vm_id": self._vm_id,
                    "path": path,
                    "errors": [err["msg"] for err in e.errors()],
                    "body": _body_preview(response.body),
                },
                status_code=response.status_code,
            ) from e

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_info(self) -> VmInfo:
        return await self._query(self.schema.info_path, VmInfo)

    async def get_version(self) -> str:
        """Hypervisor software version reported by the version endpoint."""
        response = await self._execute("GET", self.schema.version_path)
        try:
            payload = _VersionPayload.model_validate_json(response.body)
        except ValidationError as e:
            raise ProtocolError(
                f"Malformed response from GET {self.schema.version_path}",
                {"vm_id": self._vm_id, "body": _body_preview(response.body)},
                status_code=response.status_code,
            ) from e
        version = (payload.model_extra or {}).get(self.schema.version_field)
        if not isinstance(version, str):
            raise ProtocolError(
                f"Version response missing {self.schema.version_field!r}",
                {"vm_id": self._vm_id, "body": _body_preview(response.body)},
                status_code=response.status_code,
            )
        return version

    async def get_machine_configuration(self) -> MachineConfiguration:
        """Current machine configuration.

        Raises:
            ProtocolError: Body malformed, or values outside MachineConfiguration bounds.
        """
        path = self.schema.machine_config_path
        response = await self._query(path, MachineConfigResponse)
        try:
            return response.to_model()
        except ValidationError as e:
            raise ProtocolError(
                f"Invalid machine configuration from GET {path}: {e.error_count()} error(s)",
                {"vm_id": self._vm_id, "path": path, "errors": [err["msg"] for err in e.errors()]},
            ) from e

    # -------------------------------------------------------------------------
    # Configuration (pre-boot)
    # -------------------------------------------------------------------------

    async def put_machine_configuration(self, config: MachineConfiguration) -> None:
        await self._execute("PUT", self.schema.machine_config_path, machine_config_body(config, self.schema))

    async def put_boot_source(self, source: BootSource) -> None:
        body = BootSourceBody.from_model(source).model_dump(exclude_none=True)
        await self._execute("PUT", self.schema.boot_source_path, body)

    async def put_drive(self, drive: Drive) -> None:
        body = DriveBody.from_model(drive).model_dump()
        await self._execute("PUT", self.schema.drive_path(drive.drive_id), body)

    # -------------------------------------------------------------------------
    # Runtime mutations
    # -------------------------------------------------------------------------

    async def patch_drive(self, drive_id: str, path_on_host: str) -> None:
        body = DrivePatchBody(drive_id=drive_id, path_on_host=path_on_host).model_dump()
        await self._execute("PATCH", self.schema.drive_path(drive_id), body)

    async def patch_vm_state(self, target: VmStateTarget) -> None:
        body = VmStateBody(state=target).model_dump(mode="json")
        await self._execute("PATCH", self.schema.vm_state_path, body)

    async def instance_start(self) -> None:
        await self._action("InstanceStart")

    async def send_ctrl_alt_del(self) -> None:
        await self._action("SendCtrlAltDel")

    async def _action(self, action_type: str) -> None:
        body = InstanceActionBody.model_validate({"action_type": action_type}).model_dump()
        logger.debug("Instance action", extra={"vm_id": self._vm_id, "action_type": action_type})
        await self._execute("PUT", self.schema.actions_path, body)


class _VersionPayload(BaseModel):
    """Version response; the field name varies by schema, so extras are kept."""

    model_config = ConfigDict(extra="allow")
