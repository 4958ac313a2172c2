"""Control API protocol models.

Defines request bodies, response models and the version-keyed endpoint
schema for the hypervisor's control API (JSON over HTTP/1.1 on a Unix
socket).

Responses tolerate unknown fields and fail closed on missing required
fields: every response model uses ``extra="ignore"`` with required
fields left without defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from microvm_control._logging import get_logger
from microvm_control.models import BootSource, Drive, MachineConfiguration, VmConfiguration, VmStateTarget

logger = get_logger(__name__)

# ============================================================================
# Endpoint schema
# ============================================================================


@dataclass(frozen=True, slots=True)
class ApiSchema:
    """Endpoint paths and field names for one range of hypervisor versions."""

    min_version: tuple[int, int, int]
    info_path: str = "/"
    version_path: str = "/version"
    machine_config_path: str = "/machine-config"
    boot_source_path: str = "/boot-source"
    drive_path_template: str = "/drives/{drive_id}"
    vm_state_path: str = "/vm"
    actions_path: str = "/actions"
    version_field: str = "firecracker_version"
    smt_field: str = "smt"

    def drive_path(self, drive_id: str) -> str:
        return self.drive_path_template.format(drive_id=drive_id)


# Ordered oldest first. 1.0 renamed machine-config "ht_enabled" to "smt".
API_SCHEMAS: tuple[ApiSchema, ...] = (
    ApiSchema(min_version=(0, 24, 0), smt_field="ht_enabled"),
    ApiSchema(min_version=(1, 0, 0)),
)


def schema_for_version(version: tuple[int, int, int]) -> ApiSchema:
    """Select the endpoint schema for a hypervisor version.

    Versions older than the oldest known schema use it; versions with a
    newer major than any known schema use the newest. Both log a warning.
    """
    oldest, newest = API_SCHEMAS[0], API_SCHEMAS[-1]
    if version < oldest.min_version:
        logger.warning(
            "Hypervisor version older than any known API schema, using oldest",
            extra={"version": ".".join(map(str, version))},
        )
        return oldest
    if version[0] > newest.min_version[0]:
        logger.warning(
            "Hypervisor version newer than any known API schema, using newest",
            extra={"version": ".".join(map(str, version))},
        )
        return newest
    return next(s for s in reversed(API_SCHEMAS) if version >= s.min_version)


# ============================================================================
# Request bodies
# ============================================================================


class BootSourceBody(BaseModel):
    """PUT boot-source body."""

    kernel_image_path: str
    boot_args: str | None = None
    initrd_path: str | None = None

    @classmethod
    def from_model(cls, source: BootSource) -> BootSourceBody:
        return cls(
            kernel_image_path=str(source.kernel_image_path),
            boot_args=source.boot_args,
            initrd_path=str(source.initrd_path) if source.initrd_path else None,
        )


class DriveBody(BaseModel):
    """PUT drives/{drive_id} body."""

    drive_id: str
    path_on_host: str
    is_root_device: bool
    is_read_only: bool

    @classmethod
    def from_model(cls, drive: Drive) -> DriveBody:
        return cls(
            drive_id=drive.drive_id,
            path_on_host=str(drive.path_on_host),
            is_root_device=drive.is_root_device,
            is_read_only=drive.is_read_only,
        )


class DrivePatchBody(BaseModel):
    """PATCH drives/{drive_id} body (swap backing file while running)."""

    drive_id: str
    path_on_host: str


class VmStateBody(BaseModel):
    """PATCH vm body."""

    state: VmStateTarget


class InstanceActionBody(BaseModel):
    """PUT actions body."""

    action_type: Literal["InstanceStart", "SendCtrlAltDel"]


def machine_config_body(config: MachineConfiguration, schema: ApiSchema) -> dict[str, Any]:
    """PUT machine-config body with version-specific field names."""
    return {
        "vcpu_count": config.vcpu_count,
        "mem_size_mib": config.mem_size_mib,
        schema.smt_field: config.smt,
    }


def render_config_file(configuration: VmConfiguration, schema: ApiSchema) -> dict[str, Any]:
    """Render the JSON document passed to the hypervisor via --config-file."""
    return {
        "boot-source": BootSourceBody.from_model(configuration.boot_source).model_dump(exclude_none=True),
        "machine-config": machine_config_body(configuration.machine_configuration, schema),
        "drives": [DriveBody.from_model(d).model_dump() for d in configuration.drives],
    }


# ============================================================================
# Response models
# ============================================================================


class ApiErrorBody(BaseModel):
    """Error body returned with non-2xx statuses."""

    model_config = ConfigDict(extra="ignore")

    fault_message: str = Field(description="Hypervisor-reported fault text")


class MachineConfigResponse(BaseModel):
    """GET machine-config response. SMT field name varies by version."""

    model_config = ConfigDict(extra="ignore")

    vcpu_count: int
    mem_size_mib: int
    smt: bool = False
    ht_enabled: bool | None = None

    def to_model(self) -> MachineConfiguration:
        smt = self.ht_enabled if self.ht_enabled is not None else self.smt
        return MachineConfiguration(mem_size_mib=self.mem_size_mib, vcpu_count=self.vcpu_count, smt=smt)
