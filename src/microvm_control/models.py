"""Data models for microvm-control.

Configuration objects are frozen pydantic models: created once before boot
and never mutated afterwards. Changes to a running VM go through the
management client as explicit protocol calls.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from microvm_control.exceptions import InvalidConfigurationError
from microvm_control.outcome import Failure, Outcome, Success
from microvm_control.settings import Settings

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?")

DRIVE_ID_PATTERN = r"^[A-Za-z0-9_]+$"


class VmStateTarget(str, Enum):
    """Target of a state update request (values are the wire representation)."""

    PAUSED = "Paused"
    RESUMED = "Resumed"


class BootSource(BaseModel):
    """Kernel, boot arguments and optional initrd."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kernel_image_path: Path
    boot_args: str | None = None
    initrd_path: Path | None = None


class MachineConfiguration(BaseModel):
    """Guest memory and vCPU resources."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mem_size_mib: int = Field(ge=1, description="Guest memory in MiB")
    vcpu_count: int = Field(ge=1, le=32, description="Number of virtual CPUs")
    smt: bool = Field(default=False, description="Simultaneous multithreading")


class Drive(BaseModel):
    """Block device attached to the guest."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    drive_id: str = Field(min_length=1, pattern=DRIVE_ID_PATTERN)
    is_root_device: bool
    path_on_host: Path
    is_read_only: bool = False


def configuration_violations(drives: tuple[Drive, ...] | list[Drive]) -> list[str]:
    """Return human-readable violations of the drive invariants (empty if valid).

    Exactly one drive must be the root device and drive ids must be unique.
    """
    violations: list[str] = []
    roots = [d.drive_id for d in drives if d.is_root_device]
    if len(roots) != 1:
        violations.append(f"exactly one root drive required, found {len(roots)}: {roots}")

    seen: set[str] = set()
    duplicates: list[str] = []
    for drive in drives:
        if drive.drive_id in seen and drive.drive_id not in duplicates:
            duplicates.append(drive.drive_id)
        seen.add(drive.drive_id)
    if duplicates:
        violations.append(f"duplicate drive ids: {duplicates}")
    return violations


class VmConfiguration(BaseModel):
    """Immutable description of boot source, machine resources and drives.

    Constructing directly raises pydantic.ValidationError on invalid input;
    use build() to get a Failure(InvalidConfiguration) outcome instead.

    Example:
        ```python
        outcome = VmConfiguration.build(
            boot_source={"kernel_image_path": "/opt/res/kernel", "boot_args": "console=ttyS0"},
            machine_configuration={"mem_size_mib": 128, "vcpu_count": 1},
            drives=[{"drive_id": "rootfs", "is_root_device": True, "path_on_host": "/opt/res/rootfs.ext4"}],
        )
        ```
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    boot_source: BootSource
    machine_configuration: MachineConfiguration
    drives: tuple[Drive, ...]

    @model_validator(mode="after")
    def _check_drives(self) -> VmConfiguration:
        violations = configuration_violations(self.drives)
        if violations:
            raise ValueError("; ".join(violations))
        return self

    @classmethod
    def build(cls, **data: Any) -> Outcome[VmConfiguration]:
        """Validate data into a configuration without raising."""
        try:
            return Success(cls.model_validate(data))
        except ValidationError as e:
            return Failure(
                InvalidConfigurationError(
                    f"Invalid VM configuration: {e.error_count()} error(s)",
                    context={"errors": [err["msg"] for err in e.errors()]},
                )
            )

    def check(self) -> Outcome[None]:
        """Re-check invariants (guards instances created via model_construct)."""
        violations = configuration_violations(self.drives)
        if violations:
            return Failure(InvalidConfigurationError("Invalid VM configuration", context={"errors": violations}))
        return Success(None)

    @property
    def root_drive(self) -> Drive:
        return next(d for d in self.drives if d.is_root_device)


class HypervisorInstall(BaseModel):
    """Resolved hypervisor installation (version tag and binary paths)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(description="Version tag, e.g. v1.7.0")
    hypervisor_binary: Path
    jailer_binary: Path | None = None

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not _VERSION_RE.match(v):
            raise ValueError(f"Unrecognized version tag: {v!r}")
        return v

    @property
    def api_version(self) -> tuple[int, int, int]:
        """Version tag parsed to (major, minor, patch)."""
        match = _VERSION_RE.match(self.version)
        if match is None:
            raise ValueError(f"Unrecognized version tag: {self.version!r}")
        major, minor, patch = match.groups()
        return int(major), int(minor), int(patch or 0)


class TransportOptions(BaseModel):
    """Control socket filename and directory.

    The default filename is a fresh uuid4 so concurrently running VMs never
    share a socket path. Reusing one TransportOptions for two live VMs makes
    the second boot fail with TransportError (address already in use).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    socket_filename: str = Field(default_factory=lambda: f"{uuid4().hex}.sock", min_length=1)
    socket_directory: Path = Field(default_factory=lambda: Settings().socket_directory)

    @field_validator("socket_filename")
    @classmethod
    def validate_socket_filename(cls, v: str) -> str:
        if "/" in v or "\x00" in v:
            raise ValueError("socket_filename must be a bare filename")
        return v

    @property
    def socket_path(self) -> Path:
        return self.socket_directory / self.socket_filename


class JailerOptions(BaseModel):
    """Sandboxing parameters; setting them on ControlConfig turns jailing on."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: int = Field(ge=0)
    gid: int = Field(ge=0)
    chroot_base_dir: Path

    def chroot_dir(self, hypervisor_binary: Path, vm_id: str) -> Path:
        """Jail directory: <base>/<exec file name>/<vm_id>."""
        return self.chroot_base_dir / hypervisor_binary.name / vm_id

    def root_dir(self, hypervisor_binary: Path, vm_id: str) -> Path:
        """Filesystem root seen by the jailed hypervisor."""
        return self.chroot_dir(hypervisor_binary, vm_id) / "root"


class VmInfo(BaseModel):
    """Instance information returned by the hypervisor.

    Unknown fields are ignored; missing required fields fail validation.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    state: str
    vmm_version: str
    app_name: str | None = None
