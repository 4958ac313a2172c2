"""Per-instance control configuration for microvm-control.

ControlConfig carries the timeouts and policies a MicroVM uses for boot,
requests, console commands and shutdown.

Example:
    ```python
    from microvm_control import ControlConfig, MicroVM

    # Defaults
    vm = MicroVM(configuration, install, TransportOptions())

    # Custom
    config = ControlConfig(boot_timeout_seconds=30, boot_mode=BootMode.CONFIG_FILE)
    vm = MicroVM(configuration, install, TransportOptions(), config=config)

    # From MICROVM_CONTROL_* environment variables
    vm = MicroVM(configuration, install, TransportOptions(), config=ControlConfig.from_settings())
    ```
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from microvm_control import constants
from microvm_control.models import JailerOptions
from microvm_control.settings import Settings


class BootMode(str, Enum):
    """How the configuration reaches the hypervisor at boot."""

    API = "api"
    """Push machine-config, boot-source and drives over the API, then InstanceStart."""

    CONFIG_FILE = "config_file"
    """Write a JSON config file and pass --config-file; the hypervisor starts the guest itself."""


class ControlConfig(BaseModel):
    """Configuration for one MicroVM.

    Attributes:
        boot_timeout_seconds: Bound on the whole boot. On expiry the boot is
            rolled back and reported as Failure(BootTimeout).
        shutdown_grace_seconds: Wait after Ctrl+Alt+Del / SIGTERM before SIGKILL.
        shutdown_timeout_seconds: Bound on the whole shutdown; the process is
            force killed before shutdown returns if this expires.
        request_timeout_seconds: Per-request timeout on the control socket.
        command_timeout_seconds: Default timeout for console commands.
        console_ring_lines: Console lines retained for diagnostics.
        boot_mode: How the configuration is delivered to the hypervisor.
        graceful_shutdown: Send Ctrl+Alt+Del to a running guest first.
        jailer: Jailer parameters; when set the hypervisor runs under the
            install's jailer binary, otherwise it runs unjailed.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    boot_timeout_seconds: float = Field(default=constants.DEFAULT_BOOT_TIMEOUT_SECONDS, gt=0)
    shutdown_grace_seconds: float = Field(default=constants.DEFAULT_SHUTDOWN_GRACE_SECONDS, ge=0)
    shutdown_timeout_seconds: float = Field(default=constants.DEFAULT_SHUTDOWN_TIMEOUT_SECONDS, gt=0)
    request_timeout_seconds: float = Field(default=constants.DEFAULT_REQUEST_TIMEOUT_SECONDS, gt=0)
    command_timeout_seconds: float = Field(default=constants.DEFAULT_COMMAND_TIMEOUT_SECONDS, gt=0)
    console_ring_lines: int = Field(default=constants.CONSOLE_RING_LINES, ge=1)
    boot_mode: BootMode = BootMode.API
    graceful_shutdown: bool = True
    jailer: JailerOptions | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ControlConfig:
        """Build from environment-driven Settings."""
        settings = settings or Settings()
        return cls(
            boot_timeout_seconds=settings.boot_timeout_seconds,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
            shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
            request_timeout_seconds=settings.request_timeout_seconds,
            command_timeout_seconds=settings.command_timeout_seconds,
            graceful_shutdown=settings.graceful_shutdown,
            jailer=JailerOptions(
                uid=settings.jailer_uid,
                gid=settings.jailer_gid,
                chroot_base_dir=Path(settings.jailer_chroot_base),
            )
            if settings.jailer_enabled
            else None,
        )
