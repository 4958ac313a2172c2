"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from microvm_control import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with MICROVM_CONTROL_ prefix.
    Example: MICROVM_CONTROL_BOOT_TIMEOUT_SECONDS=30
    """

    model_config = SettingsConfigDict(
        env_prefix="MICROVM_CONTROL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Sockets
    socket_directory: Path = Path("/tmp")

    # Timeouts
    boot_timeout_seconds: float = Field(default=constants.DEFAULT_BOOT_TIMEOUT_SECONDS, gt=0)
    shutdown_grace_seconds: float = Field(default=constants.DEFAULT_SHUTDOWN_GRACE_SECONDS, ge=0)
    shutdown_timeout_seconds: float = Field(default=constants.DEFAULT_SHUTDOWN_TIMEOUT_SECONDS, gt=0)
    request_timeout_seconds: float = Field(default=constants.DEFAULT_REQUEST_TIMEOUT_SECONDS, gt=0)
    command_timeout_seconds: float = Field(default=constants.DEFAULT_COMMAND_TIMEOUT_SECONDS, gt=0)

    # Jailer
    jailer_enabled: bool = False
    """Run the hypervisor under the install's jailer binary."""
    jailer_uid: int = constants.JAILER_DEFAULT_UID
    jailer_gid: int = constants.JAILER_DEFAULT_GID
    jailer_chroot_base: Path = Path("/srv/jailer")

    graceful_shutdown: bool = True
    """Send Ctrl+Alt+Del to a running guest before signalling the process."""
