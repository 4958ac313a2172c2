"""microvm-control: lifecycle and control-plane client for Firecracker-style microVMs.

Launches the hypervisor (optionally under a jailer) bound to a unique
control socket, drives it over its HTTP control API, runs commands on the
serial console and tears everything down again. Every public operation
returns an Outcome instead of raising.

Quick Start:
    ```python
    from microvm_control import HypervisorInstall, MicroVM, TransportOptions, VmConfiguration

    configuration = VmConfiguration.build(
        boot_source={"kernel_image_path": "/opt/res/vmlinux", "boot_args": "console=ttyS0 reboot=k panic=1"},
        machine_configuration={"mem_size_mib": 256, "vcpu_count": 2},
        drives=[{"drive_id": "rootfs", "is_root_device": True, "path_on_host": "/opt/res/rootfs.ext4"}],
    ).unwrap()
    install = HypervisorInstall(version="v1.7.0", hypervisor_binary="/usr/local/bin/firecracker")

    async with MicroVM(configuration, install, TransportOptions()) as vm:
        (await vm.boot()).unwrap()
        info = (await vm.management.get_info()).unwrap()
        output = (await vm.tty_client.run_buffered_command("echo hello")).unwrap()
    ```

Pause/Resume:
    ```python
    from microvm_control import VmStateTarget

    outcome = await vm.management.update_state(VmStateTarget.PAUSED)
    outcome.if_error(lambda err: print(f"pause failed: {err.message}"))
    ```

Requirements:
    - Firecracker (and optionally its jailer) on a Linux host with KVM
    - Python 3.12+
"""

from microvm_control._logging import configure_logging
from microvm_control.config import BootMode, ControlConfig
from microvm_control.exceptions import (
    BootTimeoutError,
    CommandTimeoutError,
    ErrorKind,
    IllegalStateError,
    InvalidCommandError,
    InvalidConfigurationError,
    OutcomeUnwrapError,
    PermanentError,
    ProtocolError,
    SpawnError,
    TerminalStateError,
    TransientError,
    TransportError,
    VmControlError,
)
from microvm_control.host import Host, LocalHost, ProcessHandle
from microvm_control.microvm import MicroVM
from microvm_control.models import (
    BootSource,
    Drive,
    HypervisorInstall,
    JailerOptions,
    MachineConfiguration,
    TransportOptions,
    VmConfiguration,
    VmInfo,
    VmStateTarget,
)
from microvm_control.outcome import Failure, Outcome, SoftFailure, Success, collect
from microvm_control.settings import Settings
from microvm_control.transport import ControlTransport, TransportResponse, UnixSocketTransport
from microvm_control.vm_types import VmState

__all__ = [
    "BootMode",
    "BootSource",
    "BootTimeoutError",
    "CommandTimeoutError",
    "ControlConfig",
    "ControlTransport",
    "Drive",
    "ErrorKind",
    "Failure",
    "Host",
    "HypervisorInstall",
    "IllegalStateError",
    "InvalidCommandError",
    "InvalidConfigurationError",
    "JailerOptions",
    "LocalHost",
    "MachineConfiguration",
    "MicroVM",
    "Outcome",
    "OutcomeUnwrapError",
    "PermanentError",
    "ProcessHandle",
    "ProtocolError",
    "Settings",
    "SoftFailure",
    "SpawnError",
    "Success",
    "TerminalStateError",
    "TransientError",
    "TransportError",
    "TransportOptions",
    "TransportResponse",
    "UnixSocketTransport",
    "VmConfiguration",
    "VmControlError",
    "VmInfo",
    "VmState",
    "VmStateTarget",
    "collect",
    "configure_logging",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("microvm-control")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
