"""MicroVM lifecycle: the aggregate root owning process, transport and console.

Boot Sequence (BootMode.API):
    1. Re-check configuration invariants (nothing spawned on failure)
    2. Spawn hypervisor via ProcessSupervisor, wait for the control socket file
    3. Attach the console pump to the process's stdin/stdout
    4. Probe the API until it answers (tenacity backoff inside the boot deadline)
    5. PUT machine-config, boot-source, each drive
    6. PUT actions InstanceStart
    7. Running

BootMode.CONFIG_FILE replaces steps 5-6 with a JSON config file passed as
--config-file at spawn; the hypervisor starts the guest itself.

Any failure, timeout or cancellation during boot rolls back: console and
transport closed, process killed, socket/config file/chroot removed, state
Uninitialized. A failed boot may be retried on the same instance.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import secrets
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, retry_if_exception_type, wait_random_exponential

from microvm_control import constants
from microvm_control._logging import get_logger
from microvm_control.api_client import ControlApiClient
from microvm_control.api_protocol import render_config_file, schema_for_version
from microvm_control.config import BootMode, ControlConfig
from microvm_control.console import ConsoleChannel, TtyClient
from microvm_control.exceptions import (
    BootTimeoutError,
    ErrorKind,
    IllegalStateError,
    SpawnError,
    TerminalStateError,
    TransportError,
    VmControlError,
)
from microvm_control.host import Host, LocalHost
from microvm_control.management import ManagementClient
from microvm_control.models import HypervisorInstall, TransportOptions, VmConfiguration
from microvm_control.outcome import Failure, Outcome, SoftFailure, Success
from microvm_control.supervisor import ProcessSupervisor, SpawnedProcess
from microvm_control.transport import TransportFactory, unix_socket_transport
from microvm_control.vm_types import VALID_STATE_TRANSITIONS, VmState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable
    from pathlib import Path

logger = get_logger(__name__)

_VM_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,64}$")


def generate_vm_id() -> str:
    """Random instance id accepted by both the hypervisor and the jailer."""
    return f"vm-{secrets.token_hex(8)}"


class MicroVM:
    """One microVM instance and everything it owns.

    The instance exclusively owns its hypervisor process, control transport
    and console; nothing else may hold them. Control traffic goes through
    ``vm.management`` and console traffic through ``vm.tty_client``.

    Context Manager Usage:
        ```python
        async with MicroVM(configuration, install, TransportOptions()) as vm:
            (await vm.boot()).unwrap()
            output = (await vm.tty_client.run_buffered_command("uname -a")).unwrap()
        # shutdown() runs on exit, even if an exception occurs
        ```

    Lock Strategy:
        - _state_lock guards state checks and transitions. State updates
          (pause/resume) hold it across the protocol call as well.
        - Boot and shutdown hold it only while transitioning; the slow parts
          run outside it, and the Booting/ShuttingDown states keep other
          operations out.

    Attributes:
        vm_id: Instance id (caller-supplied or generated)
        configuration: Immutable boot configuration
        install: Hypervisor binaries
        transport_options: Control socket filename and directory
        config: Timeouts and policies
        host: Where the hypervisor runs
        management: Control API facade
        tty_client: Console facade
    """

    def __init__(
        self,
        configuration: VmConfiguration,
        install: HypervisorInstall,
        transport_options: TransportOptions | None = None,
        vm_id: str | None = None,
        *,
        host: Host | None = None,
        config: ControlConfig | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        """
        Args:
            configuration: Boot source, machine resources and drives.
            install: Resolved hypervisor installation.
            transport_options: Socket location; a fresh unique filename by default.
            vm_id: Instance id; generated when omitted. Must be unique among
                instances running on the same host.
            host: Execution environment (LocalHost by default).
            config: Timeouts and policies (ControlConfig() by default).
            transport_factory: Builds the control transport for a socket path.

        Raises:
            ValueError: vm_id is not 1-64 alphanumerics or hyphens.
        """
        if vm_id is not None and not _VM_ID_RE.match(vm_id):
            raise ValueError(f"Invalid vm_id {vm_id!r}: expected 1-64 alphanumerics or hyphens")

        self.vm_id = vm_id or generate_vm_id()
        self.configuration = configuration
        self.install = install
        self.transport_options = transport_options or TransportOptions()
        self.config = config or ControlConfig()
        self.host = host or LocalHost()
        self.schema = schema_for_version(install.api_version)
        self._transport_factory = transport_factory or unix_socket_transport
        self._supervisor = ProcessSupervisor(self.host, jailer=self.config.jailer)

        self._state = VmState.UNINITIALIZED
        self._state_lock = asyncio.Lock()
        self._boot_task: asyncio.Task[Outcome[None]] | None = None
        self._shutdown_requested = False

        self._spawned: SpawnedProcess | None = None
        self._api: ControlApiClient | None = None
        self._console: ConsoleChannel | None = None

        self.management = ManagementClient(self)
        self.tty_client = TtyClient(self)

    def __repr__(self) -> str:
        return f"MicroVM(vm_id={self.vm_id!r}, state={self._state.value})"

    async def __aenter__(self) -> MicroVM:
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> bool:
        if self._state is not VmState.TERMINATED:
            await self.shutdown()
        return False

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> VmState:
        """Current lifecycle state."""
        return self._state

    @property
    def api_client(self) -> ControlApiClient | None:
        """Protocol client, present from boot until shutdown."""
        return self._api

    @property
    def console(self) -> ConsoleChannel | None:
        """Console channel, present from boot until shutdown."""
        return self._console

    @property
    def socket_path(self) -> Path | None:
        """Effective control socket path of the running process (None when not spawned)."""
        return self._spawned.socket_path if self._spawned is not None else None

    def apply_state(self, new_state: VmState) -> None:
        """Transition without taking the lock. Caller must hold it (operation_guard(exclusive=True)).

        Raises:
            IllegalStateError: Transition not in VALID_STATE_TRANSITIONS.
        """
        allowed_transitions = VALID_STATE_TRANSITIONS[self._state]
        if new_state not in allowed_transitions:
            raise IllegalStateError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                context={
                    "vm_id": self.vm_id,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed_transitions),
                },
            )
        old_state = self._state
        self._state = new_state
        logger.debug(
            "VM state transition",
            extra={"vm_id": self.vm_id, "old_state": old_state.value, "new_state": new_state.value},
        )

    async def transition_state(self, new_state: VmState) -> None:
        """Validate and apply a transition under the lifecycle lock."""
        async with self._state_lock:
            self.apply_state(new_state)

    def _check_operable(self, operation: str, allowed: Iterable[VmState]) -> None:
        allowed = frozenset(allowed)
        if self._state is VmState.TERMINATED:
            raise TerminalStateError(
                f"{operation}: instance is terminated",
                {"vm_id": self.vm_id, "operation": operation},
            )
        if self._state not in allowed:
            raise IllegalStateError(
                f"{operation} not allowed in state {self._state.value}",
                {
                    "vm_id": self.vm_id,
                    "operation": operation,
                    "state": self._state.value,
                    "allowed_states": sorted(s.value for s in allowed),
                },
            )

    @contextlib.asynccontextmanager
    async def operation_guard(
        self,
        operation: str,
        allowed: Iterable[VmState],
        *,
        exclusive: bool = False,
    ) -> AsyncIterator[None]:
        """Check the lifecycle state before an operation.

        With exclusive=True the lifecycle lock stays held for the body, so
        the body may call apply_state().

        Raises:
            TerminalStateError: Instance is terminated.
            IllegalStateError: State not in allowed.
        """
        if exclusive:
            async with self._state_lock:
                self._check_operable(operation, allowed)
                yield
        else:
            async with self._state_lock:
                self._check_operable(operation, allowed)
            yield

    # -------------------------------------------------------------------------
    # Boot
    # -------------------------------------------------------------------------

    async def boot(self, *, timeout: float | None = None) -> Outcome[None]:
        """Spawn the hypervisor, configure and start the guest.

        All-or-nothing: on Failure no process, socket file, config file or
        chroot remains and the state is back to Uninitialized.

        Args:
            timeout: Bound on the whole boot (default config.boot_timeout_seconds).

        Returns:
            Success, or Failure with InvalidConfiguration, BootTimeout,
            SpawnFailed, TransportError, ProtocolError, IllegalState
            (not Uninitialized, or aborted by shutdown) or TerminalState.
        """
        timeout = timeout if timeout is not None else self.config.boot_timeout_seconds

        async with self._state_lock:
            try:
                if self._shutdown_requested and self._state is not VmState.TERMINATED:
                    raise IllegalStateError("boot: shutdown in progress", {"vm_id": self.vm_id})
                self._check_operable("boot", {VmState.UNINITIALIZED})
            except VmControlError as e:
                return Failure(e)

            checked = self.configuration.check()
            if not checked.is_success():
                return checked

            self.apply_state(VmState.BOOTING)
            boot_task = asyncio.create_task(self._boot(timeout), name=f"boot-{self.vm_id}")
            self._boot_task = boot_task

        try:
            return await boot_task
        finally:
            self._boot_task = None

    async def _boot(self, timeout: float) -> Outcome[None]:
        logger.info(
            "Booting microVM",
            extra={"vm_id": self.vm_id, "boot_mode": self.config.boot_mode.value, "version": self.install.version},
        )
        try:
            async with asyncio.timeout(timeout):
                await self._start(timeout)
            async with self._state_lock:
                self.apply_state(VmState.RUNNING)
        except VmControlError as e:
            logger.warning(
                "Boot failed, rolling back",
                extra={"vm_id": self.vm_id, "kind": e.kind.value, "error": e.message},
            )
            await asyncio.shield(self._rollback())
            return Failure(e)
        except TimeoutError:
            logger.warning("Boot timed out, rolling back", extra={"vm_id": self.vm_id, "timeout": timeout})
            console_tail = self.tty_client.console_log()[-20:]
            await asyncio.shield(self._rollback())
            return Failure(
                BootTimeoutError(
                    f"Boot did not complete within {timeout}s",
                    {"vm_id": self.vm_id, "console_tail": console_tail},
                )
            )
        except asyncio.CancelledError:
            console_tail = self.tty_client.console_log()[-20:]
            await asyncio.shield(self._rollback())
            if self._shutdown_requested:
                logger.info("Boot aborted by shutdown", extra={"vm_id": self.vm_id})
                return Failure(
                    IllegalStateError("boot aborted by shutdown", {"vm_id": self.vm_id, "console_tail": console_tail})
                )
            raise
        except Exception:
            await asyncio.shield(self._rollback())
            raise

        logger.info(
            "MicroVM running",
            extra={"vm_id": self.vm_id, "pid": self._spawned.process.pid if self._spawned else None},
        )
        return Success(None)

    async def _start(self, timeout: float) -> None:
        """Boot steps; raises VmControlError on any failure."""
        config_document = None
        if self.config.boot_mode is BootMode.CONFIG_FILE:
            config_document = render_config_file(self.configuration, self.schema)

        spawn = await self._supervisor.spawn(
            self.install,
            self.transport_options,
            self.vm_id,
            timeout=timeout,
            config_document=config_document,
        )
        if isinstance(spawn, Failure):
            raise spawn.error
        spawned = self._spawned = spawn.unwrap()

        process = spawned.process
        if process.stdin is None or process.stdout is None:
            raise SpawnError("Hypervisor process has no console pipes", {"vm_id": self.vm_id})
        # Pump from the start so boot output reaches the ring and the pipe never fills
        self._console = ConsoleChannel(
            process.stdout,
            process.stdin,
            vm_id=self.vm_id,
            ring_lines=self.config.console_ring_lines,
        )
        self._console.start()

        api = ControlApiClient(
            self._transport_factory(spawned.socket_path),
            self.schema,
            request_timeout=self.config.request_timeout_seconds,
            vm_id=self.vm_id,
        )
        self._api = api
        await self._wait_for_api(api, spawned)

        if self.config.boot_mode is BootMode.API:
            await api.put_machine_configuration(self.configuration.machine_configuration)
            await api.put_boot_source(self.configuration.boot_source)
            for drive in self.configuration.drives:
                await api.put_drive(drive)
            await api.instance_start()

    async def _wait_for_api(self, api: ControlApiClient, spawned: SpawnedProcess) -> None:
        """Probe GET / until the API answers. Bounded by the boot deadline.

        Raises:
            SpawnError: Process exited while waiting.
            ProtocolError: API answered with an error or malformed body.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransportError),
            wait=wait_random_exponential(
                multiplier=0.01,
                min=constants.API_READY_RETRY_MIN_SECONDS,
                max=constants.API_READY_RETRY_MAX_SECONDS,
            ),
            reraise=True,
        ):
            with attempt:
                returncode = spawned.process.returncode
                if returncode is not None:
                    raise SpawnError(
                        f"{spawned.name} exited before its API became ready (code {returncode})",
                        {"vm_id": self.vm_id, "stderr_tail": list(spawned.stderr_tail)},
                        exit_code=returncode,
                        stderr="\n".join(spawned.stderr_tail),
                    )
                info = await api.get_info()
        logger.debug("Control API ready", extra={"vm_id": self.vm_id, "vmm_version": info.vmm_version})

    async def _rollback(self) -> None:
        await self._release(grace_period=0)
        async with self._state_lock:
            self.apply_state(VmState.UNINITIALIZED)

    async def _release(self, *, grace_period: float) -> Outcome[None]:
        """Stop the process, then close console and transport."""
        outcome: Outcome[None] = Success(None)
        if self._spawned is not None:
            outcome = await self._supervisor.terminate(self._spawned, grace_period=grace_period)
            self._spawned = None
        if self._console is not None:
            await self._console.close()
            self._console = None
        if self._api is not None:
            await self._api.close()
            self._api = None
        return outcome

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def shutdown(self, *, timeout: float | None = None) -> Outcome[None]:
        """Stop the guest and release every resource. The instance becomes inert.

        A boot in progress is cancelled first (it rolls back and reports
        Failure(IllegalState)). A running guest is asked to stop via
        Ctrl+Alt+Del when config.graceful_shutdown is on; the process is then
        terminated (SIGTERM, then SIGKILL after the grace period).

        Args:
            timeout: Bound on the whole shutdown (default
                config.shutdown_timeout_seconds). On expiry the process is
                killed before returning.

        Returns:
            Success on a clean exit; SoftFailure(FORCED_KILL) when SIGKILL was
            needed or the timeout expired; Failure(TerminalState) if already
            terminated; Failure(IllegalState) if another shutdown is running.
        """
        timeout = timeout if timeout is not None else self.config.shutdown_timeout_seconds

        async with self._state_lock:
            try:
                self._check_shutdown_allowed()
            except VmControlError as e:
                return Failure(e)
            self._shutdown_requested = True
            boot_task = self._boot_task if self._state is VmState.BOOTING else None

        if boot_task is not None:
            logger.info("Shutdown requested during boot, aborting boot", extra={"vm_id": self.vm_id})
            boot_task.cancel()
            await asyncio.wait({boot_task})

        async with self._state_lock:
            try:
                self._check_shutdown_allowed()
            except VmControlError as e:
                return Failure(e)
            graceful = self.config.graceful_shutdown and self._state is VmState.RUNNING
            self.apply_state(VmState.SHUTTING_DOWN)

        logger.info("Shutting down microVM", extra={"vm_id": self.vm_id, "graceful": graceful})
        outcome = await self._teardown(graceful=graceful, timeout=timeout)
        await self.transition_state(VmState.TERMINATED)
        logger.info(
            "MicroVM terminated",
            extra={"vm_id": self.vm_id, "forced": outcome.is_soft_failure()},
        )
        return outcome

    def _check_shutdown_allowed(self) -> None:
        if self._state is VmState.TERMINATED:
            raise TerminalStateError("shutdown: instance is terminated", {"vm_id": self.vm_id})
        if self._state is VmState.SHUTTING_DOWN:
            raise IllegalStateError("shutdown already in progress", {"vm_id": self.vm_id})

    async def _teardown(self, *, graceful: bool, timeout: float) -> Outcome[None]:
        try:
            async with asyncio.timeout(timeout):
                if graceful:
                    await self._request_guest_shutdown()
                return await self._release(grace_period=self.config.shutdown_grace_seconds)
        except TimeoutError:
            logger.warning("Shutdown timed out, force killing", extra={"vm_id": self.vm_id, "timeout": timeout})
            await self._release(grace_period=0)
            return SoftFailure(ErrorKind.FORCED_KILL, f"shutdown did not complete within {timeout}s")

    async def _request_guest_shutdown(self) -> None:
        """Send Ctrl+Alt+Del and wait up to the grace period for the process to exit."""
        if self._api is None or self._spawned is None:
            return
        try:
            await self._api.send_ctrl_alt_del()
        except VmControlError as e:
            logger.warning(
                "Ctrl+Alt+Del failed, falling back to signals",
                extra={"vm_id": self.vm_id, "kind": e.kind.value, "error": e.message},
            )
            return
        returncode = await self.host.wait(self._spawned.process, self.config.shutdown_grace_seconds)
        if returncode is None:
            logger.debug("Guest did not stop after Ctrl+Alt+Del", extra={"vm_id": self.vm_id})
