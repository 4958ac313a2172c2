"""Hypervisor process supervisor.

Builds the hypervisor (or jailer) command line, spawns it through the
injected Host, waits for the control socket file and tears everything down
again. The supervisor never talks the control protocol; API readiness is
probed by MicroVM over the transport once the socket exists.

Resources owned by a SpawnedProcess, all released by terminate():
    - the process (SIGTERM -> wait grace -> SIGKILL)
    - the claim on the control socket path and the socket file
    - the config file (config-file boot)
    - the jailer chroot directory (jailed spawns)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from microvm_control import constants
from microvm_control._logging import get_logger
from microvm_control.exceptions import (
    BootTimeoutError,
    ErrorKind,
    InvalidConfigurationError,
    SpawnError,
    TransportError,
    VmControlError,
)
from microvm_control.host import Host, ProcessHandle
from microvm_control.models import HypervisorInstall, JailerOptions, TransportOptions
from microvm_control.outcome import Failure, Outcome, SoftFailure, Success
from microvm_control.resource_cleanup import TerminationResult, cleanup_process
from microvm_control.subprocess_utils import drain_stderr, log_task_exception, wait_for_path

logger = get_logger(__name__)


@dataclass(slots=True)
class SpawnedProcess:
    """A running hypervisor process and the host resources created for it."""

    vm_id: str
    process: ProcessHandle
    socket_path: Path
    claim_file: Path | None = None
    config_file: Path | None = None
    chroot_dir: Path | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=constants.STDERR_TAIL_LINES))
    stderr_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return "jailer" if self.chroot_dir is not None else "hypervisor"


@dataclass(frozen=True, slots=True)
class _LaunchPlan:
    executable: Path
    args: list[str]
    socket_path: Path
    config_file: Path
    chroot_dir: Path | None


class ProcessSupervisor:
    """Spawns and reaps hypervisor processes on one Host.

    Usage:
        supervisor = ProcessSupervisor(LocalHost())
        outcome = await supervisor.spawn(install, TransportOptions(), vm_id, timeout=5.0)
        if outcome.is_success():
            spawned = outcome.unwrap()
            ...
            await supervisor.terminate(spawned, grace_period=3.0)
    """

    def __init__(self, host: Host, *, jailer: JailerOptions | None = None):
        self.host = host
        self.jailer = jailer

    # -------------------------------------------------------------------------
    # Command line
    # -------------------------------------------------------------------------

    def _plan(self, install: HypervisorInstall, transport_options: TransportOptions, vm_id: str) -> _LaunchPlan:
        """Resolve executable, argv and host paths for one spawn.

        Jailing follows the JailerOptions this supervisor was built with; an
        install that names a jailer binary still boots unjailed without them.

        Raises:
            InvalidConfigurationError: JailerOptions given but the install has no jailer binary.
        """
        config_name = f"{vm_id}{constants.CONFIG_FILE_SUFFIX}"

        if self.jailer is None:
            socket_path = self.host.path_join(transport_options.socket_directory, transport_options.socket_filename)
            config_file = self.host.path_join(transport_options.socket_directory, config_name)
            args = ["--api-sock", str(socket_path), "--id", vm_id]
            return _LaunchPlan(install.hypervisor_binary, args, socket_path, config_file, None)

        if install.jailer_binary is None:
            raise InvalidConfigurationError(
                "Jailer options given but the install has no jailer binary",
                {"vm_id": vm_id, "hypervisor_binary": str(install.hypervisor_binary)},
            )

        # The jailed hypervisor sees the chroot root as "/"
        chroot_dir = self.jailer.chroot_dir(install.hypervisor_binary, vm_id)
        root_dir = self.jailer.root_dir(install.hypervisor_binary, vm_id)
        args = [
            "--id",
            vm_id,
            "--exec-file",
            str(install.hypervisor_binary),
            "--uid",
            str(self.jailer.uid),
            "--gid",
            str(self.jailer.gid),
            "--chroot-base-dir",
            str(self.jailer.chroot_base_dir),
            "--",
            "--api-sock",
            f"/{transport_options.socket_filename}",
        ]
        return _LaunchPlan(
            install.jailer_binary,
            args,
            self.host.path_join(root_dir, transport_options.socket_filename),
            self.host.path_join(root_dir, config_name),
            chroot_dir,
        )

    # -------------------------------------------------------------------------
    # Spawn
    # -------------------------------------------------------------------------

    async def spawn(
        self,
        install: HypervisorInstall,
        transport_options: TransportOptions,
        vm_id: str,
        *,
        timeout: float,
        config_document: dict[str, Any] | None = None,
    ) -> Outcome[SpawnedProcess]:
        """Start the hypervisor and wait for its control socket file.

        The socket path is claimed by exclusively creating ``<socket>.lock``
        before anything is spawned, so two instances sharing one path cannot
        both start. The claim is held until terminate().

        Args:
            install: Hypervisor (and optional jailer) binaries.
            transport_options: Socket filename and directory.
            vm_id: Instance id passed to the hypervisor/jailer.
            timeout: Bound on process start plus socket appearance.
            config_document: Rendered config file; written next to the
                socket and passed as --config-file when given.

        Returns:
            Success(SpawnedProcess), or Failure with TransportError (socket
            path in use), InvalidConfiguration, SpawnFailed or BootTimeout.
            No process or file created here survives a Failure.
        """
        try:
            plan = self._plan(install, transport_options, vm_id)
            claim_file = await self._claim_socket_path(plan.socket_path, vm_id)
        except VmControlError as e:
            return Failure(e)

        args = list(plan.args)
        config_file: Path | None = None
        if config_document is not None:
            config_file = plan.config_file
            try:
                await self.host.write_file(config_file, json.dumps(config_document, indent=2).encode())
            except OSError as e:
                await self._remove_files(
                    vm_id, config_file=config_file, chroot_dir=plan.chroot_dir, claim_file=claim_file
                )
                return Failure(
                    SpawnError(f"Cannot write config file: {e}", {"vm_id": vm_id, "path": str(config_file)})
                )
            args += ["--config-file", f"/{config_file.name}" if plan.chroot_dir is not None else str(config_file)]

        logger.info(
            "Spawning hypervisor",
            extra={
                "vm_id": vm_id,
                "executable": str(plan.executable),
                "socket_path": str(plan.socket_path),
                "jailed": plan.chroot_dir is not None,
            },
        )

        try:
            process = await self.host.spawn_process(plan.executable, args)
        except OSError as e:
            await self._remove_files(vm_id, config_file=config_file, chroot_dir=plan.chroot_dir, claim_file=claim_file)
            return Failure(
                SpawnError(
                    f"Cannot execute {plan.executable}: {e}",
                    {"vm_id": vm_id, "executable": str(plan.executable), "error_type": type(e).__name__},
                )
            )

        spawned = SpawnedProcess(
            vm_id=vm_id,
            process=process,
            socket_path=plan.socket_path,
            claim_file=claim_file,
            config_file=config_file,
            chroot_dir=plan.chroot_dir,
        )
        spawned.stderr_task = asyncio.create_task(
            drain_stderr(process.stderr, process_name=spawned.name, context_id=vm_id, tail=spawned.stderr_tail),
            name=f"stderr-drain-{vm_id}",
        )
        spawned.stderr_task.add_done_callback(log_task_exception)

        def abort_if_exited() -> None:
            if process.returncode is not None:
                raise SpawnError(
                    f"{spawned.name} exited during startup with code {process.returncode}",
                    {"vm_id": vm_id, "stderr_tail": list(spawned.stderr_tail)},
                    exit_code=process.returncode,
                    stderr="\n".join(spawned.stderr_tail),
                )

        try:
            await wait_for_path(self.host, plan.socket_path, timeout=timeout, abort_check=abort_if_exited)
        except SpawnError as e:
            await self.terminate(spawned, grace_period=0)
            return Failure(e)
        except TimeoutError:
            await self.terminate(spawned, grace_period=0)
            return Failure(
                BootTimeoutError(
                    f"Control socket did not appear within {timeout}s",
                    {"vm_id": vm_id, "socket_path": str(plan.socket_path), "stderr_tail": list(spawned.stderr_tail)},
                )
            )
        except asyncio.CancelledError:
            await asyncio.shield(self.terminate(spawned, grace_period=0))
            raise

        logger.debug(
            "Control socket ready",
            extra={"vm_id": vm_id, "pid": process.pid, "socket_path": str(plan.socket_path)},
        )
        return Success(spawned)

    async def _claim_socket_path(self, socket_path: Path, vm_id: str) -> Path:
        """Take exclusive ownership of socket_path; returns the claim file.

        Raises:
            InvalidConfigurationError: Path too long for a unix socket.
            TransportError: Path already claimed, or a socket file is already there.
            SpawnError: Claim file could not be created.
        """
        context = {"vm_id": vm_id, "socket_path": str(socket_path)}
        if len(str(socket_path)) > constants.UNIX_SOCKET_PATH_MAX:
            raise InvalidConfigurationError(f"Socket path exceeds {constants.UNIX_SOCKET_PATH_MAX} bytes", context)

        claim_file = self.host.path_join(socket_path.parent, socket_path.name + constants.SOCKET_CLAIM_SUFFIX)
        try:
            claimed = await self.host.create_exclusive(claim_file)
        except OSError as e:
            raise SpawnError(f"Cannot claim control socket path: {e}", context) from e
        # Files owned by another instance are never removed here
        if not claimed:
            raise TransportError("Control socket address already in use", context)
        if await self.host.path_exists(socket_path):
            await self.host.remove_path(claim_file, context_id=vm_id, description="socket claim")
            raise TransportError("Control socket address already in use", context)
        return claim_file

    # -------------------------------------------------------------------------
    # Terminate
    # -------------------------------------------------------------------------

    async def terminate(self, spawned: SpawnedProcess, *, grace_period: float) -> Outcome[None]:
        """Stop the process and release its host resources.

        grace_period=0 skips SIGTERM and kills immediately (boot rollback).
        Host files are removed only while spawned still holds its socket
        path claim, so terminating a handle twice is harmless.

        Returns:
            Success if the process was already dead or exited after SIGTERM,
            SoftFailure(FORCED_KILL) if SIGKILL was needed (or did not help).
        """
        result = await cleanup_process(
            self.host,
            spawned.process,
            name=spawned.name,
            context_id=spawned.vm_id,
            term_timeout=grace_period,
            kill_timeout=constants.KILL_WAIT_SECONDS,
        )

        if spawned.stderr_task is not None and not spawned.stderr_task.done():
            spawned.stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await spawned.stderr_task

        # Host files go with the claim; a released handle never touches a later owner's files
        if spawned.claim_file is not None:
            await self.host.remove_path(spawned.socket_path, context_id=spawned.vm_id, description="control socket")
            await self._remove_files(
                spawned.vm_id,
                config_file=spawned.config_file,
                chroot_dir=spawned.chroot_dir,
                claim_file=spawned.claim_file,
            )
            spawned.claim_file = None

        match result:
            case TerminationResult.ALREADY_EXITED | TerminationResult.TERMINATED:
                return Success(None)
            case TerminationResult.KILLED | TerminationResult.UNKILLABLE:
                return SoftFailure(ErrorKind.FORCED_KILL, f"{spawned.name} {result.value}")

    async def _remove_files(
        self, vm_id: str, *, config_file: Path | None, chroot_dir: Path | None, claim_file: Path | None
    ) -> None:
        if config_file is not None:
            await self.host.remove_path(config_file, context_id=vm_id, description="config file")
        if chroot_dir is not None:
            await self.host.remove_tree(chroot_dir, context_id=vm_id)
        # Released last: the path is free for reuse once this is gone
        if claim_file is not None:
            await self.host.remove_path(claim_file, context_id=vm_id, description="socket claim")
