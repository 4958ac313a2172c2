"""Shared pytest fixtures for microvm-control tests.

No real hypervisor is involved. FakeHost spawns FakeProcess objects whose
stdin/stdout are wired to a tiny shell emulator (the serial console), and
creates the control socket file on a real tmp_path filesystem. FakeTransport
answers control requests the way the hypervisor's API does.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import re
import shutil
import signal
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from microvm_control.config import ControlConfig
from microvm_control.exceptions import TransportError
from microvm_control.microvm import MicroVM
from microvm_control.models import HypervisorInstall, TransportOptions, VmConfiguration
from microvm_control.transport import TransportResponse

# ============================================================================
# Console / process fakes
# ============================================================================

_MARKER_CMD_RE = re.compile(r"^echo '([^']*)''([^']*)' \$\?$")
_pids = itertools.count(4000)


class FakeWriter:
    """Drop-in for asyncio.StreamWriter.  Captures written data, rejects undefined methods."""

    def __init__(self, on_write: Callable[[bytes], None] | None = None) -> None:
        self.data = bytearray()
        self.closed = False
        self._on_write = on_write

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("writer closed")
        self.data.extend(data)
        if self._on_write is not None:
            self._on_write(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


class FakeShell:
    """Minimal line-oriented shell behind a serial console.

    Echoes every input line after a prompt (like a tty), then runs it:
    ``echo X`` prints X, ``true``/``false`` set $?, ``sleep N`` stops the
    shell from answering anything, the end-of-output marker command prints
    its joined quoted words and the last status. ``;`` separates commands.
    """

    def __init__(self, output: asyncio.StreamReader, *, prompt: str = "/ # ") -> None:
        self.output = output
        self.prompt = prompt
        self.lines: list[str] = []
        self.hung = False
        self.eof = False
        self._pending = ""
        self._status = 0

    def emit(self, text: str) -> None:
        if not self.eof:
            self.output.feed_data(text.encode())

    def feed(self, data: bytes) -> None:
        self._pending += data.decode()
        *complete, self._pending = self._pending.split("\n")
        for line in complete:
            if self.hung:
                continue
            self.lines.append(line)
            self.emit(f"{self.prompt}{line}\r\n")
            self._run(line)

    def _run(self, line: str) -> None:
        marker = _MARKER_CMD_RE.match(line)
        if marker is not None:
            self.emit(f"{marker.group(1)}{marker.group(2)} {self._status}\r\n")
            return
        for command in (part.strip() for part in line.split(";")):
            if command.startswith("sleep"):
                self.hung = True
                return
            if command == "echo" or command.startswith("echo "):
                self.emit(command[5:] + "\r\n")
                self._status = 0
            elif command == "true":
                self._status = 0
            elif command == "false":
                self._status = 1
            elif command:
                self.emit(f"sh: {command.split()[0]}: not found\r\n")
                self._status = 127


class FakeProcess:
    """ProcessHandle stand-in with a FakeShell on its console."""

    def __init__(self, executable: Path, args: Sequence[str]) -> None:
        self.executable = executable
        self.args = list(args)
        self.pid: int | None = next(_pids)
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.shell = FakeShell(self.stdout)
        self.stdin = FakeWriter(on_write=self.shell.feed)
        self.signals: list[signal.Signals] = []
        self.exited = asyncio.Event()

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.shell.eof = True
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.exited.set()


class FakeHost:
    """Host whose processes are FakeProcess objects and whose files live under tmp_path.

    Attributes:
        processes: Every spawned process, in spawn order
        socket_of: Effective control socket path -> owning process
        create_socket: Create the control socket file after spawn
        socket_delay: Seconds between spawn and socket creation (0 = at once)
        spawn_error: Raised by spawn_process instead of spawning
        exit_on_spawn: Exit code of processes that die right after start
        ignore_sigterm / ignore_sigkill: Processes survive those signals
        boot_log: Console lines printed by each process when it starts
    """

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.socket_of: dict[Path, FakeProcess] = {}
        self.create_socket = True
        self.socket_delay = 0.0
        self.spawn_error: OSError | None = None
        self.exit_on_spawn: int | None = None
        self.stderr_on_spawn = ""
        self.ignore_sigterm = False
        self.ignore_sigkill = False
        self.boot_log: list[str] = ["[    0.000000] Linux version 6.1.0 (fake)", "Welcome to the fake guest"]

    @staticmethod
    def _socket_path(args: Sequence[str]) -> Path:
        api_sock = Path(args[args.index("--api-sock") + 1])
        if "--chroot-base-dir" not in args:
            return api_sock
        base = Path(args[args.index("--chroot-base-dir") + 1])
        exec_file = Path(args[args.index("--exec-file") + 1])
        vm_id = args[args.index("--id") + 1]
        return base / exec_file.name / vm_id / "root" / api_sock.name

    async def spawn_process(
        self,
        executable: Path,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> FakeProcess:
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess(executable, args)
        self.processes.append(process)
        socket_path = self._socket_path(args)
        self.socket_of[socket_path] = process

        for line in self.boot_log:
            process.shell.emit(line + "\r\n")
        if self.stderr_on_spawn:
            process.stderr.feed_data(self.stderr_on_spawn.encode())
        if self.exit_on_spawn is not None:
            process.exit(self.exit_on_spawn)
            return process
        if self.create_socket:
            if self.socket_delay:
                asyncio.get_running_loop().call_later(self.socket_delay, self._bind, process, socket_path)
            else:
                self._bind(process, socket_path)
        return process

    @staticmethod
    def _bind(process: FakeProcess, socket_path: Path) -> None:
        if process.returncode is None:
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            socket_path.touch()

    async def signal(self, handle: FakeProcess, sig: signal.Signals) -> None:
        if handle.returncode is not None:
            return
        handle.signals.append(sig)
        if sig == signal.SIGTERM and not self.ignore_sigterm:
            handle.exit(-signal.SIGTERM)
        elif sig == signal.SIGKILL and not self.ignore_sigkill:
            handle.exit(-signal.SIGKILL)

    async def wait(self, handle: FakeProcess, timeout: float | None) -> int | None:
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=timeout)
        except TimeoutError:
            return None
        return handle.returncode

    def path_join(self, *parts: str | Path) -> Path:
        return Path(*parts)

    async def path_exists(self, path: Path) -> bool:
        return path.exists()

    async def write_file(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def create_exclusive(self, path: Path) -> bool:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.open("xb").close()
        except FileExistsError:
            return False
        return True

    async def remove_path(self, path: Path, *, context_id: str, description: str = "file") -> bool:
        path.unlink(missing_ok=True)
        return True

    async def remove_tree(self, path: Path, *, context_id: str) -> bool:
        shutil.rmtree(path, ignore_errors=True)
        return True


# ============================================================================
# Control API fake
# ============================================================================


class FakeTransport:
    """In-memory control API with the hypervisor's endpoints and status codes.

    Attributes:
        requests: (method, path, body) of every request received
        not_ready: Number of leading requests failing with TransportError
        overrides: (method, path) -> canned response
        hang: Paths whose requests never complete
    """

    def __init__(self, socket_path: Path, *, process: FakeProcess | None = None, vm_id: str = "vm-fake") -> None:
        self.socket_path = socket_path
        self.process = process
        self.vm_id = vm_id
        self.requests: list[tuple[str, str, dict[str, Any] | None]] = []
        self.not_ready = 0
        self.overrides: dict[tuple[str, str], TransportResponse] = {}
        self.hang: set[str] = set()
        self.vm_state = "Not started"
        self.machine_config: dict[str, Any] = {"vcpu_count": 1, "mem_size_mib": 128, "smt": False}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def paths(self) -> list[tuple[str, str]]:
        return [(method, path) for method, path, _ in self.requests]

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        timeout: float,
    ) -> TransportResponse:
        if self._closed:
            raise TransportError("Control transport is closed", {"path": path})
        if self.not_ready > 0:
            self.not_ready -= 1
            raise TransportError("Control socket unreachable: connection refused", {"path": path})
        self.requests.append((method, path, body))
        if path in self.hang:
            await asyncio.Event().wait()
        if (method, path) in self.overrides:
            return self.overrides[(method, path)]
        return self._route(method, path, body)

    def _route(self, method: str, path: str, body: dict[str, Any] | None) -> TransportResponse:
        match method, path:
            case "GET", "/":
                return _json(
                    200,
                    {"id": self.vm_id, "state": self.vm_state, "vmm_version": "1.7.0", "app_name": "Firecracker"},
                )
            case "GET", "/version":
                return _json(200, {"firecracker_version": "1.7.0"})
            case "GET", "/machine-config":
                return _json(200, {**self.machine_config, "track_dirty_pages": False})
            case "PUT", "/machine-config":
                assert body is not None
                self.machine_config = body
                return TransportResponse(204, b"")
            case "PATCH", "/vm":
                assert body is not None
                self.vm_state = body["state"]
                return TransportResponse(204, b"")
            case "PUT", "/actions":
                assert body is not None
                if body["action_type"] == "InstanceStart":
                    self.vm_state = "Running"
                elif body["action_type"] == "SendCtrlAltDel" and self.process is not None:
                    self.process.exit(0)
                return TransportResponse(204, b"")
            case ("PUT" | "PATCH", _) if path == "/boot-source" or path.startswith("/drives/"):
                return TransportResponse(204, b"")
        return _json(400, {"fault_message": f"Invalid request method and/or path: {method} {path}"})

    async def close(self) -> None:
        self._closed = True


def _json(status: int, payload: dict[str, Any]) -> TransportResponse:
    return TransportResponse(status, json.dumps(payload).encode())


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def transports() -> dict[Path, FakeTransport]:
    """FakeTransport per socket path, filled as MicroVMs connect."""
    return {}


@pytest.fixture
def transport_setup() -> list[Callable[[FakeTransport], None]]:
    """Hooks applied to every FakeTransport as it is created (arm hangs, overrides ...)."""
    return []


@pytest.fixture
def transport_factory(
    fake_host: FakeHost,
    transports: dict[Path, FakeTransport],
    transport_setup: list[Callable[[FakeTransport], None]],
) -> Callable[[Path], FakeTransport]:
    def factory(socket_path: Path) -> FakeTransport:
        transport = FakeTransport(socket_path, process=fake_host.socket_of.get(socket_path))
        for setup in transport_setup:
            setup(transport)
        transports[socket_path] = transport
        return transport

    return factory


@pytest.fixture
def vm_configuration(tmp_path: Path) -> VmConfiguration:
    return VmConfiguration(
        boot_source={"kernel_image_path": tmp_path / "vmlinux", "boot_args": "console=ttyS0 reboot=k panic=1"},
        machine_configuration={"mem_size_mib": 128, "vcpu_count": 1},
        drives=[
            {"drive_id": "rootfs", "is_root_device": True, "path_on_host": tmp_path / "rootfs.ext4"},
            {"drive_id": "scratch", "is_root_device": False, "path_on_host": tmp_path / "scratch.ext4"},
        ],
    )


@pytest.fixture
def install() -> HypervisorInstall:
    return HypervisorInstall(version="v1.7.0", hypervisor_binary=Path("/usr/local/bin/firecracker"))


@pytest.fixture
def control_config() -> ControlConfig:
    """Short timeouts so failure paths finish quickly."""
    return ControlConfig(
        boot_timeout_seconds=2.0,
        shutdown_grace_seconds=0.2,
        shutdown_timeout_seconds=2.0,
        request_timeout_seconds=1.0,
        command_timeout_seconds=1.0,
    )


def short_transport_options(directory: Path) -> TransportOptions:
    """Socket options with a short filename (tmp_path can be long)."""
    return TransportOptions(socket_directory=directory, socket_filename=f"{uuid4().hex[:8]}.sock")


@pytest.fixture
def make_vm(
    tmp_path: Path,
    fake_host: FakeHost,
    transport_factory: Callable[[Path], FakeTransport],
    vm_configuration: VmConfiguration,
    install: HypervisorInstall,
    control_config: ControlConfig,
) -> Callable[..., MicroVM]:
    """Build MicroVMs wired to the fake host and fake control API."""

    def _make(
        *,
        transport_options: TransportOptions | None = None,
        config: ControlConfig | None = None,
        configuration: VmConfiguration | None = None,
        vm_id: str | None = None,
    ) -> MicroVM:
        return MicroVM(
            configuration or vm_configuration,
            install,
            transport_options or short_transport_options(tmp_path),
            vm_id,
            host=fake_host,
            config=config or control_config,
            transport_factory=transport_factory,
        )

    return _make
