"""Tests for ProcessSupervisor: command line, socket wait, teardown."""

from __future__ import annotations

import asyncio
import json
import signal
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from microvm_control.exceptions import ErrorKind
from microvm_control.models import HypervisorInstall, JailerOptions, TransportOptions
from microvm_control.outcome import Failure, SoftFailure, Success
from microvm_control.supervisor import ProcessSupervisor, SpawnedProcess
from tests.conftest import FakeHost, short_transport_options

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def short_dir() -> Iterator[Path]:
    """Short directory under /tmp (jail paths nest deeply)."""
    with tempfile.TemporaryDirectory(prefix="mvc-") as directory:
        yield Path(directory)


@pytest.fixture
def supervisor(fake_host: FakeHost) -> ProcessSupervisor:
    return ProcessSupervisor(fake_host)


@pytest.fixture
def jailed_install() -> HypervisorInstall:
    return HypervisorInstall(
        version="v1.7.0",
        hypervisor_binary=Path("/usr/local/bin/firecracker"),
        jailer_binary=Path("/usr/local/bin/jailer"),
    )


def _claim_path(options: TransportOptions) -> Path:
    return options.socket_path.with_name(options.socket_filename + ".lock")


async def _spawn(supervisor: ProcessSupervisor, install: HypervisorInstall, options: TransportOptions, **kwargs):
    return await supervisor.spawn(install, options, "vm-1", timeout=kwargs.pop("timeout", 1.0), **kwargs)


# ============================================================================
# Spawn
# ============================================================================


class TestSpawn:
    async def test_plain_command_line(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = short_transport_options(tmp_path)
        outcome = await _spawn(supervisor, install, options)

        assert isinstance(outcome, Success)
        spawned = outcome.value
        assert isinstance(spawned, SpawnedProcess)
        assert spawned.name == "hypervisor"
        assert spawned.socket_path == options.socket_path
        assert spawned.socket_path.exists()
        process = fake_host.processes[0]
        assert process.executable == install.hypervisor_binary
        assert process.args == ["--api-sock", str(options.socket_path), "--id", "vm-1"]

        await supervisor.terminate(spawned, grace_period=0.1)

    async def test_config_document_written_and_removed(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        document = {"boot-source": {"kernel_image_path": "/k"}, "drives": []}
        outcome = await _spawn(supervisor, install, short_transport_options(tmp_path), config_document=document)

        spawned = outcome.unwrap()
        assert spawned.config_file == tmp_path / "vm-1.config.json"
        assert json.loads(spawned.config_file.read_text()) == document
        args = fake_host.processes[0].args
        assert args[args.index("--config-file") + 1] == str(spawned.config_file)

        await supervisor.terminate(spawned, grace_period=0.1)
        assert not spawned.config_file.exists()

    async def test_jailer_command_line_and_chroot_cleanup(
        self, fake_host: FakeHost, jailed_install: HypervisorInstall, short_dir: Path
    ) -> None:
        jailer = JailerOptions(uid=123, gid=100, chroot_base_dir=short_dir)
        supervisor = ProcessSupervisor(fake_host, jailer=jailer)
        options = TransportOptions(socket_directory=short_dir, socket_filename="api.sock")

        outcome = await _spawn(supervisor, jailed_install, options, config_document={"drives": []})

        spawned = outcome.unwrap()
        assert spawned.name == "jailer"
        assert spawned.chroot_dir == short_dir / "firecracker" / "vm-1"
        assert spawned.socket_path == short_dir / "firecracker" / "vm-1" / "root" / "api.sock"
        process = fake_host.processes[0]
        assert process.executable == jailed_install.jailer_binary
        assert process.args == [
            "--id",
            "vm-1",
            "--exec-file",
            "/usr/local/bin/firecracker",
            "--uid",
            "123",
            "--gid",
            "100",
            "--chroot-base-dir",
            str(short_dir),
            "--",
            "--api-sock",
            "/api.sock",
            "--config-file",
            "/vm-1.config.json",
        ]
        assert (spawned.chroot_dir / "root" / "vm-1.config.json").exists()

        assert isinstance(await supervisor.terminate(spawned, grace_period=0.1), Success)
        assert not spawned.chroot_dir.exists()

    async def test_jailer_binary_without_options_boots_unjailed(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, jailed_install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = short_transport_options(tmp_path)
        outcome = await _spawn(supervisor, jailed_install, options)

        spawned = outcome.unwrap()
        assert spawned.name == "hypervisor"
        assert spawned.chroot_dir is None
        process = fake_host.processes[0]
        assert process.executable == jailed_install.hypervisor_binary
        assert process.args == ["--api-sock", str(options.socket_path), "--id", "vm-1"]

        await supervisor.terminate(spawned, grace_period=0.1)

    async def test_jailer_options_without_binary(
        self, fake_host: FakeHost, install: HypervisorInstall, short_dir: Path
    ) -> None:
        supervisor = ProcessSupervisor(fake_host, jailer=JailerOptions(uid=123, gid=100, chroot_base_dir=short_dir))
        outcome = await _spawn(supervisor, install, short_transport_options(short_dir))
        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.INVALID_CONFIGURATION
        assert fake_host.processes == []


# ============================================================================
# Spawn failures
# ============================================================================


class TestSpawnFailures:
    async def test_socket_path_in_use(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = short_transport_options(tmp_path)
        options.socket_path.touch()

        outcome = await _spawn(supervisor, install, options)

        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.TRANSPORT_ERROR
        assert "already in use" in outcome.error.message
        assert fake_host.processes == []
        assert options.socket_path.exists()  # someone else's socket is left alone
        assert not _claim_path(options).exists()

    async def test_socket_path_too_long(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = TransportOptions(socket_directory=tmp_path / ("d" * 120), socket_filename="api.sock")
        outcome = await _spawn(supervisor, install, options)
        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.INVALID_CONFIGURATION
        assert fake_host.processes == []

    async def test_executable_missing(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        fake_host.spawn_error = FileNotFoundError(2, "No such file or directory")
        outcome = await _spawn(supervisor, install, short_transport_options(tmp_path), config_document={})

        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.SPAWN_FAILED
        assert "Cannot execute" in outcome.error.message
        assert not (tmp_path / "vm-1.config.json").exists()

    async def test_process_exits_during_startup(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        fake_host.exit_on_spawn = 1
        fake_host.stderr_on_spawn = "Error: bad kernel\n"

        outcome = await _spawn(supervisor, install, short_transport_options(tmp_path))

        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.SPAWN_FAILED
        assert outcome.error.exit_code == 1
        assert "exited during startup" in outcome.error.message

    async def test_socket_never_appears(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        fake_host.create_socket = False

        outcome = await _spawn(supervisor, install, short_transport_options(tmp_path), timeout=0.05)

        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.BOOT_TIMEOUT
        process = fake_host.processes[0]
        assert process.returncode is not None
        assert process.signals == [signal.SIGKILL]


# ============================================================================
# Socket path claim
# ============================================================================


class TestSocketClaim:
    async def test_claim_held_until_terminate(
        self, supervisor: ProcessSupervisor, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = short_transport_options(tmp_path)
        spawned = (await _spawn(supervisor, install, options)).unwrap()
        assert spawned.claim_file == _claim_path(options)
        assert _claim_path(options).exists()

        await supervisor.terminate(spawned, grace_period=0.1)

        assert not _claim_path(options).exists()
        assert not options.socket_path.exists()

    async def test_claimed_path_rejected_before_socket_exists(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = short_transport_options(tmp_path)
        _claim_path(options).touch()

        outcome = await _spawn(supervisor, install, options)

        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.TRANSPORT_ERROR
        assert fake_host.processes == []
        assert _claim_path(options).exists()

    async def test_concurrent_spawns_on_one_path(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        fake_host.socket_delay = 0.02
        options = short_transport_options(tmp_path)

        outcomes = await asyncio.gather(
            supervisor.spawn(install, options, "vm-a", timeout=1.0),
            supervisor.spawn(install, options, "vm-b", timeout=1.0),
        )

        winners = [o for o in outcomes if isinstance(o, Success)]
        losers = [o for o in outcomes if isinstance(o, Failure)]
        assert len(winners) == 1 and len(losers) == 1
        assert losers[0].kind is ErrorKind.TRANSPORT_ERROR
        assert len(fake_host.processes) == 1

        await supervisor.terminate(winners[0].value, grace_period=0.1)

    async def test_stale_handle_leaves_new_owner_alone(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        options = short_transport_options(tmp_path)
        first = (await _spawn(supervisor, install, options)).unwrap()
        await supervisor.terminate(first, grace_period=0.1)
        second = (await _spawn(supervisor, install, options)).unwrap()

        assert await supervisor.terminate(first, grace_period=0.1) == Success(None)

        assert options.socket_path.exists()
        assert _claim_path(options).exists()
        assert fake_host.processes[1].returncode is None
        await supervisor.terminate(second, grace_period=0.1)
        assert not options.socket_path.exists()

    async def test_config_write_failure_releases_claim(
        self,
        supervisor: ProcessSupervisor,
        fake_host: FakeHost,
        install: HypervisorInstall,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def read_only(path: Path, data: bytes) -> None:
            raise PermissionError(13, "Read-only file system")

        monkeypatch.setattr(fake_host, "write_file", read_only)
        options = short_transport_options(tmp_path)

        outcome = await _spawn(supervisor, install, options, config_document={})

        assert isinstance(outcome, Failure)
        assert outcome.kind is ErrorKind.SPAWN_FAILED
        assert not _claim_path(options).exists()
        assert fake_host.processes == []


# ============================================================================
# Terminate
# ============================================================================


class TestTerminate:
    async def test_graceful(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        spawned = (await _spawn(supervisor, install, short_transport_options(tmp_path))).unwrap()

        outcome = await supervisor.terminate(spawned, grace_period=0.5)

        assert outcome == Success(None)
        assert fake_host.processes[0].signals == [signal.SIGTERM]
        assert not spawned.socket_path.exists()
        assert spawned.stderr_task is not None and spawned.stderr_task.done()

    async def test_forced_kill(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        fake_host.ignore_sigterm = True
        spawned = (await _spawn(supervisor, install, short_transport_options(tmp_path))).unwrap()

        outcome = await supervisor.terminate(spawned, grace_period=0.05)

        assert isinstance(outcome, SoftFailure)
        assert outcome.reason is ErrorKind.FORCED_KILL
        assert fake_host.processes[0].signals == [signal.SIGTERM, signal.SIGKILL]
        assert not spawned.socket_path.exists()

    async def test_already_exited(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        spawned = (await _spawn(supervisor, install, short_transport_options(tmp_path))).unwrap()
        fake_host.processes[0].exit(0)

        assert await supervisor.terminate(spawned, grace_period=0.5) == Success(None)
        assert fake_host.processes[0].signals == []

    async def test_terminate_twice_is_harmless(
        self, supervisor: ProcessSupervisor, fake_host: FakeHost, install: HypervisorInstall, tmp_path: Path
    ) -> None:
        spawned = (await _spawn(supervisor, install, short_transport_options(tmp_path))).unwrap()
        await supervisor.terminate(spawned, grace_period=0.1)
        assert await supervisor.terminate(spawned, grace_period=0.1) == Success(None)
