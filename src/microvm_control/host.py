"""Host capability interface and the local implementation.

The lifecycle code never spawns processes or touches the filesystem
directly: it goes through a ``Host`` passed in by the caller. ``LocalHost``
runs everything on this machine; a remote host only needs to implement the
same protocol.

ProcessHandle implementations must expose the hypervisor's stdin/stdout as
asyncio streams; they carry the serial console.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import signal
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles
import aiofiles.os
import psutil

from microvm_control._logging import get_logger
from microvm_control.resource_cleanup import cleanup_file

logger = get_logger(__name__)


@runtime_checkable
class ProcessHandle(Protocol):
    """Handle to a spawned process with piped stdio."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    @property
    def stdin(self) -> asyncio.StreamWriter | None: ...

    @property
    def stdout(self) -> asyncio.StreamReader | None: ...

    @property
    def stderr(self) -> asyncio.StreamReader | None: ...


@runtime_checkable
class Host(Protocol):
    """Execution environment capabilities required by the supervisor and MicroVM."""

    async def spawn_process(
        self,
        executable: Path,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> ProcessHandle:
        """Start executable with args and piped stdin/stdout/stderr.

        Raises:
            OSError: executable missing, not executable, or fork failed.
        """
        ...

    async def signal(self, handle: ProcessHandle, sig: signal.Signals) -> None:
        """Deliver sig to the process. No-op if it already exited."""
        ...

    async def wait(self, handle: ProcessHandle, timeout: float | None) -> int | None:
        """Wait for exit; returns the exit code, or None if still alive after timeout."""
        ...

    def path_join(self, *parts: str | Path) -> Path: ...

    async def path_exists(self, path: Path) -> bool: ...

    async def write_file(self, path: Path, data: bytes) -> None:
        """Write data to path, creating parent directories.

        Raises:
            OSError: Write failed.
        """
        ...

    async def create_exclusive(self, path: Path) -> bool:
        """Atomically create an empty file, creating parent directories.

        Returns False if path already exists.

        Raises:
            OSError: Creation failed for any other reason.
        """
        ...

    async def remove_path(self, path: Path, *, context_id: str, description: str = "file") -> bool:
        """Remove a file. Never raises; returns False on failure."""
        ...

    async def remove_tree(self, path: Path, *, context_id: str) -> bool:
        """Remove a directory tree. Never raises; returns False on failure."""
        ...


class LocalProcess:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so signals are never
    delivered to an unrelated process that recycled the PID.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe).

        Runs the blocking psutil call in a worker thread.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.async_proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def send_signal(self, sig: signal.Signals) -> None:
        """Send sig, preferring the psutil handle (PID-reuse safe)."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.send_signal, sig)
            return
        with contextlib.suppress(ProcessLookupError):
            self.async_proc.send_signal(sig)


class LocalHost:
    """Host implementation for processes and files on this machine."""

    async def spawn_process(
        self,
        executable: Path,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> LocalProcess:
        proc = await asyncio.create_subprocess_exec(
            str(executable),
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            # Own session: terminal signals aimed at the orchestrator don't reach the VM
            start_new_session=True,
        )
        logger.debug("Process spawned", extra={"executable": str(executable), "pid": proc.pid})
        return LocalProcess(proc)

    async def signal(self, handle: ProcessHandle, sig: signal.Signals) -> None:
        if handle.returncode is not None:
            return
        if isinstance(handle, LocalProcess):
            await handle.send_signal(sig)
            return
        raise TypeError(f"LocalHost cannot signal {type(handle).__name__}")

    async def wait(self, handle: ProcessHandle, timeout: float | None) -> int | None:
        if not isinstance(handle, LocalProcess):
            raise TypeError(f"LocalHost cannot wait on {type(handle).__name__}")
        try:
            return await asyncio.wait_for(handle.wait(), timeout=timeout)
        except TimeoutError:
            return None

    def path_join(self, *parts: str | Path) -> Path:
        return Path(*parts)

    async def path_exists(self, path: Path) -> bool:
        return await aiofiles.os.path.exists(path)

    async def write_file(self, path: Path, data: bytes) -> None:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)

    async def create_exclusive(self, path: Path) -> bool:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        try:
            # "x" maps to O_CREAT | O_EXCL
            async with aiofiles.open(path, "xb"):
                pass
        except FileExistsError:
            return False
        return True

    async def remove_path(self, path: Path, *, context_id: str, description: str = "file") -> bool:
        return await cleanup_file(path, context_id=context_id, description=description)

    async def remove_tree(self, path: Path, *, context_id: str) -> bool:
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(
                "directory removal error",
                extra={"context_id": context_id, "path": str(path), "error": str(e), "error_type": type(e).__name__},
            )
            return False
        logger.debug("directory removed", extra={"context_id": context_id, "path": str(path)})
        return True
