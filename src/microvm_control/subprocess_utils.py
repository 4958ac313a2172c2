"""Subprocess lifecycle utilities.

- drain_stderr: drain hypervisor stderr to the logger (prevents 64KB pipe deadlock)
- wait_for_path: poll for the control socket created by a child process after fork+exec
- log_task_exception: done-callback surfacing background task failures
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from microvm_control import constants
from microvm_control._logging import get_logger

if TYPE_CHECKING:
    from collections import deque
    from collections.abc import Callable
    from pathlib import Path

    from microvm_control.host import Host

logger = get_logger(__name__)


async def drain_stderr(
    stream: asyncio.StreamReader | None,
    *,
    process_name: str,
    context_id: str,
    tail: deque[str] | None = None,
) -> None:
    """Read a process's stderr until EOF, logging each line.

    stdout carries the serial console and is consumed by ConsoleChannel;
    stderr must still be drained or the process blocks once the pipe fills.

    Args:
        stream: stderr reader (None safe - returns immediately)
        process_name: Process identifier for logging (e.g., "firecracker")
        context_id: Context identifier (e.g., vm_id) for log correlation
        tail: Optional bounded deque receiving the most recent lines (diagnostics)
    """
    if stream is None:
        return
    async for line in stream:
        try:
            decoded = line.decode().rstrip()
        except UnicodeDecodeError:
            continue  # non-UTF8 output is skipped
        if not decoded:
            continue
        if tail is not None:
            tail.append(decoded)
        logger.warning(f"[{process_name} stderr] {decoded}", extra={"context_id": context_id, "output": decoded})


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )


async def wait_for_path(
    host: Host,
    path: Path,
    *,
    timeout: float,
    poll_interval: float = constants.SOCKET_POLL_INTERVAL_SECONDS,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Wait for a file (the control socket) to appear on the host.

    Polls because there is no event to await: the file is created by an
    external process. Whether the socket accepts requests is checked
    separately by probing the API.

    Args:
        host: Host whose filesystem is polled.
        path: Path to wait for.
        timeout: Maximum seconds to wait before raising TimeoutError.
        poll_interval: Seconds between checks.
        abort_check: Optional callable invoked each poll iteration. Should raise
            to abort the wait early (e.g. when the spawning process has died).

    Raises:
        TimeoutError: Path did not appear within *timeout* seconds.
    """
    async with asyncio.timeout(timeout):
        while not await host.path_exists(path):
            if abort_check is not None:
                abort_check()
            await asyncio.sleep(poll_interval)
