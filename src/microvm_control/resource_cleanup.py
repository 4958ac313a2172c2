"""Resource cleanup utilities for MicroVM lifecycle management.

Cleanup operations that log errors but never raise. Used by the process
supervisor on shutdown and on boot rollback.
"""

from __future__ import annotations

import asyncio
import signal
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from microvm_control._logging import get_logger

if TYPE_CHECKING:
    from microvm_control.host import Host, ProcessHandle

logger = get_logger(__name__)


class TerminationResult(Enum):
    """How a process ended under cleanup_process()."""

    ALREADY_EXITED = "already_exited"
    TERMINATED = "terminated"  # exited within the grace period
    KILLED = "killed"  # needed SIGKILL
    UNKILLABLE = "unkillable"  # still alive after SIGKILL wait


async def cleanup_process(
    host: Host,
    proc: ProcessHandle | None,
    name: str,
    context_id: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> TerminationResult:
    """Stop a process (SIGTERM → wait → SIGKILL).

    - Checks returncode first (already-dead processes are only reaped)
    - SIGTERM, then waits term_timeout for a graceful exit
    - SIGKILL, then waits kill_timeout for the kernel to reap it
    - Never raises (logs instead)

    Args:
        host: Host the process runs on
        proc: Process to stop (None safe - returns ALREADY_EXITED)
        name: Process name for logging (e.g., "firecracker", "jailer")
        context_id: Context for logging (e.g., vm_id)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up
    """
    if proc is None:
        return TerminationResult.ALREADY_EXITED

    try:
        if proc.returncode is not None:
            logger.debug(
                f"{name} already terminated",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return TerminationResult.ALREADY_EXITED

        if term_timeout > 0:
            logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id})
            await host.signal(proc, signal.SIGTERM)
            returncode = await host.wait(proc, term_timeout)
            if returncode is not None:
                logger.debug(
                    f"{name} stopped gracefully (SIGTERM)",
                    extra={"context_id": context_id, "returncode": returncode},
                )
                return TerminationResult.TERMINATED
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        logger.debug(f"Sending SIGKILL to {name}", extra={"context_id": context_id})
        await host.signal(proc, signal.SIGKILL)
        returncode = await host.wait(proc, kill_timeout)
        if returncode is not None:
            logger.warning(
                f"{name} force killed (SIGKILL)",
                extra={"context_id": context_id, "returncode": returncode},
            )
            return TerminationResult.KILLED

        logger.error(
            f"{name} didn't respond to SIGKILL within timeout",
            extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
        )
        return TerminationResult.UNKILLABLE

    except ProcessLookupError:
        # Race between the returncode check and the signal
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"context_id": context_id})
        return TerminationResult.ALREADY_EXITED

    except asyncio.CancelledError:
        raise

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return TerminationResult.UNKILLABLE


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete file.

    Succeeds if the file doesn't exist (equivalent to missing_ok=True).

    Args:
        file_path: Path to file to delete (None safe - returns immediately)
        context_id: Context for logging (e.g., vm_id)
        description: Description for logging (e.g., "control socket", "config file")

    Returns:
        True if file cleaned successfully, False if issues occurred
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        logger.debug(
            f"{description} already deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except PermissionError as e:
        logger.error(
            f"{description} permission denied",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e)},
        )
        return False

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
