"""Serial console channel and the buffered-command TTY client.

The hypervisor's stdin/stdout carry the guest's serial console as a raw
byte stream. ConsoleChannel pumps stdout into memory and runs one command
at a time; TtyClient is the Outcome-returning facade exposed as
``vm.tty_client``.

End-of-output detection:
    After the user's command the channel types a marker command

        echo '__MVC_DONE_''<uuid4 hex>' $?

    The shell prints ``__MVC_DONE_<hex> <exit status>``. The typed form has a
    quote pair between prefix and token, so the terminal's echo of the input
    never contains the contiguous marker; only the shell's output does.
    Assumptions: a POSIX-like shell is reading the console, it expands ``$?``
    and concatenates adjacent quoted strings. No prompt detection is used.

    Both lines are written at once, so the echo of the marker command may be
    interleaved with the command's output. Lines containing the typed marker
    command are dropped from the result, as is the first echo of the command
    line itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections import deque
from typing import TYPE_CHECKING
from uuid import uuid4

from microvm_control import constants
from microvm_control._logging import get_logger
from microvm_control.exceptions import (
    CommandTimeoutError,
    InvalidCommandError,
    TransportError,
    VmControlError,
)
from microvm_control.outcome import Failure, Outcome, Success
from microvm_control.subprocess_utils import log_task_exception
from microvm_control.vm_types import VmState

if TYPE_CHECKING:
    from microvm_control.microvm import MicroVM

logger = get_logger(__name__)


class ConsoleChannel:
    """Single shared console byte stream with serialized command round trips.

    Thread-safety: run_buffered_command() calls are serialized via asyncio.Lock;
    concurrent callers queue. Interleaving two commands on one console would
    make their outputs indistinguishable.

    Attributes:
        console_lines: Ring buffer of recent console lines (diagnostics).
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        vm_id: str,
        ring_lines: int = constants.CONSOLE_RING_LINES,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._vm_id = vm_id
        self.console_lines: deque[str] = deque(maxlen=ring_lines)
        self._partial_line = bytearray()
        # Output captured for the command in flight (empty when idle)
        self._buffer = bytearray()
        self._capturing = False
        self._eof = False
        self._closed = False
        self._cond = asyncio.Condition()
        self._command_lock = asyncio.Lock()
        self._pump_task: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed or self._eof

    def start(self) -> None:
        """Start pumping console output in the background."""
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump(), name=f"console-pump-{self._vm_id}")
            self._pump_task.add_done_callback(log_task_exception)

    async def close(self) -> None:
        """Stop the pump and close the console writer. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None
        async with self._cond:
            self._eof = True
            self._cond.notify_all()
        with contextlib.suppress(OSError, RuntimeError):
            self._writer.close()
            await self._writer.wait_closed()

    async def _pump(self) -> None:
        while True:
            chunk = await self._reader.read(constants.CONSOLE_READ_CHUNK_BYTES)
            async with self._cond:
                if not chunk:
                    self._eof = True
                    self._cond.notify_all()
                    logger.debug("Console reached EOF", extra={"vm_id": self._vm_id})
                    return
                self._record_lines(chunk)
                if self._capturing:
                    self._buffer.extend(chunk)
                self._cond.notify_all()

    def _record_lines(self, chunk: bytes) -> None:
        self._partial_line.extend(chunk)
        *complete, rest = self._partial_line.split(b"\n")
        for raw in complete:
            self.console_lines.append(raw.decode(errors="replace").rstrip("\r"))
        self._partial_line = bytearray(rest)

    async def run_buffered_command(self, command_line: str, *, timeout: float) -> str:
        """Write one command line and collect its output up to the end marker.

        Args:
            command_line: Single-line shell command.
            timeout: Seconds to wait for the end marker.

        Returns:
            Output of the command, echoed input removed.

        Raises:
            InvalidCommandError: Empty or multi-line command.
            TransportError: Console closed or write failed.
            CommandTimeoutError: Marker not seen in time (partial output attached).
        """
        if not command_line.strip() or "\n" in command_line or "\r" in command_line:
            raise InvalidCommandError(
                "Console command must be a single non-empty line",
                {"vm_id": self._vm_id, "command": command_line[:200]},
            )

        token = uuid4().hex
        marker = f"{constants.CONSOLE_SENTINEL_PREFIX}{token}"
        typed_marker = f"echo '{constants.CONSOLE_SENTINEL_PREFIX}''{token}' $?"
        marker_re = re.compile(re.escape(marker) + r"[ \t]+(\d+)\r?\n")

        async with self._command_lock:
            async with self._cond:
                if self.closed:
                    raise TransportError("Console is closed", {"vm_id": self._vm_id})
                self._buffer.clear()
                self._capturing = True

            try:
                try:
                    self._writer.write(f"{command_line}\n{typed_marker}\n".encode())
                    await self._writer.drain()
                except (ConnectionError, OSError) as e:
                    raise TransportError(f"Console write failed: {e}", {"vm_id": self._vm_id}) from e

                match: re.Match[str] | None = None
                try:
                    async with asyncio.timeout(timeout):
                        async with self._cond:
                            while True:
                                text = self._buffer.decode(errors="replace")
                                match = marker_re.search(text)
                                if match is not None or self._eof:
                                    break
                                await self._cond.wait()
                except TimeoutError:
                    partial = _clean_output(self._buffer.decode(errors="replace"), command_line, typed_marker)
                    raise CommandTimeoutError(
                        f"No end-of-output marker within {timeout}s",
                        partial_output=partial,
                        context={"vm_id": self._vm_id, "command": command_line[:200]},
                    ) from None

                if match is None:
                    raise TransportError(
                        "Console closed before command completed",
                        {
                            "vm_id": self._vm_id,
                            "partial_output": _clean_output(text, command_line, typed_marker),
                        },
                    )

                logger.debug(
                    "Console command completed",
                    extra={"vm_id": self._vm_id, "exit_status": int(match.group(1))},
                )
                return _clean_output(text[: match.start()], command_line, typed_marker)
            finally:
                async with self._cond:
                    self._capturing = False
                    self._buffer.clear()


def _clean_output(text: str, command_line: str, typed_marker: str) -> str:
    """Drop carriage returns, echoed input lines and trailing blank lines."""
    lines: list[str] = []
    command_echo_dropped = False
    for line in text.replace("\r", "").split("\n"):
        if typed_marker in line:
            continue
        if not command_echo_dropped and line.rstrip().endswith(command_line.strip()):
            command_echo_dropped = True
            continue
        lines.append(line)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


class TtyClient:
    """Outcome-returning console facade bound to one MicroVM (``vm.tty_client``)."""

    def __init__(self, vm: MicroVM) -> None:
        self._vm = vm

    async def run_buffered_command(self, command_line: str, *, timeout: float | None = None) -> Outcome[str]:
        """Run a single command on the serial console and return its buffered output.

        Only valid while Running. Concurrent calls queue behind each other.

        Returns:
            Success(output), or Failure with CommandTimeout (partial output on
            ``error.partial_output``), TransportError, InvalidCommand,
            IllegalState or TerminalState.
        """
        timeout = timeout if timeout is not None else self._vm.config.command_timeout_seconds
        try:
            async with self._vm.operation_guard("run_buffered_command", {VmState.RUNNING}):
                console = self._vm.console
                if console is None:
                    raise TransportError("Console not attached", {"vm_id": self._vm.vm_id})
            return Success(await console.run_buffered_command(command_line, timeout=timeout))
        except VmControlError as e:
            logger.debug(
                "Console command failed",
                extra={"vm_id": self._vm.vm_id, "kind": e.kind.value, "error": e.message},
            )
            return Failure(e)

    def console_log(self) -> list[str]:
        """Recent console lines, oldest first (boot log included)."""
        console = self._vm.console
        return list(console.console_lines) if console is not None else []
