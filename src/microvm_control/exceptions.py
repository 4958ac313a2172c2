"""Error hierarchy for microvm-control.

All errors inherit from VmControlError and carry an ErrorKind.

Public operations do not raise these for expected failures: they are
raised inside the transport, protocol and supervisor layers and converted
to ``Failure(error)`` outcomes at the public boundary (see outcome.py).

Hierarchy:
    VmControlError (base)
    ├── TransientError (may succeed on a fresh retry)
    │   ├── BootTimeoutError        ← socket/API not ready within boot timeout
    │   ├── TransportError          ← channel closed, unreachable, in use
    │   ├── CommandTimeoutError     ← console sentinel not seen in time
    │   └── SpawnError              ← hypervisor process failed to start
    └── PermanentError (won't succeed on retry)
        ├── ProtocolError           ← malformed or error response
        ├── IllegalStateError       ← operation invalid in current state
        ├── TerminalStateError      ← instance already terminated
        ├── InvalidConfigurationError
        └── InvalidCommandError     ← console command rejected before send
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Outcome taxonomy shared by failures and soft failures."""

    BOOT_TIMEOUT = "boot_timeout"
    PROTOCOL_ERROR = "protocol_error"
    TRANSPORT_ERROR = "transport_error"
    ILLEGAL_STATE = "illegal_state"
    COMMAND_TIMEOUT = "command_timeout"
    FORCED_KILL = "forced_kill"
    NO_OP = "no_op"
    TERMINAL_STATE = "terminal_state"
    INVALID_CONFIGURATION = "invalid_configuration"
    SPAWN_FAILED = "spawn_failed"
    INVALID_COMMAND = "invalid_command"


class VmControlError(Exception):
    """Base exception for all microvm-control errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
        kind: ErrorKind reported when this error is wrapped in a Failure
    """

    kind: ErrorKind = ErrorKind.PROTOCOL_ERROR

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(VmControlError):
    """Base for errors that may succeed on a fresh retry.

    Retrying is always the caller's decision; nothing in the library
    retries an operation on its own.
    """


class PermanentError(VmControlError):
    """Base for errors that won't succeed on retry without a change."""


# =============================================================================
# Transient
# =============================================================================


class BootTimeoutError(TransientError):
    """Control socket or API did not become ready within the boot timeout."""

    kind = ErrorKind.BOOT_TIMEOUT


class TransportError(TransientError):
    """Control channel closed, unreachable, or its socket path already in use."""

    kind = ErrorKind.TRANSPORT_ERROR


class CommandTimeoutError(TransientError):
    """No end-of-output sentinel observed on the console in time.

    Attributes:
        partial_output: Console output buffered before the timeout, for diagnostics.
    """

    kind = ErrorKind.COMMAND_TIMEOUT

    def __init__(self, message: str, partial_output: str = "", context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["partial_output"] = partial_output
        super().__init__(message, ctx)
        self.partial_output = partial_output


class SpawnError(TransientError):
    """Hypervisor process could not be started or exited during startup.

    Attributes:
        exit_code: Process exit code if the process started and died.
        stderr: Captured stderr tail, if any.
    """

    kind = ErrorKind.SPAWN_FAILED

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message, context)
        self.exit_code = exit_code
        self.stderr = stderr


# =============================================================================
# Permanent
# =============================================================================


class ProtocolError(PermanentError):
    """Hypervisor returned a malformed, unexpected, or error response.

    Attributes:
        status_code: HTTP status of the response (None if undecodable)
        fault_message: Hypervisor-reported fault text, if present
    """

    kind = ErrorKind.PROTOCOL_ERROR

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        fault_message: str | None = None,
    ):
        ctx = context or {}
        if status_code is not None:
            ctx["status_code"] = status_code
        if fault_message is not None:
            ctx["fault_message"] = fault_message
        super().__init__(message, ctx)
        self.status_code = status_code
        self.fault_message = fault_message


class IllegalStateError(PermanentError):
    """Operation is not valid in the instance's current lifecycle state."""

    kind = ErrorKind.ILLEGAL_STATE


class TerminalStateError(PermanentError):
    """Operation attempted after the instance reached Terminated.

    A terminated instance is inert; create a new one instead.
    """

    kind = ErrorKind.TERMINAL_STATE


class InvalidConfigurationError(PermanentError):
    """VM configuration violates its invariants (root drive, drive ids)."""

    kind = ErrorKind.INVALID_CONFIGURATION


class InvalidCommandError(PermanentError):
    """Console command line rejected before being written (empty, multi-line)."""

    kind = ErrorKind.INVALID_COMMAND


class OutcomeUnwrapError(VmControlError):
    """Raised by Outcome.unwrap() on a SoftFailure, which carries no error object."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or f"Outcome is a soft failure: {kind.value}", {"kind": kind.value})
        self.kind = kind
