"""Constants for microvm-control defaults and limits."""

from typing import Final

# ============================================================================
# Lifecycle Timeouts
# ============================================================================

DEFAULT_BOOT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Bound on the whole boot: spawn, socket appearance, config push, start."""

DEFAULT_SHUTDOWN_GRACE_SECONDS: Final[float] = 3.0
"""Seconds to wait after SIGTERM (or Ctrl+Alt+Del) before SIGKILL."""

DEFAULT_SHUTDOWN_TIMEOUT_SECONDS: Final[float] = 10.0
"""Bound on the whole shutdown; on expiry the process is killed before returning."""

KILL_WAIT_SECONDS: Final[float] = 2.0
"""Seconds to wait for the kernel to reap a SIGKILLed process."""

# ============================================================================
# Control Protocol
# ============================================================================

DEFAULT_REQUEST_TIMEOUT_SECONDS: Final[float] = 5.0
"""Per-request timeout on the control socket."""

SOCKET_POLL_INTERVAL_SECONDS: Final[float] = 0.005
"""Interval between checks for the control socket file."""

API_READY_RETRY_MIN_SECONDS: Final[float] = 0.005
"""Minimum backoff between API readiness probes during boot."""

API_READY_RETRY_MAX_SECONDS: Final[float] = 0.1
"""Maximum backoff between API readiness probes during boot."""

API_BASE_URL: Final[str] = "http://localhost"
"""Base URL for HTTP over the Unix socket (host part is ignored)."""

API_ERROR_BODY_PREVIEW_BYTES: Final[int] = 500
"""Maximum bytes of an undecodable response body kept in error context."""

# ============================================================================
# Console
# ============================================================================

DEFAULT_COMMAND_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for a single buffered console command round trip."""

CONSOLE_RING_LINES: Final[int] = 500
"""Recent console lines kept in memory for diagnostics."""

CONSOLE_READ_CHUNK_BYTES: Final[int] = 4096
"""Read size for the console pump."""

CONSOLE_SENTINEL_PREFIX: Final[str] = "__MVC_DONE_"
"""Prefix of the end-of-output marker echoed after each console command."""

# ============================================================================
# Host
# ============================================================================

CONFIG_FILE_SUFFIX: Final[str] = ".config.json"
"""Suffix of the JSON config file written for config-file boot."""

SOCKET_CLAIM_SUFFIX: Final[str] = ".lock"
"""Suffix of the file created exclusively next to a control socket path while an instance owns it."""

UNIX_SOCKET_PATH_MAX: Final[int] = 107
"""sun_path limit (108 bytes including the terminating NUL)."""

STDERR_TAIL_LINES: Final[int] = 50
"""Hypervisor stderr lines kept for spawn-failure diagnostics."""

JAILER_DEFAULT_UID: Final[int] = 1000
JAILER_DEFAULT_GID: Final[int] = 1000
