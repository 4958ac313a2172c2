"""Logging setup for microvm-control.

The library only ever attaches a NullHandler; output is opt-in through
configure_logging() at an application's entry point. MICROVM_CONTROL_LOG_LEVEL
sets the initial level (e.g. "DEBUG").

Records carry instance context in ``extra`` (``vm_id``, ``context_id``,
``kind`` ...). The handler installed by configure_logging() appends the
correlation keys to each line:

    WARNING [2026-10-19 10:02:54] microvm_control.microvm - Boot failed, rolling back (vm_id=vm-3f2a kind=boot_timeout)

Emission never blocks the event loop: records go through a bounded
QueueHandler and a QueueListener thread writes them with click.echo(err=True).
Records that do not fit in the queue are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "microvm_control"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("MICROVM_CONTROL_LOG_LEVEL", "").strip().upper())
if _env_level:  # NOTSET and unknown names leave the level alone
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_QUEUE_CAPACITY = 4096

# extra= keys rendered after the message, in this order
CONTEXT_KEYS: tuple[str, ...] = ("vm_id", "context_id", "kind", "state", "pid")


class ContextFormatter(logging.Formatter):
    """Formatter that appends known ``extra`` correlation keys to the message."""

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s [%(asctime)s] %(name)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [f"{key}={getattr(record, key)}" for key in CONTEXT_KEYS if getattr(record, key, None) is not None]
        return f"{line} ({' '.join(pairs)})" if pairs else line


class _EchoHandler(logging.Handler):
    """Writes formatted records to stderr with click (runs on the listener thread)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=record.levelno < logging.WARNING), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedHandler(logging.handlers.QueueHandler):
    """Bounded, drop-on-full queue in front of _EchoHandler."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _EchoHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # In-process queue: the record is formatted by the listener
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger under the ``microvm_control`` hierarchy."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr. Idempotent.

    Args:
        level: Logger level (e.g. logging.DEBUG or "INFO"); overrides the env var.
        quiet: Only errors. Wins over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(h, _QueuedHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueuedHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
