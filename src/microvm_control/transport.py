"""Control transport abstraction.

The control protocol rides on HTTP/1.1 over the Unix domain socket the
hypervisor creates at the path supplied by the orchestrator. The protocol
client depends only on ``ControlTransport``, so lifecycle code can be
exercised against an in-memory transport without spawning processes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from microvm_control import constants
from microvm_control._logging import get_logger
from microvm_control.exceptions import TransportError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class TransportResponse:
    """Raw response: status and undecoded body."""

    status_code: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@runtime_checkable
class ControlTransport(Protocol):
    """Request/response channel to one hypervisor process."""

    @property
    def closed(self) -> bool: ...

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        timeout: float,
    ) -> TransportResponse:
        """Send one request and return its response.

        Raises:
            TransportError: Channel closed, unreachable, or timed out.
        """
        ...

    async def close(self) -> None:
        """Release the channel. Safe to call multiple times."""
        ...


TransportFactory = Callable[[Path], ControlTransport]


class UnixSocketTransport:
    """HTTP over a Unix domain socket via httpx.

    Usage:
        transport = UnixSocketTransport(Path("/tmp/vm.sock"))
        response = await transport.request("GET", "/", timeout=5.0)
        await transport.close()
    """

    def __init__(
        self,
        socket_path: Path,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            socket_path: Control socket created by the hypervisor.
            http_transport: Override of the httpx transport (tests use httpx.MockTransport).
        """
        self.socket_path = socket_path
        self._client = httpx.AsyncClient(
            transport=http_transport or httpx.AsyncHTTPTransport(uds=str(socket_path)),
            base_url=constants.API_BASE_URL,
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        timeout: float,
    ) -> TransportResponse:
        if self._closed:
            raise TransportError("Control transport is closed", {"socket": str(self.socket_path), "path": path})

        try:
            response = await self._client.request(method, path, json=body, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"{method} {path} timed out after {timeout}s",
                {"socket": str(self.socket_path), "path": path},
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"Control socket unreachable: {e}",
                {"socket": str(self.socket_path), "path": path, "error_type": type(e).__name__},
            ) from e

        logger.debug(
            "Control request completed",
            extra={"method": method, "path": path, "status_code": response.status_code},
        )
        return TransportResponse(status_code=response.status_code, body=response.content)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()


def unix_socket_transport(socket_path: Path) -> ControlTransport:
    """Default TransportFactory."""
    return UnixSocketTransport(socket_path)
