"""Management client facade (``vm.management``).

Every method returns an Outcome and never raises for expected failures.
Lifecycle legality is checked against the owning MicroVM before anything
is sent; protocol errors from ControlApiClient become Failure outcomes.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from microvm_control._logging import get_logger
from microvm_control.exceptions import ErrorKind, InvalidConfigurationError, TransportError, VmControlError
from microvm_control.models import DRIVE_ID_PATTERN, MachineConfiguration, VmInfo, VmStateTarget
from microvm_control.outcome import Failure, Outcome, SoftFailure, Success
from microvm_control.vm_types import API_READY_STATES, VmState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from microvm_control.api_client import ControlApiClient
    from microvm_control.microvm import MicroVM

logger = get_logger(__name__)

T = TypeVar("T")

# Lifecycle state reached by each state update target
_TARGET_STATES: dict[VmStateTarget, VmState] = {
    VmStateTarget.PAUSED: VmState.PAUSED,
    VmStateTarget.RESUMED: VmState.RUNNING,
}


class ManagementClient:
    """Outcome-returning control API facade bound to one MicroVM."""

    def __init__(self, vm: MicroVM) -> None:
        self._vm = vm

    def _api(self) -> ControlApiClient:
        api = self._vm.api_client
        if api is None:
            raise TransportError("Control API not connected", {"vm_id": self._vm.vm_id})
        return api

    async def _call(self, operation: str, fn: Callable[[ControlApiClient], Awaitable[T]]) -> Outcome[T]:
        """Run a query while the control socket is live (Running or Paused)."""
        try:
            async with self._vm.operation_guard(operation, API_READY_STATES):
                api = self._api()
            return Success(await fn(api))
        except VmControlError as e:
            logger.debug(
                f"{operation} failed",
                extra={"vm_id": self._vm.vm_id, "kind": e.kind.value, "error": e.message},
            )
            return Failure(e)

    async def get_info(self) -> Outcome[VmInfo]:
        """Instance id, state and hypervisor version reported by the hypervisor."""
        return await self._call("get_info", lambda api: api.get_info())

    async def get_version(self) -> Outcome[str]:
        return await self._call("get_version", lambda api: api.get_version())

    async def get_machine_configuration(self) -> Outcome[MachineConfiguration]:
        return await self._call("get_machine_configuration", lambda api: api.get_machine_configuration())

    async def update_drive(self, drive_id: str, path_on_host: Path | str) -> Outcome[None]:
        """Point an attached drive at a new backing file (Running or Paused).

        drive_id becomes part of the request path, so ids outside
        [A-Za-z0-9_] are rejected with Failure(InvalidConfiguration) and
        nothing is sent.
        """
        if re.fullmatch(DRIVE_ID_PATTERN, drive_id) is None:
            return Failure(InvalidConfigurationError(f"Invalid drive id: {drive_id!r}", {"vm_id": self._vm.vm_id}))
        return await self._call("update_drive", lambda api: api.patch_drive(drive_id, str(path_on_host)))

    async def update_state(self, target: VmStateTarget) -> Outcome[None]:
        """Pause or resume the guest.

        The legality check, the protocol call and the state transition all run
        under the instance's lifecycle lock, so concurrent updates and shutdown
        cannot interleave with them.

        Returns:
            Success on a real transition; SoftFailure(NO_OP) if already in the
            target state; Failure(IllegalState) outside Running/Paused;
            Failure(TerminalState) after shutdown; protocol/transport failures
            leave the state unchanged.
        """
        destination = _TARGET_STATES[target]
        try:
            async with self._vm.operation_guard("update_state", API_READY_STATES, exclusive=True):
                if self._vm.state == destination:
                    logger.debug(
                        "State update is a no-op",
                        extra={"vm_id": self._vm.vm_id, "target": target.value},
                    )
                    return SoftFailure(ErrorKind.NO_OP, f"already {destination.value}")
                await self._api().patch_vm_state(target)
                self._vm.apply_state(destination)
            return Success(None)
        except VmControlError as e:
            logger.warning(
                "State update failed",
                extra={"vm_id": self._vm.vm_id, "target": target.value, "kind": e.kind.value, "error": e.message},
            )
            return Failure(e)
