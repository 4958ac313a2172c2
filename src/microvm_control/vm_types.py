"""Lifecycle states and legal transitions for a MicroVM."""

from enum import Enum


class VmState(str, Enum):
    """MicroVM lifecycle state."""

    UNINITIALIZED = "uninitialized"
    BOOTING = "booting"
    RUNNING = "running"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


# Booting -> Uninitialized is the boot rollback path; Terminated has no exits.
VALID_STATE_TRANSITIONS: dict[VmState, set[VmState]] = {
    VmState.UNINITIALIZED: {VmState.BOOTING, VmState.SHUTTING_DOWN},
    VmState.BOOTING: {VmState.RUNNING, VmState.UNINITIALIZED, VmState.SHUTTING_DOWN},
    VmState.RUNNING: {VmState.PAUSED, VmState.SHUTTING_DOWN},
    VmState.PAUSED: {VmState.RUNNING, VmState.SHUTTING_DOWN},
    VmState.SHUTTING_DOWN: {VmState.TERMINATED},
    VmState.TERMINATED: set(),
}

# States in which the control socket is live and accepts API requests.
API_READY_STATES: frozenset[VmState] = frozenset({VmState.RUNNING, VmState.PAUSED})
