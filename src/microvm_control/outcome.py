"""Tri-state outcome type returned by every public operation.

An operation either achieved its goal (``Success``), reached an equivalent
end state without new work or with escalation (``SoftFailure``, e.g. a
redundant pause or a shutdown that needed SIGKILL), or did not achieve its
goal (``Failure``, wrapping a VmControlError that is never raised).

Example:
    ```python
    pause = await vm.management.update_state(VmStateTarget.PAUSED)
    resume = await vm.management.update_state(VmStateTarget.RESUMED)
    (
        pause.chain_with(resume)
        .if_success(lambda _: print("paused and resumed"))
        .if_error(lambda err: print(f"failed: {err.message}"))
    )
    ```

Pattern matching works on all three variants:
    ```python
    match await vm.management.get_info():
        case Success(info):
            ...
        case SoftFailure(reason):
            ...
        case Failure(error):
            ...
    ```
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from microvm_control.exceptions import ErrorKind, OutcomeUnwrapError, VmControlError

T = TypeVar("T")
U = TypeVar("U")


class _OutcomeOps:
    """Combinators shared by all outcome variants."""

    __slots__ = ()

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_soft_failure(self) -> bool:
        return isinstance(self, SoftFailure)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def if_success(self, action: Callable[[Any], object]) -> Any:
        """Run action(value) on Success. Returns self for chaining."""
        if isinstance(self, Success):
            action(self.value)
        return self

    def if_soft_failure(self, action: Callable[[SoftFailure], object]) -> Any:
        """Run action(soft_failure) on SoftFailure. Returns self for chaining."""
        if isinstance(self, SoftFailure):
            action(self)
        return self

    def if_error(self, action: Callable[[VmControlError], object]) -> Any:
        """Run action(error) on Failure. Returns self for chaining."""
        if isinstance(self, Failure):
            action(self.error)
        return self

    def chain_with(self, other: Outcome[U]) -> Any:
        """Combine two outcomes: Success only if both are, else the first non-Success."""
        if isinstance(self, Success):
            return other
        return self

    def and_then(self, fn: Callable[[Any], Outcome[U]]) -> Any:
        """Monadic bind: on Success return fn(value), otherwise self unchanged."""
        if isinstance(self, Success):
            return fn(self.value)
        return self

    async def and_then_async(self, fn: Callable[[Any], Awaitable[Outcome[U]]]) -> Any:
        """Async bind, for sequencing dependent I/O operations."""
        if isinstance(self, Success):
            return await fn(self.value)
        return self

    def map(self, fn: Callable[[Any], U]) -> Any:
        """Transform the Success value; non-Success passes through."""
        if isinstance(self, Success):
            return Success(fn(self.value))
        return self

    def unwrap(self) -> Any:
        """Return the Success value or raise.

        Raises:
            VmControlError: The wrapped error of a Failure.
            OutcomeUnwrapError: On SoftFailure.
        """
        if isinstance(self, Success):
            return self.value
        if isinstance(self, Failure):
            raise self.error
        if isinstance(self, SoftFailure):
            raise OutcomeUnwrapError(self.reason, self.message)
        raise TypeError(f"Not an outcome: {type(self).__name__}")

    def unwrap_or(self, default: U) -> Any:
        if isinstance(self, Success):
            return self.value
        return default


@dataclass(frozen=True, slots=True)
class Success(_OutcomeOps, Generic[T]):
    """Operation achieved its goal."""

    value: T = None  # type: ignore[assignment]


@dataclass(frozen=True, slots=True)
class SoftFailure(_OutcomeOps):
    """Operation reached an equivalent end state; observe, don't react."""

    reason: ErrorKind
    message: str = ""


@dataclass(frozen=True, slots=True)
class Failure(_OutcomeOps):
    """Operation did not achieve its goal; state unaffected or rolled back."""

    error: VmControlError

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


Outcome = Success[T] | SoftFailure | Failure


def collect(outcomes: Iterable[Outcome[T]]) -> Outcome[list[T]]:
    """Gather Success values into a list, stopping at the first non-Success."""
    values: list[T] = []
    for outcome in outcomes:
        if not isinstance(outcome, Success):
            return outcome
        values.append(outcome.value)
    return Success(values)
