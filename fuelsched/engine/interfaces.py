"""Execution engine adapter interfaces.

The scheduler core never touches guest code directly. It drives an engine
through this boundary:
- compile a module binary once, against the shared engine
- create one isolated, fuel-capable context per partition
- instantiate, set fuel and the yield interval, look up exports
- start a resumable call and poll it until it completes

Concrete adapters live in `engine/` (the simulated engine is the default).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence


@dataclass(frozen=True)
class CallCompleted:
    results: tuple[Any, ...]


class _Suspended:
    def __repr__(self) -> str:
        return "CALL_SUSPENDED"


CALL_SUSPENDED = _Suspended()

PollOutcome = CallCompleted | _Suspended


class ResumableCall(ABC):
    """A suspended invocation of an exported function.

    `poll()` is non-blocking. It returns `CALL_SUSPENDED` while the engine has
    parked the call at a fuel boundary and `CallCompleted` exactly once. Traps
    and engine errors are raised (`GuestTrap`, `EngineError`). Polling a call
    that already completed or failed raises `ConflictError`.
    """

    @abstractmethod
    def poll(self) -> PollOutcome:
        """Advance the call by one engine-chosen slice."""

    @abstractmethod
    def cancel(self) -> None:
        """Discard the call without running it further. Idempotent."""

    @property
    @abstractmethod
    def finished(self) -> bool:
        """True once the call completed, failed or was cancelled."""

    def __copy__(self) -> "ResumableCall":
        raise TypeError(f"{type(self).__name__} cannot be copied")

    def __deepcopy__(self, memo: dict[int, Any]) -> "ResumableCall":
        raise TypeError(f"{type(self).__name__} cannot be copied")


class ExecutionEngine(ABC):
    name: str = "engine"

    @abstractmethod
    def compile(self, data: bytes) -> Any:
        """Compile a module binary. Raises CompileError."""

    @abstractmethod
    def new_context(self) -> Any:
        """Allocate a fresh isolated context. Raises EngineFatalError."""

    @abstractmethod
    def instantiate(self, context: Any, module: Any) -> Any:
        """Instantiate a module inside a context. Raises InstantiateError."""

    @abstractmethod
    def set_fuel(self, context: Any, amount: int) -> None:
        """Set the context's fuel counter to `amount`."""

    @abstractmethod
    def set_yield_interval(self, context: Any, interval: int | None) -> None:
        """Suspend in-flight calls every `interval` fuel units (None disables)."""

    @abstractmethod
    def get_fuel_remaining(self, context: Any) -> int:
        """Return the fuel left in a context."""

    @abstractmethod
    def lookup_export(self, context: Any, instance: Any, name: str) -> Any:
        """Resolve an exported function. Raises ExportNotFoundError."""

    @abstractmethod
    def start_call(self, context: Any, func: Any, args: Sequence[Any]) -> ResumableCall:
        """Start a resumable call. Nothing runs until the first poll."""

    @abstractmethod
    def release_context(self, context: Any) -> None:
        """Free a context together with the instance and module it holds."""

    @abstractmethod
    def close(self) -> None:
        """Release the shared engine handle."""
