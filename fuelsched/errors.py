"""Core runtime error types.

Errors are local to the partition that raised them: the scheduler reports a
failed slice and keeps driving the other partitions. Only `EngineFatalError`
at setup time aborts startup. These exception types are mapped to HTTP
responses in the API layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable


class FuelSchedError(Exception):
    """Base class for runtime errors.

    `partition_id` and `phase` give a caller enough context to decide whether
    to retry one partition.
    """

    def __init__(
        self,
        message: str,
        *,
        partition_id: int | None = None,
        phase: str | None = None,
        details: Any | None = None,
    ):
        self.partition_id = partition_id
        self.phase = phase
        self.details = details
        super().__init__(message)

    def with_context(self, *, partition_id: int | None = None, phase: str | None = None) -> "FuelSchedError":
        if self.partition_id is None:
            self.partition_id = partition_id
        if self.phase is None:
            self.phase = phase
        return self


# Configuration errors: rejected before any resource is allocated.


class ConfigError(FuelSchedError):
    pass


class InvalidIdError(ConfigError):
    def __init__(self, partition_id: Any, max_partitions: int):
        self.max_partitions = max_partitions
        super().__init__(
            f"Invalid partition id {partition_id!r} (expected 0 <= id < {max_partitions})",
            partition_id=partition_id if isinstance(partition_id, int) else None,
            phase="config",
        )


class SlotOccupiedError(ConfigError):
    def __init__(self, partition_id: int):
        super().__init__(f"Partition {partition_id} already loaded", partition_id=partition_id, phase="config")


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(ConfigError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))", phase="config")


class NotLoadedError(FuelSchedError):
    def __init__(self, partition_id: int):
        super().__init__(f"Partition not loaded: {partition_id}", partition_id=partition_id)


class ConflictError(FuelSchedError):
    pass


# Resource errors: a partially built partition is released before these surface.


class ResourceError(FuelSchedError):
    pass


class LoadIOError(ResourceError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("phase", "load")
        super().__init__(message, **kwargs)


class CompileError(ResourceError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("phase", "compile")
        super().__init__(message, **kwargs)


class InstantiateError(ResourceError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("phase", "instantiate")
        super().__init__(message, **kwargs)


class ExportNotFoundError(FuelSchedError):
    def __init__(self, name: str, reason: str = "not found", **kwargs: Any):
        self.name = name
        kwargs.setdefault("phase", "lookup")
        super().__init__(f"Function '{name}' {reason}", **kwargs)


# Execution faults: the in-flight call is discarded, the partition stays instantiated.


class EngineError(FuelSchedError):
    """An error reported by the execution engine (not a guest trap)."""


class GuestTrap(EngineError):
    def __init__(self, message: str, code: str = "trap", **kwargs: Any):
        self.code = code
        kwargs.setdefault("phase", "execute")
        super().__init__(message, **kwargs)


class EngineFatalError(FuelSchedError):
    """Unrecoverable engine failure; surfaced to the caller for process-level handling."""
