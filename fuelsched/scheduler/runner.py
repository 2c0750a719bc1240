"""Cooperative, fuel-driven scheduler.

One logical thread drives every partition. Each cycle is
SelectNext -> RunSlice -> Dispatch:
- SelectNext picks `ring[current_index]`, the ring being the loaded partition
  ids in ascending order.
- RunSlice runs one fuel-bounded slice on that partition.
- Dispatch interprets the slice: `yielded` advances the index (the only
  rotation path); `completed` and `failed` follow the completion policy.

Completion policies:
- `retire`: the partition leaves the ring and stays instantiated. The index
  now points at the partition that followed it.
- `reinvoke`: the index is not advanced and the same partition starts a new
  call on the next cycle. Partitions later in the ring starve unless the
  current one yields.

A partition retired after a failed slice rejoins the ring when it is
refuelled. The partition set is fixed once the first cycle has run.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from fuelsched.engine.interfaces import ExecutionEngine
from fuelsched.errors import ConfigError, ConflictError, ResourceError
from fuelsched.executor.partition import COMPLETED, DEFAULT_ARGS, DEFAULT_ENTRY_POINT, FAILED, YIELDED, Partition, SliceResult
from fuelsched.executor.policy import FuelInjection, FuelManager, FuelPolicy
from fuelsched.executor.state_machine import RETIRED
from fuelsched.registry.loader import read_module_bytes
from fuelsched.registry.registry import PartitionRegistry
from fuelsched.storage.interfaces import EventStore
from fuelsched.storage.memory import MemoryEventStore

logger = logging.getLogger(__name__)

RETIRE = "retire"
REINVOKE = "reinvoke"
COMPLETION_POLICIES = (RETIRE, REINVOKE)

STOP_MAX_CYCLES = "max_cycles"
STOP_CANCELLED = "cancelled"
STOP_NO_RUNNABLE = "no_runnable_partitions"


@dataclass
class RunSummary:
    cycles: int = 0
    completed: int = 0
    yielded: int = 0
    failed: int = 0
    stop_reason: str | None = None
    last_results: dict[int, SliceResult] = field(default_factory=dict)

    def count(self, result: SliceResult) -> None:
        self.cycles += 1
        if result.status == COMPLETED:
            self.completed += 1
        elif result.status == YIELDED:
            self.yielded += 1
        else:
            self.failed += 1
        self.last_results[result.partition_id] = result

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycles": self.cycles,
            "completed": self.completed,
            "yielded": self.yielded,
            "failed": self.failed,
            "stop_reason": self.stop_reason,
            "last_results": {str(pid): r.to_dict() for pid, r in sorted(self.last_results.items())},
        }


class Scheduler:
    def __init__(
        self,
        *,
        engine: ExecutionEngine,
        registry: PartitionRegistry | None = None,
        fuel_manager: FuelManager | None = None,
        events: EventStore | None = None,
        completion_policy: str = RETIRE,
        max_cycles: int | None = None,
    ):
        if completion_policy not in COMPLETION_POLICIES:
            raise ConfigError(f"Unknown completion policy: {completion_policy} (expected one of {', '.join(COMPLETION_POLICIES)})")
        if max_cycles is not None and max_cycles < 0:
            raise ConfigError(f"max_cycles must be non-negative (got {max_cycles})")

        self.engine = engine
        self.registry = registry or PartitionRegistry()
        self.fuel_manager = fuel_manager or FuelManager()
        self.events = events or MemoryEventStore()
        self.completion_policy = completion_policy
        self.max_cycles = max_cycles

        self.current_index = 0
        self.cycle = 0
        self._ring: list[int] = []
        self._policies: dict[int, FuelPolicy] = {}
        self._refuelable: set[int] = set()
        self._shut_down = False

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    # Setup

    def load_partition(
        self,
        partition_id: int,
        data: bytes | None = None,
        *,
        path: Path | None = None,
        name: str | None = None,
        entry_point: str = DEFAULT_ENTRY_POINT,
        args: Sequence[Any] = DEFAULT_ARGS,
    ) -> Partition:
        """Load a module into a free slot, from `data` or from the file at `path`."""
        self._require_active()
        if self.cycle > 0:
            raise ConflictError("The partition set is fixed once scheduling has started", partition_id=partition_id, phase="load")

        pid = self.registry.check_free(partition_id)
        if (data is None) == (path is None):
            raise ConfigError("Exactly one of data or path is required", partition_id=pid, phase="load")

        try:
            if data is None:
                data = read_module_bytes(path, partition_id=pid)
            partition = Partition.load(self.engine, pid, data, name=name, entry_point=entry_point, args=args)
        except ResourceError as e:
            logger.warning(
                "partition_load_failed",
                extra={"event": "partition_load_failed", "partition_id": pid, "phase": e.phase},
            )
            self.events.record_event(
                event_type="partition_load_failed",
                partition_id=pid,
                details={"phase": e.phase, "reason": str(e)},
            )
            raise

        self.registry.register(partition)
        self._ring = sorted(self._ring + [pid])
        self.events.record_event(
            event_type="partition_loaded",
            partition_id=pid,
            details={"name": partition.name, "entry_point": entry_point, "args": list(partition.args)},
        )
        return partition

    def inject_fuel(self, partition_id: int, policy: FuelPolicy | None = None, *, budget: int | None = None) -> FuelInjection:
        """Top up a partition's fuel through the fuel manager. Rejected while its call is in flight.

        A partition retired after a failed slice rejoins the ring once refuelled.
        One retired after completing (or by an operator) cannot be refuelled.
        """
        self._require_active()
        partition = self.registry.lookup(partition_id)
        pid = partition.partition_id
        rejoin = partition.state == RETIRED
        if rejoin and pid not in self._refuelable:
            raise ConflictError("Partition is retired; only partitions retired after a failure can be refuelled", partition_id=pid, phase="inject")
        policy = policy or self._policies.get(pid) or FuelPolicy.none()

        injection = self.fuel_manager.inject(partition, policy, budget=budget)
        self._policies[pid] = policy
        if rejoin:
            self._refuelable.discard(pid)
            partition.reactivate()
            self._add_to_ring(pid)
            self.events.record_event(event_type="partition_reactivated", partition_id=pid, cycle=self.cycle)
        self.events.record_event(
            event_type="fuel_injected",
            partition_id=partition.partition_id,
            cycle=self.cycle,
            details={"amount": injection.amount, "yield_after": injection.yield_after, **policy.to_dict()},
        )
        return injection

    def policy_for(self, partition_id: int) -> FuelPolicy | None:
        return self._policies.get(self.registry.check_id(partition_id))

    # Scheduling loop

    @property
    def ring(self) -> list[int]:
        return list(self._ring)

    @property
    def current_partition_id(self) -> int | None:
        if not self._ring:
            return None
        return self._ring[self.current_index]

    def run_partition(self, partition_id: int) -> SliceResult:
        """Run one slice on a specific partition, outside the rotation."""
        self._require_active()
        partition = self.registry.lookup(partition_id)
        self.cycle += 1
        result = partition.run_slice(cycle=self.cycle)
        self._journal(result)
        if result.status != YIELDED:
            self._settle(partition, result)
        return result

    def step(self) -> SliceResult | None:
        """Run one SelectNext -> RunSlice -> Dispatch cycle. None when nothing is runnable."""
        self._require_active()
        pid = self.current_partition_id
        if pid is None:
            return None

        partition = self.registry.lookup(pid)
        self.cycle += 1
        result = partition.run_slice(cycle=self.cycle)
        self._journal(result)
        self._dispatch(partition, result)
        return result

    def run(self, max_cycles: int | None = None, should_stop: Callable[[], bool] | None = None) -> RunSummary:
        """Drive the loop until the cycle limit, a stop request, or an empty ring.

        `should_stop` is checked between cycles, never inside a slice.
        """
        limit = self.max_cycles if max_cycles is None else max_cycles
        summary = RunSummary()
        logger.info("scheduler_started", extra={"event": "scheduler_started", "cycle": self.cycle})

        while True:
            if limit is not None and summary.cycles >= limit:
                summary.stop_reason = STOP_MAX_CYCLES
                break
            if should_stop is not None and should_stop():
                summary.stop_reason = STOP_CANCELLED
                break
            result = self.step()
            if result is None:
                summary.stop_reason = STOP_NO_RUNNABLE
                break
            summary.count(result)

        logger.info(
            "scheduler_stopped",
            extra={"event": "scheduler_stopped", "cycle": self.cycle, "code": summary.stop_reason},
        )
        return summary

    def drain(self) -> list[SliceResult]:
        """Poll every in-flight call until it resolves. Used before a graceful shutdown."""
        self._require_active()
        resolved: list[SliceResult] = []
        for partition in list(self.registry.partitions()):
            while partition.in_flight:
                self.cycle += 1
                result = partition.run_slice(cycle=self.cycle)
                self._journal(result)
                if result.status != YIELDED:
                    self._settle(partition, result)
                    resolved.append(result)
        return resolved

    def shutdown(self, *, drain: bool = False) -> list[int]:
        """Tear down every partition, then the engine. Safe to call twice."""
        if self._shut_down:
            return []
        if drain:
            self.drain()

        released = self.registry.teardown_all(self.engine)
        self._ring = []
        self.current_index = 0
        self._shut_down = True
        self.events.record_event(event_type="scheduler_shutdown", cycle=self.cycle, details={"released": released})
        logger.info("scheduler_shutdown", extra={"event": "scheduler_shutdown", "cycle": self.cycle})
        return released

    def status(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle,
            "current_index": self.current_index,
            "current_partition_id": self.current_partition_id,
            "ring": self.ring,
            "completion_policy": self.completion_policy,
            "shut_down": self._shut_down,
            "partitions": [p.status() for p in self.registry.partitions()],
        }

    def retire_partition(self, partition_id: int, *, reason: str, refuelable: bool = False) -> None:
        """Take a partition out of the ring before its turn comes.

        With `refuelable` a later `inject_fuel` brings it back.
        """
        self._require_active()
        partition = self.registry.lookup(partition_id)
        if partition.partition_id not in self._ring:
            return
        partition.retire()
        self._remove_from_ring(self._ring.index(partition.partition_id))
        if refuelable:
            self._refuelable.add(partition.partition_id)
        self.events.record_event(
            event_type="partition_retired",
            partition_id=partition.partition_id,
            cycle=self.cycle,
            details={"after": reason},
        )

    def _dispatch(self, partition: Partition, result: SliceResult) -> None:
        if result.status == YIELDED:
            self.current_index = (self.current_index + 1) % len(self._ring)
            return

        self._settle(partition, result)

    def _settle(self, partition: Partition, result: SliceResult) -> None:
        """Apply the completion policy to a resolved call, whichever path resolved it."""
        pid = partition.partition_id
        if self.completion_policy == REINVOKE or pid not in self._ring:
            return

        partition.retire()
        self._remove_from_ring(self._ring.index(pid))
        if result.status == FAILED:
            self._refuelable.add(pid)
        self.events.record_event(
            event_type="partition_retired",
            partition_id=pid,
            cycle=result.cycle,
            details={"after": result.status},
        )

    def _add_to_ring(self, pid: int) -> None:
        idx = bisect.bisect_left(self._ring, pid)
        self._ring.insert(idx, pid)
        # Keep pointing at the partition that was current.
        if len(self._ring) > 1 and idx <= self.current_index:
            self.current_index += 1

    def _remove_from_ring(self, idx: int) -> None:
        self._ring.pop(idx)
        if idx < self.current_index:
            self.current_index -= 1
        if self._ring:
            self.current_index %= len(self._ring)
        else:
            self.current_index = 0

    def _journal(self, result: SliceResult) -> None:
        details: dict[str, Any] = {"fuel_remaining": result.fuel_remaining}
        if result.status == COMPLETED:
            details["results"] = list(result.results)
        elif result.status == FAILED:
            details["reason"] = result.reason
            details["phase"] = result.phase
        self.events.record_event(
            event_type=f"slice_{result.status}",
            partition_id=result.partition_id,
            cycle=result.cycle,
            details=details,
        )

    def _require_active(self) -> None:
        if self._shut_down:
            raise ConflictError("Scheduler has been shut down")
