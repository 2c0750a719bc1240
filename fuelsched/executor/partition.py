"""Partition: one isolated guest program instance.

A partition exclusively owns its engine context, the module and instance
living in it, and at most one in-flight resumable call. The scheduler only
touches the call through `run_slice`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from fuelsched.engine.interfaces import CALL_SUSPENDED, ExecutionEngine, ResumableCall
from fuelsched.errors import ConflictError, EngineError, ExportNotFoundError, FuelSchedError
from fuelsched.executor.state_machine import IDLE, IN_FLIGHT, RELEASED, RETIRED, TransitionRequest, apply_transition, is_runnable

logger = logging.getLogger(__name__)

COMPLETED = "completed"
YIELDED = "yielded"
FAILED = "failed"

DEFAULT_ENTRY_POINT = "main"
DEFAULT_ARGS: tuple[Any, ...] = (10,)


@dataclass(frozen=True)
class SliceResult:
    status: str
    partition_id: int
    cycle: int | None = None
    results: tuple[Any, ...] = ()
    reason: str | None = None
    phase: str | None = None
    fuel_remaining: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "partition_id": self.partition_id,
            "cycle": self.cycle,
            "results": list(self.results),
            "reason": self.reason,
            "phase": self.phase,
            "fuel_remaining": self.fuel_remaining,
        }


class Partition:
    def __init__(
        self,
        *,
        partition_id: int,
        engine: ExecutionEngine,
        context: Any,
        module: Any,
        instance: Any,
        name: str | None = None,
        entry_point: str = DEFAULT_ENTRY_POINT,
        args: Sequence[Any] = DEFAULT_ARGS,
    ):
        self.partition_id = partition_id
        self.name = name or f"partition-{partition_id}"
        self.entry_point = entry_point
        self.args = tuple(args)
        self._engine = engine
        self._context = context
        self._module = module
        self._instance = instance
        self._call: ResumableCall | None = None
        self._state = IDLE
        self.instantiated = instance is not None

        self.fuel_budget = 0
        self.yield_after: int | None = None
        self.pending_result: tuple[Any, ...] | None = None
        self.invocations = 0
        self.completions = 0
        self.yields = 0
        self.failures = 0
        self.last_failure: str | None = None

    @classmethod
    def load(
        cls,
        engine: ExecutionEngine,
        partition_id: int,
        data: bytes,
        *,
        name: str | None = None,
        entry_point: str = DEFAULT_ENTRY_POINT,
        args: Sequence[Any] = DEFAULT_ARGS,
    ) -> "Partition":
        """Compile and instantiate `data` in a fresh context.

        The caller validates the id first. If compiling or instantiating fails
        the context is released before the error propagates.
        """
        context = engine.new_context()
        try:
            module = engine.compile(data)
            instance = engine.instantiate(context, module)
        except Exception as e:
            engine.release_context(context)
            if isinstance(e, FuelSchedError):
                e.with_context(partition_id=partition_id)
            raise

        partition = cls(
            partition_id=partition_id,
            engine=engine,
            context=context,
            module=module,
            instance=instance,
            name=name,
            entry_point=entry_point,
            args=args,
        )
        logger.info("partition_loaded", extra={"event": "partition_loaded", "partition_id": partition_id})
        return partition

    @property
    def state(self) -> str:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._call is not None

    def fuel_remaining(self) -> int | None:
        if self._state == RELEASED:
            return None
        return self._engine.get_fuel_remaining(self._context)

    def inject_fuel(self, amount: int, yield_after: int | None) -> None:
        """Set the fuel counter and the yield interval. Rejected while a call is in flight."""
        if self._call is not None:
            raise ConflictError("Cannot inject fuel while a call is in flight", partition_id=self.partition_id, phase="inject")
        if self._state == RELEASED:
            raise ConflictError("Cannot inject fuel into a released partition", partition_id=self.partition_id, phase="inject")

        try:
            self._engine.set_fuel(self._context, amount)
            self._engine.set_yield_interval(self._context, yield_after)
        except EngineError as e:
            raise e.with_context(partition_id=self.partition_id, phase="inject")

        self.fuel_budget = amount
        self.yield_after = yield_after
        logger.info(
            "fuel_injected",
            extra={"event": "fuel_injected", "partition_id": self.partition_id, "fuel_remaining": amount},
        )

    def run_slice(self, *, cycle: int | None = None) -> SliceResult:
        """Run one fuel-bounded slice: start a call if none is in flight, then poll it once."""
        if not is_runnable(self._state):
            raise ConflictError(f"Partition is {self._state}; cannot run", partition_id=self.partition_id, phase="execute")

        if self._call is None:
            try:
                func = self._engine.lookup_export(self._context, self._instance, self.entry_point)
                call = self._engine.start_call(self._context, func, self.args)
            except (ExportNotFoundError, EngineError) as e:
                return self._failed(e, cycle=cycle)
            self._call = call
            self.invocations += 1
            self._transition(IN_FLIGHT)

        try:
            outcome = self._call.poll()
        except EngineError as e:
            self._call = None
            self._transition(IDLE)
            return self._failed(e, cycle=cycle)

        if outcome is CALL_SUSPENDED:
            self.yields += 1
            logger.debug("partition_yielded", extra={"event": "partition_yielded", "partition_id": self.partition_id, "cycle": cycle})
            return SliceResult(status=YIELDED, partition_id=self.partition_id, cycle=cycle, fuel_remaining=self.fuel_remaining())

        self._call = None
        self._transition(IDLE)
        self.pending_result = outcome.results
        self.completions += 1
        logger.info(
            "partition_completed",
            extra={"event": "partition_completed", "partition_id": self.partition_id, "cycle": cycle},
        )
        return SliceResult(
            status=COMPLETED,
            partition_id=self.partition_id,
            cycle=cycle,
            results=outcome.results,
            fuel_remaining=self.fuel_remaining(),
        )

    def retire(self) -> None:
        """Take the partition out of rotation. It stays instantiated."""
        if self._call is not None:
            self._call.cancel()
            self._call = None
        self._transition(RETIRED)

    def reactivate(self) -> None:
        """Bring a retired partition back into rotation. It must still be instantiated."""
        self._transition(IDLE)
        logger.info("partition_reactivated", extra={"event": "partition_reactivated", "partition_id": self.partition_id})

    def release(self) -> None:
        """Free the context (and with it the instance and module). Idempotent."""
        if self._state == RELEASED:
            return
        if self._call is not None:
            self._call.cancel()
            self._call = None
        self._engine.release_context(self._context)
        self._transition(RELEASED)
        self.instantiated = False
        self._instance = None
        self._module = None
        logger.info("partition_released", extra={"event": "partition_released", "partition_id": self.partition_id})

    def status(self) -> dict[str, Any]:
        return {
            "partition_id": self.partition_id,
            "name": self.name,
            "state": self._state,
            "instantiated": self.instantiated,
            "in_flight": self.in_flight,
            "entry_point": self.entry_point,
            "args": list(self.args),
            "fuel_budget": self.fuel_budget,
            "fuel_remaining": self.fuel_remaining(),
            "yield_after": self.yield_after,
            "pending_result": list(self.pending_result) if self.pending_result is not None else None,
            "invocations": self.invocations,
            "completions": self.completions,
            "yields": self.yields,
            "failures": self.failures,
            "last_failure": self.last_failure,
        }

    def _failed(self, err: FuelSchedError, *, cycle: int | None) -> SliceResult:
        err.with_context(partition_id=self.partition_id, phase="execute")
        self.failures += 1
        self.last_failure = str(err)
        logger.warning(
            "partition_failed",
            extra={
                "event": "partition_failed",
                "partition_id": self.partition_id,
                "cycle": cycle,
                "phase": err.phase,
                "code": getattr(err, "code", None),
            },
        )
        return SliceResult(
            status=FAILED,
            partition_id=self.partition_id,
            cycle=cycle,
            reason=str(err),
            phase=err.phase,
            fuel_remaining=self.fuel_remaining(),
        )

    def _transition(self, new_state: str) -> None:
        self._state = apply_transition(
            TransitionRequest(partition_id=self.partition_id, current_state=self._state, new_state=new_state)
        )
