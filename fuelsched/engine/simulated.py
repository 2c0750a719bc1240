"""Deterministic metered engine.

The simulated engine executes `GuestModule` documents (YAML, validated against
`schemas/guest_module.schema.yaml`) instead of real bytecode. Each exported
function declares the fuel it needs to finish; a call burns that fuel from its
context and stops at exactly the boundaries a fuel-metering engine would:
- every `yield_interval` units when an interval is configured (suspended)
- when the context runs dry (`GuestTrap` with code `out_of_fuel`)
- when the declared `trap_after` point is reached (`GuestTrap`)

Calls are generators, so a suspended call keeps all of its progress between
polls and resumes where it stopped.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Generator, Sequence

import yaml

from fuelsched.engine.interfaces import CALL_SUSPENDED, CallCompleted, ExecutionEngine, PollOutcome, ResumableCall
from fuelsched.errors import (
    CompileError,
    ConflictError,
    EngineError,
    EngineFatalError,
    ExportNotFoundError,
    GuestTrap,
    InstantiateError,
    SchemaValidationError,
)
from fuelsched.registry.schema_validator import SchemaValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuestExport:
    name: str
    kind: str
    params: int | None = None
    fuel_cost: int = 0
    results: tuple[Any, ...] = ()
    trap_after: int | None = None
    trap_message: str = "wasm trap: wasm `unreachable` instruction executed"


@dataclass(frozen=True)
class SimulatedModule:
    name: str
    exports: dict[str, GuestExport]
    start_trap: bool = False
    start_message: str = "start function trapped"


@dataclass
class SimulatedInstance:
    module: SimulatedModule
    context_id: int


@dataclass
class SimulatedContext:
    context_id: int
    fuel: int = 0
    yield_interval: int | None = None
    module: SimulatedModule | None = None
    instance: SimulatedInstance | None = None
    released: bool = False
    fuel_consumed: int = 0


class SimulatedCall(ResumableCall):
    def __init__(self, context: SimulatedContext, export: GuestExport, args: Sequence[Any]):
        self._context = context
        self._export = export
        self.args = tuple(args)
        self.polls = 0
        self._finished = False
        self._steps = self._execute()

    @property
    def finished(self) -> bool:
        return self._finished

    def poll(self) -> PollOutcome:
        if self._finished:
            raise ConflictError(f"Call to '{self._export.name}' already resolved")
        if self._context.released:
            self._finished = True
            raise EngineError("Context was released while a call was in flight")

        self.polls += 1
        try:
            next(self._steps)
        except StopIteration as stop:
            self._finished = True
            return CallCompleted(results=tuple(stop.value))
        except EngineError:
            self._finished = True
            raise
        return CALL_SUSPENDED

    def cancel(self) -> None:
        if not self._finished:
            self._steps.close()
            self._finished = True

    def _execute(self) -> Generator[None, None, tuple[Any, ...]]:
        export = self._export
        limit = export.fuel_cost
        trap_at = export.trap_after if export.trap_after is not None and export.trap_after < limit else None
        stop_at = trap_at if trap_at is not None else limit
        consumed = 0

        while True:
            ctx = self._context
            budget = stop_at - consumed
            if ctx.yield_interval:
                budget = min(budget, ctx.yield_interval)

            burn = min(budget, ctx.fuel)
            ctx.fuel -= burn
            ctx.fuel_consumed += burn
            consumed += burn

            if trap_at is not None and consumed >= trap_at:
                raise GuestTrap(export.trap_message, code="unreachable")
            if consumed >= limit:
                return export.results
            if burn < budget:
                raise GuestTrap("all fuel consumed by WebAssembly", code="out_of_fuel")
            # Yield-interval boundary: park the call with its progress intact.
            yield


class SimulatedEngine(ExecutionEngine):
    """In-process engine for tests, demos and hosts without a Wasm runtime.

    `max_contexts` caps how many contexts may be alive at once; exceeding it
    raises `EngineFatalError`, like a failed global allocation.
    """

    name = "simulated"

    def __init__(self, *, schema_validator: SchemaValidator | None = None, max_contexts: int | None = None):
        self._schemas = schema_validator or SchemaValidator.bundled()
        self._max_contexts = max_contexts
        self._ids = itertools.count()
        self._contexts: dict[int, SimulatedContext] = {}
        self.released_contexts: list[int] = []
        self.closed = False

    @property
    def live_contexts(self) -> int:
        return len(self._contexts)

    def compile(self, data: bytes) -> SimulatedModule:
        self._require_open()
        try:
            doc = yaml.safe_load(bytes(data).decode("utf-8"))
        except (UnicodeDecodeError, yaml.YAMLError) as e:
            raise CompileError(f"Failed to compile module: not a GuestModule document ({e})") from e
        try:
            self._schemas.validate("GuestModule", doc)
        except SchemaValidationError as e:
            first = e.violations[0]
            raise CompileError(f"Failed to compile module: {first.path}: {first.message}", details=e.violations) from e

        spec = doc["spec"]
        start = spec.get("start") or {}
        exports = {
            name: GuestExport(
                name=name,
                kind=raw["kind"],
                params=raw.get("params"),
                fuel_cost=int(raw.get("fuel_cost", 0)),
                results=tuple(raw.get("results", [])),
                trap_after=raw.get("trap_after"),
                trap_message=raw.get("trap_message", GuestExport.trap_message),
            )
            for name, raw in spec["exports"].items()
        }
        return SimulatedModule(
            name=str(doc["metadata"]["name"]),
            exports=exports,
            start_trap=bool(start.get("trap", False)),
            start_message=str(start.get("message", SimulatedModule.start_message)),
        )

    def new_context(self) -> SimulatedContext:
        self._require_open()
        if self._max_contexts is not None and len(self._contexts) >= self._max_contexts:
            raise EngineFatalError(f"Failed to create context (limit of {self._max_contexts} live contexts reached)")
        ctx = SimulatedContext(context_id=next(self._ids))
        self._contexts[ctx.context_id] = ctx
        return ctx

    def instantiate(self, context: SimulatedContext, module: SimulatedModule) -> SimulatedInstance:
        self._require_live(context)
        if module.start_trap:
            raise InstantiateError(f"Error during instantiation: {module.start_message}")
        context.module = module
        context.instance = SimulatedInstance(module=module, context_id=context.context_id)
        return context.instance

    def set_fuel(self, context: SimulatedContext, amount: int) -> None:
        self._require_live(context)
        if amount < 0:
            raise EngineError(f"Fuel amount must be non-negative (got {amount})")
        context.fuel = int(amount)

    def set_yield_interval(self, context: SimulatedContext, interval: int | None) -> None:
        self._require_live(context)
        if interval is not None and interval <= 0:
            raise EngineError(f"Yield interval must be positive (got {interval})")
        context.yield_interval = interval

    def get_fuel_remaining(self, context: SimulatedContext) -> int:
        self._require_live(context)
        return context.fuel

    def lookup_export(self, context: SimulatedContext, instance: SimulatedInstance, name: str) -> GuestExport:
        self._require_live(context)
        if instance.context_id != context.context_id:
            raise EngineError("Instance does not belong to this context")
        export = instance.module.exports.get(name)
        if export is None:
            raise ExportNotFoundError(name)
        if export.kind != "func":
            raise ExportNotFoundError(name, reason=f"is not a function (kind={export.kind})")
        return export

    def start_call(self, context: SimulatedContext, func: GuestExport, args: Sequence[Any]) -> SimulatedCall:
        self._require_live(context)
        if func.params is not None and len(args) != func.params:
            raise EngineError(f"Function '{func.name}' expects {func.params} argument(s), got {len(args)}")
        return SimulatedCall(context, func, args)

    def release_context(self, context: SimulatedContext) -> None:
        if context.released:
            raise ConflictError(f"Context {context.context_id} already released")
        context.released = True
        context.instance = None
        context.module = None
        self._contexts.pop(context.context_id, None)
        self.released_contexts.append(context.context_id)

    def close(self) -> None:
        if self._contexts:
            logger.warning(
                "engine_closed_with_live_contexts",
                extra={"event": "engine_closed_with_live_contexts", "code": len(self._contexts)},
            )
        self.closed = True

    def _require_open(self) -> None:
        if self.closed:
            raise EngineFatalError("Engine is closed")

    def _require_live(self, context: SimulatedContext) -> None:
        self._require_open()
        if context.released:
            raise EngineError(f"Context {context.context_id} was released")
