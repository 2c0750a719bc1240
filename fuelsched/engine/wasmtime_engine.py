"""Execution engine adapter over the `wasmtime` Python bindings.

Each partition gets its own `Store` (the isolated, fuel-capable context).
Modules are compiled once against the shared `Engine`.

The bindings only expose synchronous calls: a call runs on its first poll
until it returns, traps or exhausts its fuel. Fuel-yield intervals need the
async call API, which the bindings do not expose, so configuring an interval
is rejected and such partitions fail at inject time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import wasmtime

from fuelsched.engine.interfaces import CallCompleted, ExecutionEngine, PollOutcome, ResumableCall
from fuelsched.errors import (
    CompileError,
    ConflictError,
    EngineError,
    EngineFatalError,
    ExportNotFoundError,
    GuestTrap,
    InstantiateError,
)


@dataclass
class WasmtimeContext:
    store: wasmtime.Store | None
    released: bool = False


def _trap_code(trap: wasmtime.Trap) -> str:
    code = getattr(trap, "trap_code", None)
    if code is None:
        return "trap"
    return str(getattr(code, "name", code)).lower()


class WasmtimeCall(ResumableCall):
    def __init__(self, context: WasmtimeContext, func: wasmtime.Func, args: Sequence[Any]):
        self._context = context
        self._func = func
        self._args = tuple(args)
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def poll(self) -> PollOutcome:
        if self._finished:
            raise ConflictError("Call already resolved")
        self._finished = True
        if self._context.released or self._context.store is None:
            raise EngineError("Context was released while a call was in flight")

        try:
            value = self._func(self._context.store, *self._args)
        except wasmtime.Trap as e:
            raise GuestTrap(f"Trap while calling function: {e.message}", code=_trap_code(e)) from e
        except wasmtime.WasmtimeError as e:
            raise EngineError(f"Error calling function: {e}") from e

        if value is None:
            return CallCompleted(results=())
        if isinstance(value, (list, tuple)):
            return CallCompleted(results=tuple(value))
        return CallCompleted(results=(value,))

    def cancel(self) -> None:
        self._finished = True


class WasmtimeEngine(ExecutionEngine):
    name = "wasmtime"

    def __init__(self) -> None:
        config = wasmtime.Config()
        config.consume_fuel = True
        try:
            self._engine: wasmtime.Engine | None = wasmtime.Engine(config)
        except wasmtime.WasmtimeError as e:
            raise EngineFatalError(f"Failed to create Wasmtime engine: {e}") from e

    def compile(self, data: bytes) -> wasmtime.Module:
        try:
            return wasmtime.Module(self._require_engine(), bytes(data))
        except wasmtime.WasmtimeError as e:
            raise CompileError(f"Failed to compile wasm module: {e}") from e

    def new_context(self) -> WasmtimeContext:
        try:
            return WasmtimeContext(store=wasmtime.Store(self._require_engine()))
        except wasmtime.WasmtimeError as e:
            raise EngineFatalError(f"Failed to create Wasmtime store: {e}") from e

    def instantiate(self, context: WasmtimeContext, module: wasmtime.Module) -> wasmtime.Instance:
        store = self._require_store(context)
        try:
            return wasmtime.Linker(self._require_engine()).instantiate(store, module)
        except wasmtime.Trap as e:
            raise InstantiateError(f"Trap during instantiation: {e.message}") from e
        except wasmtime.WasmtimeError as e:
            raise InstantiateError(f"Error during instantiation: {e}") from e

    def set_fuel(self, context: WasmtimeContext, amount: int) -> None:
        try:
            self._require_store(context).set_fuel(int(amount))
        except wasmtime.WasmtimeError as e:
            raise EngineError(f"Error injecting fuel: {e}") from e

    def set_yield_interval(self, context: WasmtimeContext, interval: int | None) -> None:
        self._require_store(context)
        if interval is not None:
            raise EngineError("Fuel yield intervals require async support, which the wasmtime bindings do not expose")

    def get_fuel_remaining(self, context: WasmtimeContext) -> int:
        try:
            return int(self._require_store(context).get_fuel())
        except wasmtime.WasmtimeError as e:
            raise EngineError(f"Error querying fuel remaining: {e}") from e

    def lookup_export(self, context: WasmtimeContext, instance: wasmtime.Instance, name: str) -> wasmtime.Func:
        store = self._require_store(context)
        try:
            ext = instance.exports(store)[name]
        except KeyError as e:
            raise ExportNotFoundError(name) from e
        if not isinstance(ext, wasmtime.Func):
            raise ExportNotFoundError(name, reason="is not a function")
        return ext

    def start_call(self, context: WasmtimeContext, func: wasmtime.Func, args: Sequence[Any]) -> WasmtimeCall:
        self._require_store(context)
        return WasmtimeCall(context, func, args)

    def release_context(self, context: WasmtimeContext) -> None:
        if context.released:
            raise ConflictError("Context already released")
        context.released = True
        context.store = None

    def close(self) -> None:
        self._engine = None

    def _require_engine(self) -> wasmtime.Engine:
        if self._engine is None:
            raise EngineFatalError("Engine is closed")
        return self._engine

    def _require_store(self, context: WasmtimeContext) -> wasmtime.Store:
        if context.released or context.store is None:
            raise EngineError("Context was released")
        return context.store
