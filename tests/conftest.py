from __future__ import annotations

from typing import Any

import pytest
import yaml

from fuelsched.engine.simulated import SimulatedEngine
from fuelsched.executor.policy import FuelManager
from fuelsched.registry.registry import PartitionRegistry
from fuelsched.registry.schema_validator import SchemaValidator
from fuelsched.scheduler.runner import RETIRE, Scheduler
from fuelsched.storage.memory import MemoryEventStore


def guest_module(
    *,
    fuel_cost: int = 1000,
    results: list[Any] | None = None,
    params: int | None = 1,
    trap_after: int | None = None,
    start_trap: bool = False,
    extra_exports: dict[str, Any] | None = None,
    name: str = "guest",
) -> bytes:
    main: dict[str, Any] = {"kind": "func", "fuel_cost": fuel_cost, "results": results if results is not None else [55]}
    if params is not None:
        main["params"] = params
    if trap_after is not None:
        main["trap_after"] = trap_after
    spec: dict[str, Any] = {"exports": {"main": main, **(extra_exports or {})}}
    if start_trap:
        spec["start"] = {"trap": True, "message": "start trapped"}
    doc = {"apiVersion": "fuelsched/v1", "kind": "GuestModule", "metadata": {"name": name}, "spec": spec}
    return yaml.safe_dump(doc).encode("utf-8")


@pytest.fixture(scope="session")
def schema_validator() -> SchemaValidator:
    return SchemaValidator.bundled()


@pytest.fixture
def engine(schema_validator: SchemaValidator) -> SimulatedEngine:
    return SimulatedEngine(schema_validator=schema_validator)


@pytest.fixture
def make_scheduler(engine: SimulatedEngine):
    def _make(*, max_partitions: int = 2, completion_policy: str = RETIRE, budget: int = 10_000_000, max_cycles: int | None = None) -> Scheduler:
        return Scheduler(
            engine=engine,
            registry=PartitionRegistry(max_partitions),
            fuel_manager=FuelManager(budget=budget),
            events=MemoryEventStore(),
            completion_policy=completion_policy,
            max_cycles=max_cycles,
        )

    return _make


@pytest.fixture
def make_module():
    return guest_module
