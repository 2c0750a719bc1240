"""Build a ready-to-run scheduler from configuration.

Setup loads every partition named in the manifest and injects its initial
fuel. A partition that fails to load or inject is logged, journaled and left
out; the others still run. Only `EngineFatalError` aborts startup, after
whatever was already loaded has been torn down.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fuelsched.config.settings import LimitsConfig, RuntimeConfig
from fuelsched.engine.interfaces import ExecutionEngine
from fuelsched.engine.simulated import SimulatedEngine
from fuelsched.errors import ConfigError, EngineFatalError, FuelSchedError
from fuelsched.executor.policy import FuelManager
from fuelsched.registry.loader import PartitionSpec, load_manifest
from fuelsched.registry.registry import PartitionRegistry
from fuelsched.registry.schema_validator import SchemaValidator
from fuelsched.scheduler.runner import Scheduler
from fuelsched.storage.interfaces import EventStore
from fuelsched.storage.memory import MemoryEventStore
from fuelsched.storage.sqlite import SQLiteEventStore

logger = logging.getLogger(__name__)


@dataclass
class SetupReport:
    loaded: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


def build_engine(driver: str, *, schema_validator: SchemaValidator | None = None) -> ExecutionEngine:
    if driver == "simulated":
        return SimulatedEngine(schema_validator=schema_validator)
    if driver == "wasmtime":
        # Optional extra: only imported when configured.
        from fuelsched.engine.wasmtime_engine import WasmtimeEngine

        return WasmtimeEngine()
    raise ConfigError(f"Unknown engine driver: {driver}")


def build_event_store(runtime: RuntimeConfig) -> EventStore:
    if runtime.storage.driver == "sqlite":
        return SQLiteEventStore.open(runtime.storage.sqlite_path)
    return MemoryEventStore()


def load_partitions(scheduler: Scheduler, specs: list[PartitionSpec]) -> SetupReport:
    report = SetupReport()
    for spec in specs:
        try:
            scheduler.load_partition(
                spec.partition_id,
                path=spec.module_path,
                name=spec.name,
                entry_point=spec.entry_point,
                args=spec.args,
            )
        except EngineFatalError:
            raise
        except FuelSchedError as e:
            report.failed[spec.partition_id] = str(e)
            logger.error(
                "partition_setup_failed",
                extra={"event": "partition_setup_failed", "partition_id": spec.partition_id, "phase": e.phase},
            )
            continue

        try:
            scheduler.inject_fuel(spec.partition_id, spec.fuel_policy, budget=spec.fuel_budget)
        except EngineFatalError:
            raise
        except FuelSchedError as e:
            # Loaded but unusable: keep it registered (teardown frees it) and out of the run.
            report.failed[spec.partition_id] = str(e)
            scheduler.retire_partition(spec.partition_id, reason="inject_failed", refuelable=True)
            logger.error(
                "partition_setup_failed",
                extra={"event": "partition_setup_failed", "partition_id": spec.partition_id, "phase": e.phase or "inject"},
            )
            continue

        report.loaded.append(spec.partition_id)
    return report


def build_scheduler(runtime: RuntimeConfig, limits: LimitsConfig) -> tuple[Scheduler, SetupReport]:
    schema_validator = SchemaValidator.bundled()
    engine = build_engine(runtime.engine.driver, schema_validator=schema_validator)

    scheduler = Scheduler(
        engine=engine,
        registry=PartitionRegistry(limits.max_partitions),
        fuel_manager=FuelManager(
            budget=runtime.fuel.budget,
            max_fuel=limits.max_fuel_per_injection,
            min_yield_after=limits.min_yield_after,
        ),
        events=build_event_store(runtime),
        completion_policy=runtime.scheduler.completion_policy,
        max_cycles=runtime.scheduler.max_cycles,
    )

    report = SetupReport()
    if runtime.partitions_manifest is not None:
        try:
            manifest = load_manifest(
                runtime.partitions_manifest,
                schema_validator=schema_validator,
                default_yield_after=runtime.fuel.yield_after,
            )
            report = load_partitions(scheduler, manifest.partitions)
        except (ConfigError, EngineFatalError):
            scheduler.shutdown()
            raise

    logger.info(
        "scheduler_ready",
        extra={"event": "scheduler_ready", "code": f"loaded={len(report.loaded)} failed={len(report.failed)}"},
    )
    return scheduler, report
