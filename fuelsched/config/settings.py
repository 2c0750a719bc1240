"""Configuration loader for the scheduler runtime.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fuelsched.errors import ConfigError
from fuelsched.executor.policy import DEFAULT_FUEL_BUDGET, DEFAULT_YIELD_AFTER
from fuelsched.registry.loader import load_yaml_document
from fuelsched.registry.registry import DEFAULT_MAX_PARTITIONS
from fuelsched.scheduler.runner import COMPLETION_POLICIES, RETIRE
from fuelsched.utils import resolve_path

ENGINE_DRIVERS = ("simulated", "wasmtime")
STORAGE_DRIVERS = ("memory", "sqlite")


@dataclass(frozen=True)
class ServiceConfig:
    host: str
    port: int


@dataclass(frozen=True)
class EngineConfig:
    driver: str


@dataclass(frozen=True)
class SchedulerConfig:
    completion_policy: str
    max_cycles: int | None


@dataclass(frozen=True)
class FuelConfig:
    budget: int
    yield_after: int


@dataclass(frozen=True)
class StorageConfig:
    driver: str
    sqlite_path: Path


@dataclass(frozen=True)
class RuntimeConfig:
    engine: EngineConfig
    scheduler: SchedulerConfig
    fuel: FuelConfig
    storage: StorageConfig
    service: ServiceConfig
    partitions_manifest: Path | None
    config_dir: Path


@dataclass(frozen=True)
class LimitsConfig:
    max_partitions: int
    max_fuel_per_injection: int | None
    min_yield_after: int


def _as_int(raw: Any, name: str, *, minimum: int | None = None) -> int:
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {name}: expected integer, got {raw!r}")
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {name}: expected integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ConfigError(f"Invalid {name}: must be >= {minimum} (got {value})")
    return value


def _choice(raw: Any, name: str, allowed: tuple[str, ...]) -> str:
    value = str(raw)
    if value not in allowed:
        raise ConfigError(f"Invalid {name}: {value} (expected one of {', '.join(allowed)})")
    return value


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = load_yaml_document(runtime_config_path)

    engine_raw = raw.get("engine", {})
    scheduler_raw = raw.get("scheduler", {})
    fuel_raw = raw.get("fuel", {})
    storage_raw = raw.get("storage", {})
    service_raw = raw.get("service", {})

    engine = EngineConfig(driver=_choice(engine_raw.get("driver", "simulated"), "engine.driver", ENGINE_DRIVERS))

    max_cycles_raw = scheduler_raw.get("max_cycles")
    scheduler = SchedulerConfig(
        completion_policy=_choice(scheduler_raw.get("completion_policy", RETIRE), "scheduler.completion_policy", COMPLETION_POLICIES),
        max_cycles=None if max_cycles_raw is None else _as_int(max_cycles_raw, "scheduler.max_cycles", minimum=0),
    )

    fuel = FuelConfig(
        budget=_as_int(fuel_raw.get("budget", DEFAULT_FUEL_BUDGET), "fuel.budget", minimum=0),
        yield_after=_as_int(fuel_raw.get("yield_after", DEFAULT_YIELD_AFTER), "fuel.yield_after", minimum=1),
    )

    sqlite_path = resolve_path(cfg_dir, str(storage_raw.get("sqlite", {}).get("path", "../state/fuelsched.sqlite")))
    storage = StorageConfig(
        driver=_choice(storage_raw.get("driver", "memory"), "storage.driver", STORAGE_DRIVERS),
        sqlite_path=sqlite_path,
    )

    service = ServiceConfig(
        host=str(service_raw.get("host", "127.0.0.1")),
        port=_as_int(service_raw.get("port", 8080), "service.port", minimum=1),
    )

    manifest_raw = raw.get("partitions_manifest")
    manifest = resolve_path(cfg_dir, str(manifest_raw)) if manifest_raw else None

    return RuntimeConfig(
        engine=engine,
        scheduler=scheduler,
        fuel=fuel,
        storage=storage,
        service=service,
        partitions_manifest=manifest,
        config_dir=cfg_dir,
    )


def load_limits_config(limits_path: Path) -> LimitsConfig:
    raw = load_yaml_document(limits_path)

    partitions = raw.get("partitions", {})
    fuel = raw.get("fuel", {})
    max_fuel = fuel.get("max_fuel_per_injection")

    return LimitsConfig(
        max_partitions=_as_int(partitions.get("max_partitions", DEFAULT_MAX_PARTITIONS), "partitions.max_partitions", minimum=1),
        max_fuel_per_injection=None if max_fuel is None else _as_int(max_fuel, "fuel.max_fuel_per_injection", minimum=0),
        min_yield_after=_as_int(fuel.get("min_yield_after", 1), "fuel.min_yield_after", minimum=1),
    )


def _env_path(name: str) -> Path | None:
    v = os.environ.get(name)
    if not v:
        return None
    return Path(v)


def default_config_paths() -> tuple[Path, Path, Path]:
    # Default to paths relative to the working directory, overridable per file.
    runtime_path = _env_path("FUELSCHED_RUNTIME_CONFIG") or Path.cwd() / "config" / "runtime.yaml"
    logging_path = _env_path("FUELSCHED_LOGGING_CONFIG") or Path.cwd() / "config" / "logging.yaml"
    limits_path = _env_path("FUELSCHED_LIMITS_CONFIG") or Path.cwd() / "config" / "limits.yaml"
    return runtime_path, logging_path, limits_path
