"""Partition manifest and module binary loading.

The manifest is configuration, not state: it lists the fixed partition set
loaded at setup time. Module paths resolve relative to the manifest file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from fuelsched.errors import ConfigError, LoadIOError
from fuelsched.executor.partition import DEFAULT_ARGS, DEFAULT_ENTRY_POINT
from fuelsched.executor.policy import DEFAULT_YIELD_AFTER, NONE, FuelPolicy
from fuelsched.registry.schema_validator import SchemaValidator
from fuelsched.utils import resolve_path


@dataclass(frozen=True)
class PartitionSpec:
    partition_id: int
    module_path: Path
    name: str | None = None
    entry_point: str = DEFAULT_ENTRY_POINT
    args: tuple[Any, ...] = DEFAULT_ARGS
    fuel_policy: FuelPolicy = field(default_factory=FuelPolicy.none)
    fuel_budget: int | None = None


@dataclass(frozen=True)
class PartitionManifest:
    path: Path
    partitions: list[PartitionSpec]


def read_module_bytes(path: Path, *, partition_id: int | None = None) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise LoadIOError(f"Error loading file: {path}: {e}", partition_id=partition_id) from e


def load_yaml_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing required config file: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML root object in {path} (expected object)")
    return data


def load_manifest(path: Path, *, schema_validator: SchemaValidator, default_yield_after: int = DEFAULT_YIELD_AFTER) -> PartitionManifest:
    path = path.resolve()
    doc = load_yaml_document(path)
    schema_validator.validate("PartitionManifest", doc)

    base_dir = path.parent
    specs: list[PartitionSpec] = []
    seen: set[int] = set()
    for raw in doc["spec"]["partitions"]:
        pid = int(raw["partition_id"])
        if pid in seen:
            raise ConfigError(f"Duplicate partition_id in manifest {path}: {pid}", partition_id=pid, phase="config")
        seen.add(pid)

        fuel = raw.get("fuel") or {}
        policy = FuelPolicy.parse(str(fuel.get("policy", NONE)), fuel.get("quantum"), default_quantum=default_yield_after)
        specs.append(
            PartitionSpec(
                partition_id=pid,
                module_path=resolve_path(base_dir, str(raw["module"])),
                name=raw.get("name"),
                entry_point=str(raw.get("entry_point", DEFAULT_ENTRY_POINT)),
                args=tuple(raw.get("args", DEFAULT_ARGS)),
                fuel_policy=policy,
                fuel_budget=fuel.get("budget"),
            )
        )

    return PartitionManifest(path=path, partitions=specs)
