"""JSON Schema validation for fuelsched documents.

Two document kinds are validated:
- `GuestModule`: the binary format understood by the simulated engine.
- `PartitionManifest`: the list of partitions loaded at setup time.

Schemas ship with the package under `fuelsched/schemas/` as YAML documents that
are valid JSON Schema Draft 2020-12. Validation never touches the network: the
Draft 2020-12 meta-schema is pre-registered locally.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml
from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import SchemaError
from referencing import Registry, Resource

from fuelsched.errors import ConfigError, SchemaValidationError, SchemaViolation


BUNDLED_SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"

_KIND_TO_SCHEMA_FILENAME: dict[str, str] = {
    "GuestModule": "guest_module.schema.yaml",
    "PartitionManifest": "partition_manifest.schema.yaml",
}


def _load_yaml_object(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected YAML object at root: {path}")
    return raw


def _escape_json_pointer_token(token: str) -> str:
    # RFC 6901 escaping.
    return token.replace("~", "~0").replace("/", "~1")


def _json_pointer(path: Iterable[Any]) -> str:
    parts: list[str] = []
    for p in path:
        if isinstance(p, int):
            parts.append(str(p))
        else:
            parts.append(_escape_json_pointer_token(str(p)))
    return "/" + "/".join(parts) if parts else "/"


@dataclass(frozen=True)
class SchemaBundle:
    kind: str
    schema: dict[str, Any]
    source_path: Path


class SchemaValidator:
    """Loads schemas and validates documents by kind."""

    def __init__(self, bundles: dict[str, SchemaBundle], *, strict_formats: bool = True):
        self._bundles = dict(bundles)
        self._strict_formats = strict_formats
        self._validators: dict[str, Draft202012Validator] = {}

    @classmethod
    def load_from_dir(cls, schemas_dir: Path) -> "SchemaValidator":
        schemas_dir = schemas_dir.resolve()
        if not schemas_dir.exists():
            raise ConfigError(f"Schemas directory not found: {schemas_dir}")

        bundles: dict[str, SchemaBundle] = {}
        for kind, filename in _KIND_TO_SCHEMA_FILENAME.items():
            path = (schemas_dir / filename).resolve()
            if not path.exists():
                raise ConfigError(f"Missing required schema file for {kind}: {path}")
            bundles[kind] = SchemaBundle(kind=kind, schema=_load_yaml_object(path), source_path=path)

        return cls(bundles)

    @classmethod
    def bundled(cls) -> "SchemaValidator":
        return cls.load_from_dir(BUNDLED_SCHEMAS_DIR)

    def validate(self, kind: str, document: Any) -> None:
        """Validate a document against the schema for its kind."""
        validator = self._get_or_build_validator(kind)

        violations = [
            SchemaViolation(path=_json_pointer(err.absolute_path), message=err.message)
            for err in validator.iter_errors(document)
        ]
        if violations:
            # Stable order: helps tests and makes errors easier to scan.
            violations.sort(key=lambda v: (v.path, v.message))
            raise SchemaValidationError(kind=kind, violations=violations)

    def _require_bundle(self, kind: str) -> SchemaBundle:
        if kind not in self._bundles:
            raise ConfigError(f"Unknown schema kind: {kind}")
        return self._bundles[kind]

    def _get_or_build_validator(self, kind: str) -> Draft202012Validator:
        if kind in self._validators:
            return self._validators[kind]

        bundle = self._require_bundle(kind)
        schema = bundle.schema

        meta = Draft202012Validator.META_SCHEMA
        meta_id = str(meta.get("$id", "https://json-schema.org/draft/2020-12/schema"))
        registry = Registry().with_resource(meta_id, Resource.from_contents(meta))

        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as e:
            raise ConfigError(f"Invalid schema for {kind} in {bundle.source_path}: {e.message}") from e

        format_checker = FormatChecker() if self._strict_formats else None
        validator = Draft202012Validator(schema, format_checker=format_checker, registry=registry)
        self._validators[kind] = validator
        return validator
