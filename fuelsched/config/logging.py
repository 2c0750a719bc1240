"""Logging helpers.

The runtime uses Python logging with a JSON formatter. Every record about a
partition carries its id, so a failure can be traced to one partition and
one phase.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from fuelsched.errors import ConfigError

_STRUCTURED_EXTRAS = ("event", "partition_id", "cycle", "phase", "fuel_remaining", "code")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Common structured extras (when provided).
        for k in _STRUCTURED_EXTRAS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True, default=str)


def load_logging_config(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read logging config: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid logging config YAML root object: {path}")
    return raw


def apply_logging_config(path: Path) -> None:
    logging.config.dictConfig(load_logging_config(path))
