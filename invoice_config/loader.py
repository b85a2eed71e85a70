"""
Configuration Loader (``invoice_config.loader``).

Responsibility
--------------
Loads a YAML file and parses it into the frozen ``invoice_config.schema``
dataclasses.  Runtime code goes through ``invoice_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Values are type-checked; a wrong type raises ``ValueError`` naming the
  key.  Missing keys fall back to schema defaults.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section or invalid value  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from invoice_config.schema import (
    AppConfig,
    DatabaseSettings,
    LoggingSettings,
    NumberingSettings,
    WorkflowSettings,
)

_SECTIONS = frozenset({"numbering", "workflow", "database", "logging"})
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a mapping")
    return value


def _int(section: str, data: dict[str, Any], key: str, default: int, minimum: int, maximum: int | None = None) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{section}.{key} must be an integer, got {value!r}")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ValueError(f"{section}.{key} must be {bound}, got {value}")
    return value


def _bool(section: str, data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{section}.{key} must be true or false, got {value!r}")
    return value


def _str(section: str, data: dict[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{section}.{key} must be a non-empty string, got {value!r}")
    return value


def parse_numbering(data: dict[str, Any]) -> NumberingSettings:
    defaults = NumberingSettings()
    template = _str("numbering", data, "prefix_template", defaults.prefix_template)
    try:
        template.format(period="2000")
    except (KeyError, IndexError, ValueError) as exc:
        raise ValueError(
            f"numbering.prefix_template may only use the {{period}} field: {exc}"
        ) from None
    return NumberingSettings(
        counter_domain=_str("numbering", data, "counter_domain", defaults.counter_domain),
        prefix_template=template,
        padding=_int("numbering", data, "padding", defaults.padding, 1, 12),
        period_format=_str("numbering", data, "period_format", defaults.period_format),
    )


def parse_workflow(data: dict[str, Any]) -> WorkflowSettings:
    defaults = WorkflowSettings()
    return WorkflowSettings(
        max_create_attempts=_int(
            "workflow", data, "max_create_attempts", defaults.max_create_attempts, 1
        ),
        require_rejection_comment=_bool(
            "workflow", data, "require_rejection_comment", defaults.require_rejection_comment
        ),
    )


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    defaults = DatabaseSettings()
    return DatabaseSettings(
        url=_str("database", data, "url", defaults.url),
        echo=_bool("database", data, "echo", defaults.echo),
        pool_size=_int("database", data, "pool_size", defaults.pool_size, 1),
    )


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    level = _str("logging", data, "level", LoggingSettings().level).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")
    return LoggingSettings(level=level)


def parse_config(data: dict[str, Any], source: str | None = None) -> AppConfig:
    """
    Parse a whole configuration mapping.

    Postconditions:
        - Returns an ``AppConfig`` whose ``checksum`` identifies ``data``.
    """
    unknown = set(data) - _SECTIONS
    if unknown:
        raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

    return AppConfig(
        numbering=parse_numbering(_section(data, "numbering")),
        workflow=parse_workflow(_section(data, "workflow")),
        database=parse_database(_section(data, "database")),
        logging=parse_logging(_section(data, "logging")),
        source=source,
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    SHA-256 of the canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
