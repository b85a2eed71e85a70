"""
invoice_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains
    configuration.  It reads the packaged ``defaults.yaml`` (or the file
    named by ``INVOICE_CONFIG_PATH``), applies the ``DATABASE_URL`` and
    ``INVOICE_LOG_LEVEL`` environment overrides, and returns a frozen
    ``AppConfig``.

Architecture position:
    Configuration sits above ``invoice_kernel`` and beside
    ``invoice_services``.  The kernel never imports from here.

Audit relevance:
    Every call emits an ``INVOICE_CONFIG_TRACE`` log entry with the source
    path and checksum.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path

from invoice_config.loader import compute_checksum, load_yaml_file, parse_config
from invoice_config.schema import (
    AppConfig,
    DatabaseSettings,
    LoggingSettings,
    NumberingSettings,
    WorkflowSettings,
)
from invoice_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

ENV_CONFIG_PATH = "INVOICE_CONFIG_PATH"
ENV_DATABASE_URL = "DATABASE_URL"
ENV_LOG_LEVEL = "INVOICE_LOG_LEVEL"


def get_active_config(
    path: Path | str | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: Explicit YAML file.  Defaults to ``$INVOICE_CONFIG_PATH``,
            then the packaged defaults.
        environ: Environment mapping (defaults to ``os.environ``).

    Raises:
        FileNotFoundError: If the selected file does not exist.
        ValueError: If validation fails.
    """
    env = os.environ if environ is None else environ
    source = Path(path or env.get(ENV_CONFIG_PATH) or DEFAULTS_PATH)

    data = load_yaml_file(source)
    overrides: dict[str, str] = {}
    if env.get(ENV_DATABASE_URL):
        data.setdefault("database", {})
        data["database"] = {**(data["database"] or {}), "url": env[ENV_DATABASE_URL]}
        overrides["database.url"] = ENV_DATABASE_URL
    if env.get(ENV_LOG_LEVEL):
        data["logging"] = {**(data.get("logging") or {}), "level": env[ENV_LOG_LEVEL]}
        overrides["logging.level"] = ENV_LOG_LEVEL

    config = parse_config(data, source=str(source))

    _logger.info(
        "INVOICE_CONFIG_TRACE",
        extra={
            "trace_type": "INVOICE_CONFIG_TRACE",
            "config_source": str(source),
            "checksum": config.checksum,
            "env_overrides": sorted(overrides),
        },
    )
    return config


def with_overrides(config: AppConfig, **sections) -> AppConfig:
    """Copy of ``config`` with whole sections replaced (tests, CLI flags)."""
    return dataclasses.replace(config, **sections)


__all__ = [
    "AppConfig",
    "DatabaseSettings",
    "LoggingSettings",
    "NumberingSettings",
    "WorkflowSettings",
    "compute_checksum",
    "get_active_config",
    "load_yaml_file",
    "parse_config",
    "with_overrides",
]
