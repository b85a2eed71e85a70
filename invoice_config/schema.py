"""
Configuration Schema (``invoice_config.schema``).

Frozen dataclasses for every configuration section.  Defaults here match
``defaults.yaml`` so a partial YAML file is always complete after parsing.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class NumberingSettings:
    """Invoice-number allocation."""

    counter_domain: str = "invoice_number"
    prefix_template: str = "INV-{period}"
    padding: int = 6
    period_format: str = "%Y"


@dataclass(frozen=True)
class WorkflowSettings:
    """Lifecycle orchestration knobs."""

    max_create_attempts: int = 3
    require_rejection_comment: bool = True


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///invoices.db"
    echo: bool = False
    pool_size: int = 20


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class AppConfig:
    """The complete, validated runtime configuration."""

    numbering: NumberingSettings = field(default_factory=NumberingSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: str | None = None
    checksum: str | None = None
