"""Configuration dataclasses for the workbench exports and services."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


@dataclass
class ExportLimits:
    batch_size: int = field(default_factory=lambda: _env_int("CODEBENCH_EXPORT_BATCH_SIZE", 5000))
    max_segments: int = field(default_factory=lambda: _env_int("CODEBENCH_EXPORT_MAX_SEGMENTS", 100))
    max_rows_per_segment: int = field(
        default_factory=lambda: _env_int("CODEBENCH_EXPORT_MAX_ROWS_PER_SEGMENT", 10000)
    )
    max_aggregated_units: int = field(
        default_factory=lambda: _env_int("CODEBENCH_EXPORT_MAX_AGGREGATED_UNITS", 1_000_000)
    )

    def validate(self) -> "ExportLimits":
        for name in ("batch_size", "max_segments", "max_rows_per_segment", "max_aggregated_units"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"Export limit {name} must be a positive integer, got {value!r}")
        return self


@dataclass
class SinkConfig:
    # characters buffered by the CSV sink before it asks the writer to drain
    high_water_mark: int = field(
        default_factory=lambda: _env_int("CODEBENCH_SINK_HIGH_WATER_MARK", 65536)
    )
    spool_max_bytes: int = 8 * 1024 * 1024


@dataclass
class WorkbenchConfig:
    database_path: Path = field(
        default_factory=lambda: Path(os.getenv("CODEBENCH_DB", "codebench.db"))
    )
    limits: ExportLimits = field(default_factory=ExportLimits)
    sink: SinkConfig = field(default_factory=SinkConfig)
