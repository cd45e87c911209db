"""Coverage accounting, multi-coder aggregation and exports for coding workspaces.

Use :class:`CodingWorkbench` as the entry point; it wires the SQLite stores,
the coverage accountant, job-definition lifecycle and the export pipeline.
"""

__version__ = "0.1.0"

from .aggregation import AggregationOptions, ExportShape, PseudoMode, modal_value
from .config import ExportLimits, SinkConfig, WorkbenchConfig
from .errors import (
    ApprovalRefused,
    CodebenchError,
    ConfigurationError,
    ExportCancelled,
    InvalidTransition,
    ResourceLimitExceeded,
    SinkError,
    StoreError,
)
from .pipeline import ExportPipeline, ExportState, SegmentKey
from .replay import ReplayUrlOptions, build_replay_url
from .runtime import CancellationToken
from .service import CodingWorkbench

# Layering overview:
# - shared.*: SQLite helpers, persistent records and composite keys
# - store: paged queries over responses, coding jobs and job definitions
# - cache, coverage, definitions, distribution: accounting and job planning
# - aggregation, sinks, pipeline: export shapes and the streaming writer
# - service: the facade used by the CLI and by embedding applications

__all__ = [
    "__version__",
    "AggregationOptions",
    "ApprovalRefused",
    "CancellationToken",
    "CodebenchError",
    "CodingWorkbench",
    "ConfigurationError",
    "ExportCancelled",
    "ExportLimits",
    "ExportPipeline",
    "ExportShape",
    "ExportState",
    "InvalidTransition",
    "PseudoMode",
    "ReplayUrlOptions",
    "ResourceLimitExceeded",
    "SegmentKey",
    "SinkConfig",
    "SinkError",
    "StoreError",
    "WorkbenchConfig",
    "build_replay_url",
    "modal_value",
]
