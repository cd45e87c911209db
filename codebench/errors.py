"""Exception types raised by the coding workbench core."""
from __future__ import annotations

from typing import Sequence

from .runtime import CancelledError


class CodebenchError(Exception):
    """Base class for workbench failures."""


class ConfigurationError(CodebenchError):
    """The requested operation cannot run with the current workspace data."""


class ResourceLimitExceeded(CodebenchError):
    """An export would exceed one of the configured size limits."""


class StoreError(CodebenchError):
    """Wraps a failure raised by the response or job-definition store."""


class SinkError(CodebenchError):
    """Wraps a failure raised while writing to a tabular sink."""


class NotFound(CodebenchError):
    pass


class InvalidTransition(CodebenchError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Invalid status transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class ApprovalRefused(CodebenchError):
    """A job definition claims variables that have no cases left."""

    def __init__(self, variables: Sequence[str], action: str = "approve job definition") -> None:
        listed = ", ".join(variables)
        super().__init__(
            f"Cannot {action}: the following variables have no available cases: {listed}"
        )
        self.variables = list(variables)


class RowEnrichmentError(CodebenchError):
    """A single export row could not be built; the row is skipped."""


class SegmentError(CodebenchError):
    """A single export segment could not be built; the segment is skipped."""


class ExportCancelled(CancelledError):
    """The caller cancelled a running export."""
