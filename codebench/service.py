"""Entry point that wires stores, accountant, definitions and exports together."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .aggregation import AggregationOptions
from .config import ExportLimits, WorkbenchConfig
from .coverage import ApprovalCheck, CaseCoverage, CoverageAccountant, CoverageReport
from .definitions import JobDefinitionService
from .metrics import AgreementSummary, coder_pair_agreement
from .pipeline import ExportPipeline, SegmentKey
from .replay import ReplayUrlOptions
from .runtime import CancellationToken
from .schema import initialize_workspace_db
from .shared.database import Database
from .shared.models import JobDefinition
from .store import CodingRecord, JobDefinitionStore, ResponseStore

log = logging.getLogger(__name__)


class CodingWorkbench:
    def __init__(self, database: Database | Path | str, config: Optional[WorkbenchConfig] = None) -> None:
        self.config = config or WorkbenchConfig()
        if not isinstance(database, Database):
            database = initialize_workspace_db(Path(database))
        self.database = database
        self.responses = ResponseStore(database)
        self.definition_store = JobDefinitionStore(database)
        self.accountant = CoverageAccountant(self.responses, self.definition_store)
        self.definitions = JobDefinitionService(self.definition_store, self.responses, self.accountant)

    @classmethod
    def from_config(cls, config: Optional[WorkbenchConfig] = None) -> "CodingWorkbench":
        config = config or WorkbenchConfig()
        return cls(config.database_path, config)

    # ------------------------------------------------------------------ #
    # coverage and approval

    def coverage_overview(self, workspace_id: int) -> CoverageReport:
        return self.accountant.coverage_overview(workspace_id)

    def case_coverage(self, workspace_id: int) -> CaseCoverage:
        return self.accountant.case_coverage(workspace_id)

    def can_approve(self, definition_id: int) -> ApprovalCheck:
        return self.definitions.can_approve(definition_id)

    def approve(self, definition_id: int) -> JobDefinition:
        return self.definitions.approve(definition_id)

    # ------------------------------------------------------------------ #
    # exports

    def pipeline(
        self,
        token: Optional[CancellationToken] = None,
        limits: Optional[ExportLimits] = None,
    ) -> ExportPipeline:
        return ExportPipeline(
            self.responses,
            self.accountant,
            limits=limits or self.config.limits,
            sink_config=self.config.sink,
            token=token,
        )

    async def export_aggregated(
        self,
        workspace_id: int,
        options: Optional[AggregationOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> bytes:
        return await self.pipeline(token).export_aggregated(workspace_id, options or AggregationOptions())

    async def export_by_segment(
        self,
        workspace_id: int,
        segment_key: SegmentKey = SegmentKey.VARIABLE,
        options: Optional[AggregationOptions] = None,
        limits: Optional[ExportLimits] = None,
        token: Optional[CancellationToken] = None,
    ) -> bytes:
        return await self.pipeline(token, limits).export_by_segment(workspace_id, segment_key, options)

    async def export_coding_list(
        self,
        workspace_id: int,
        fmt: str = "csv",
        replay: Optional[ReplayUrlOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> bytes:
        return await self.pipeline(token).export_coding_list(workspace_id, fmt, replay)

    # ------------------------------------------------------------------ #
    # agreement

    def _iter_codings(self, workspace_id: int):
        last_id = 0
        batch_size = self.config.limits.batch_size
        while True:
            page: list[CodingRecord] = self.responses.fetch_codings(workspace_id, last_id, batch_size)
            yield from page
            if len(page) < batch_size:
                return
            last_id = page[-1].id

    def agreement_summary(self, workspace_id: int) -> AgreementSummary:
        summary = coder_pair_agreement(self._iter_codings(workspace_id))
        log.info(
            "agreement summary",
            extra={"workspace_id": workspace_id, "pairs": len(summary.pairs), "average_kappa": summary.average_kappa},
        )
        return summary
