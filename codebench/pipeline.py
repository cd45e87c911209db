"""Bounded-memory export pipeline.

An export walks the store with a last-id cursor, enriches every page
concurrently, hands the rows to a shape strategy and writes them to a tabular
sink, honouring the sink's backpressure. Between pages it passes a
:class:`~codebench.runtime.Checkpoint` that yields to the event loop and
observes the caller's cancellation token.

States: ``INIT -> PAGING -> FINALIZE -> COMPLETED``, with ``FAILED`` and
``CANCELLED`` reachable from any non-terminal state.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from .aggregation import (
    COMMENTS_COLUMN,
    COMMENT_SEPARATOR,
    DEVIATION_COLUMN,
    MODAL_COLUMN,
    PERSON_COLUMNS,
    AggregationOptions,
    CoderPseudonymizer,
    EnrichedCoding,
    ExportShape,
    modal_value,
    strategy_for,
)
from .cache import VariablePageCache
from .config import ExportLimits, SinkConfig
from .coverage import CoverageAccountant
from .errors import (
    ConfigurationError,
    ExportCancelled,
    ResourceLimitExceeded,
    RowEnrichmentError,
    SegmentError,
    StoreError,
)
from .replay import ReplayUrlOptions, build_replay_url
from .runtime import CancellationToken, Checkpoint
from .shared.keys import PersonKey, VariableKey
from .sinks import TabularSink, WorkbookSink, sink_for
from .store import CodingRecord, ResponseContext, ResponseStore

log = logging.getLogger(__name__)

T = TypeVar("T")

CODING_LIST_COLUMNS = [
    "unit_key",
    "unit_alias",
    "person_login",
    "person_code",
    "person_group",
    "booklet_name",
    "variable_id",
    "variable_page",
    "variable_anchor",
    "latest_status",
    "latest_code",
    "latest_score",
    "url",
]
DOUBLE_CODED_COLUMN = "Double Coded"


class ExportState(str, Enum):
    INIT = "init"
    PAGING = "paging"
    FINALIZE = "finalize"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SegmentKey(str, Enum):
    VARIABLE = "variable"
    CODER = "coder"


@dataclass
class ExportStats:
    pages: int = 0
    rows_read: int = 0
    rows_written: int = 0
    rows_skipped: int = 0
    segments_written: int = 0
    segments_skipped: int = 0


async def iter_pages(
    fetch: Callable[[int, int], Awaitable[List[T]]],
    batch_size: int,
    checkpoint: Checkpoint,
    cursor: Callable[[T], int],
) -> AsyncIterator[List[T]]:
    """Yield pages from ``fetch(after_id, limit)`` until a short page arrives."""
    last_id = 0
    while True:
        page = await fetch(last_id, batch_size)
        if not page:
            return
        yield page
        await checkpoint("page")
        if len(page) < batch_size:
            return
        last_id = cursor(page[-1])


class ExportPipeline:
    """Runs one export. Create a new pipeline per export invocation."""

    def __init__(
        self,
        responses: ResponseStore,
        accountant: CoverageAccountant,
        limits: Optional[ExportLimits] = None,
        sink_config: Optional[SinkConfig] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.responses = responses
        self.accountant = accountant
        self.limits = (limits or ExportLimits()).validate()
        self.sink_config = sink_config or SinkConfig()
        self.checkpoint = Checkpoint(token, error=ExportCancelled)
        self.state = ExportState.INIT
        self.stats = ExportStats()
        self.cache: Optional[VariablePageCache] = None

    # ------------------------------------------------------------------ #
    # lifecycle

    async def _run(self, workspace_id: int, body: Callable[[], Awaitable[bytes]]) -> bytes:
        self.state = ExportState.INIT
        self.cache = VariablePageCache.for_export(workspace_id, self.responses)
        self.cache.clear()
        try:
            await self.checkpoint("start")
            data = await body()
        except ExportCancelled:
            self.state = ExportState.CANCELLED
            log.info("export cancelled", extra={"workspace_id": workspace_id, "rows": self.stats.rows_written})
            raise
        except Exception:
            self.state = ExportState.FAILED
            log.exception("export failed", extra={"workspace_id": workspace_id})
            raise
        finally:
            self.cache.clear()
        self.state = ExportState.COMPLETED
        log.info(
            "export completed",
            extra={
                "workspace_id": workspace_id,
                "rows": self.stats.rows_written,
                "skipped": self.stats.rows_skipped,
                "segments": self.stats.segments_written,
            },
        )
        return data

    async def _call(self, func: Callable[..., T], *args, **kwargs) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _write(self, sink: TabularSink, row: Sequence[object]) -> None:
        if not sink.write_row(row):
            await sink.drain()
        self.stats.rows_written += 1

    async def _require_coding_jobs(self, workspace_id: int) -> None:
        if await self._call(self.responses.count_coding_jobs, workspace_id) == 0:
            raise ConfigurationError("No coding jobs found for this workspace")

    async def _manual_filter(self, workspace_id: int, options: AggregationOptions) -> Callable[[VariableKey], bool]:
        if not options.exclude_auto_coded:
            return lambda key: True
        await self.cache.exclusions()
        keys = await self._call(self.responses.coding_counts_by_variable, workspace_id)
        if not any(self.accountant.is_manual_variable(key, self.cache) for key in keys):
            raise ConfigurationError("No manual coding variables found in the coding list for this workspace")
        return lambda key: self.accountant.is_manual_variable(key, self.cache)

    # ------------------------------------------------------------------ #
    # enrichment

    async def _replay_url(
        self,
        replay: ReplayUrlOptions,
        person: PersonKey,
        booklet: str,
        unit_name: str,
        variable_id: str,
    ) -> str:
        page = await self.cache.page_for(unit_name, variable_id)
        return build_replay_url(
            replay.server_url,
            person.login,
            person.code,
            person.group,
            booklet,
            unit_name,
            variable_id,
            page,
            replay.auth_token,
        )

    async def _enrich_coding(self, record: CodingRecord, replay: ReplayUrlOptions) -> EnrichedCoding:
        try:
            url = await self._replay_url(replay, record.person, record.booklet, record.unit_name, record.variable_id)
        except (TypeError, ValueError) as exc:
            raise RowEnrichmentError(f"Could not build replay link for coding {record.id}: {exc}") from exc
        return EnrichedCoding(record, url)

    async def _gather_rows(self, coros: Sequence[Awaitable[T]], ids: Sequence[int]) -> List[T]:
        """Run the per-row coroutines of one page; failed rows are logged and dropped."""
        results = await asyncio.gather(*coros, return_exceptions=True)
        rows: List[T] = []
        for row_id, result in zip(ids, results):
            if isinstance(result, ExportCancelled):
                raise result
            if isinstance(result, Exception):
                self.stats.rows_skipped += 1
                log.warning("row skipped", extra={"row_id": row_id, "error": str(result)})
                continue
            rows.append(result)
        return rows

    async def _enrich_codings(
        self,
        records: Sequence[CodingRecord],
        replay: Optional[ReplayUrlOptions],
    ) -> List[EnrichedCoding]:
        if replay is None or not replay.enabled:
            return [EnrichedCoding(record) for record in records]
        return await self._gather_rows(
            [self._enrich_coding(record, replay) for record in records],
            [record.id for record in records],
        )

    # ------------------------------------------------------------------ #
    # aggregated exports

    async def export_aggregated(self, workspace_id: int, options: AggregationOptions) -> bytes:
        async def body() -> bytes:
            shape = ExportShape(options.shape)
            await self._require_coding_jobs(workspace_id)
            if not shape.is_tabular_text:
                units = await self._call(self.responses.count_coding_units, workspace_id)
                if units > self.limits.max_aggregated_units:
                    raise ResourceLimitExceeded(
                        f"Aggregated export would hold {units} codings, "
                        f"more than the limit of {self.limits.max_aggregated_units}"
                    )
            keep = await self._manual_filter(workspace_id, options)
            coders = await self._call(self.responses.coder_names, workspace_id)
            strategy = strategy_for(options, coders)
            sink = sink_for("csv" if shape.is_tabular_text else "xlsx", self.sink_config)
            if strategy.streaming:
                sink.add_section("Codings", strategy.columns())

            await self.checkpoint("fetch")
            self.state = ExportState.PAGING

            async def fetch(after_id: int, limit: int) -> List[CodingRecord]:
                return await self._call(self.responses.fetch_codings, workspace_id, after_id, limit)

            async for page in iter_pages(fetch, self.limits.batch_size, self.checkpoint, lambda r: r.id):
                self.stats.pages += 1
                self.stats.rows_read += len(page)
                records = [record for record in page if keep(record.key)]
                for coding in await self._enrich_codings(records, options.replay):
                    row = strategy.accept(coding)
                    if row is not None:
                        await self._write(sink, row)

            self.state = ExportState.FINALIZE
            if not strategy.streaming:
                sink.add_section("Results", strategy.columns())
                for row in strategy.rows():
                    await self._write(sink, row)
            return sink.finish()

        return await self._run(workspace_id, body)

    # ------------------------------------------------------------------ #
    # segmented exports

    async def export_by_segment(
        self,
        workspace_id: int,
        segment_key: SegmentKey,
        options: Optional[AggregationOptions] = None,
    ) -> bytes:
        options = options or AggregationOptions()

        async def body() -> bytes:
            await self._require_coding_jobs(workspace_id)
            keep = await self._manual_filter(workspace_id, options)
            coders = await self._call(self.responses.coder_names, workspace_id)
            pseudonymize = (
                CoderPseudonymizer(coders, options.pseudo_mode, options.pseudo_seed)
                if options.anonymize
                else (lambda coder: coder)
            )
            if SegmentKey(segment_key) is SegmentKey.VARIABLE:
                counts = await self._call(self.responses.coding_counts_by_variable, workspace_id)
                segments = [(key, count) for key, count in sorted(counts.items()) if keep(key)]
            else:
                by_coder = await self._call(self.responses.coding_counts_by_coder, workspace_id)
                segments = sorted(by_coder.items())

            if len(segments) > self.limits.max_segments:
                log.warning(
                    "too many segments, truncating",
                    extra={"segments": len(segments), "limit": self.limits.max_segments},
                )
                segments = segments[: self.limits.max_segments]

            sink = WorkbookSink()
            await self.checkpoint("fetch")
            self.state = ExportState.PAGING
            for segment, count in segments:
                await self.checkpoint("segment")
                if count > self.limits.max_rows_per_segment:
                    self.stats.segments_skipped += 1
                    log.warning(
                        "segment skipped, too many rows",
                        extra={"segment": str(segment), "rows": count, "limit": self.limits.max_rows_per_segment},
                    )
                    continue
                try:
                    if isinstance(segment, VariableKey):
                        name, columns, rows = await self._variable_segment(
                            workspace_id, segment, options, pseudonymize
                        )
                    else:
                        name, columns, rows = await self._coder_segment(
                            workspace_id, segment, keep, pseudonymize(segment)
                        )
                except (SegmentError, StoreError) as exc:
                    self.stats.segments_skipped += 1
                    log.error("segment skipped", extra={"segment": str(segment), "error": str(exc)})
                    continue
                sink.add_section(name, columns)
                for row in rows:
                    await self._write(sink, row)
                self.stats.segments_written += 1

            self.state = ExportState.FINALIZE
            if self.stats.segments_written == 0:
                raise ConfigurationError(
                    "No worksheets could be created within the memory limits. "
                    "Narrow the export or raise the segment limits."
                )
            return sink.finish()

        return await self._run(workspace_id, body)

    async def _segment_codings(self, workspace_id: int, **filters) -> List[CodingRecord]:
        records: List[CodingRecord] = []

        async def fetch(after_id: int, limit: int) -> List[CodingRecord]:
            return await self._call(self.responses.fetch_codings, workspace_id, after_id, limit, **filters)

        async for page in iter_pages(fetch, self.limits.batch_size, self.checkpoint, lambda r: r.id):
            self.stats.pages += 1
            self.stats.rows_read += len(page)
            records.extend(page)
            if len(records) > self.limits.max_rows_per_segment:
                raise SegmentError(f"Segment grew beyond {self.limits.max_rows_per_segment} rows while reading")
        return records

    async def _variable_segment(self, workspace_id, key, options, pseudonymize):
        records = [
            record
            for record in await self._segment_codings(workspace_id, variable=key)
            if record.code is not None
        ]
        coders = sorted({pseudonymize(record.coder) for record in records})
        by_person: Dict[PersonKey, List[CodingRecord]] = {}
        for record in records:
            by_person.setdefault(record.person, []).append(record)

        columns = list(PERSON_COLUMNS) + coders
        if options.include_modal:
            columns += [MODAL_COLUMN, DEVIATION_COLUMN]
        if options.include_double_coded:
            columns.append(DOUBLE_CODED_COLUMN)
        if options.include_comments:
            columns.append(COMMENTS_COLUMN)

        rows = []
        for person in sorted(by_person):
            entries = by_person[person]
            codes: Dict[str, Optional[int]] = {}
            for record in entries:
                codes.setdefault(pseudonymize(record.coder), record.code)
            row: List[object] = [person.login, person.code, person.group]
            row += [_segment_code(codes.get(coder)) for coder in coders]
            if options.include_modal:
                modal = modal_value(code for code in codes.values() if code is not None and code >= 0)
                row += ["" if modal.value is None else modal.value, modal.deviation_count]
            if options.include_double_coded:
                row.append(1 if len(codes) > 1 else 0)
            if options.include_comments:
                row.append(
                    COMMENT_SEPARATOR.join(f"{pseudonymize(r.coder)}: {r.notes}" for r in entries if r.notes)
                )
            rows.append(row)
        return key.label, columns, rows

    async def _coder_segment(self, workspace_id, coder, keep, display_name):
        records = [
            record
            for record in await self._segment_codings(workspace_id, coder=coder)
            if record.code is not None and keep(record.key)
        ]
        variables = sorted({record.key for record in records})
        by_person: Dict[PersonKey, Dict[VariableKey, Optional[int]]] = {}
        for record in records:
            by_person.setdefault(record.person, {}).setdefault(record.key, record.code)
        columns = list(PERSON_COLUMNS) + [key.label for key in variables]
        rows = []
        for person in sorted(by_person):
            codes = by_person[person]
            rows.append([person.login, person.code, person.group] + [_segment_code(codes.get(key)) for key in variables])
        return display_name, columns, rows

    # ------------------------------------------------------------------ #
    # coding list

    async def _coding_list_row(self, context: ResponseContext, replay: Optional[ReplayUrlOptions]) -> List[object]:
        page = await self.cache.page_for(context.unit_name, context.variable_id)
        url = ""
        if replay is not None and replay.enabled:
            url = await self._replay_url(
                replay, context.person, context.booklet, context.unit_name, context.variable_id
            )
        return [
            context.unit_name,
            context.unit_alias or "",
            context.person.login,
            context.person.code,
            context.person.group,
            context.booklet,
            context.variable_id,
            page,
            context.variable_id,
            context.latest.status or "",
            "" if context.latest.code is None else context.latest.code,
            "" if context.latest.score is None else context.latest.score,
            url,
        ]

    async def export_coding_list(
        self,
        workspace_id: int,
        fmt: str = "csv",
        replay: Optional[ReplayUrlOptions] = None,
    ) -> bytes:
        """Every response still waiting for manual coding, one row each."""

        with_url = replay is not None and replay.enabled
        columns = CODING_LIST_COLUMNS if with_url else CODING_LIST_COLUMNS[:-1]

        async def body() -> bytes:
            await self.cache.exclusions()
            await self._call(self.cache.unit_definitions)
            sink = sink_for(fmt, self.sink_config)
            sink.add_section("Coding List", columns)

            await self.checkpoint("fetch")
            self.state = ExportState.PAGING

            async def fetch(after_id: int, limit: int) -> List[ResponseContext]:
                return await self._call(self.responses.fetch_needing_coding, workspace_id, after_id, limit)

            async for page in iter_pages(fetch, self.limits.batch_size, self.checkpoint, lambda c: c.response_id):
                self.stats.pages += 1
                self.stats.rows_read += len(page)
                contexts = [c for c in page if self.accountant.needs_manual_coding(c.key, self.cache)]
                rows = await self._gather_rows(
                    [self._coding_list_row(context, replay) for context in contexts],
                    [context.response_id for context in contexts],
                )
                for row in rows:
                    await self._write(sink, row if with_url else row[:-1])

            self.state = ExportState.FINALIZE
            return sink.finish()

        return await self._run(workspace_id, body)


def _segment_code(code: Optional[int]) -> object:
    """Cell value for segment sheets.

    Segments list codes only, so every negative status code is blank. The
    detailed and aggregated shapes go through ``display_code``, which blanks
    just the missing markers -4..-1.
    """
    return "" if code is None or code < 0 else code
