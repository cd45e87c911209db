"""Tabular sinks: where export rows end up.

A sink receives named sections with a header row followed by data rows and
returns the finished document as bytes. ``write_row`` returning ``False``
asks the writer to ``await sink.drain()`` before sending more rows.
"""
from __future__ import annotations

import asyncio
import csv
import io
import logging
import re
import tempfile
from typing import List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Font, PatternFill

from .config import SinkConfig
from .errors import SinkError

log = logging.getLogger(__name__)

UTF8_BOM = "\ufeff"
CSV_DELIMITER = ";"
HEADER_FILL = "E0E0E0"
MAX_SHEET_NAME = 31
SHEET_NAME_STEM = 20


class TabularSink:
    media_type = "application/octet-stream"
    extension = ""

    def __init__(self) -> None:
        self.sections: List[str] = []
        self.rows_written = 0
        self._finished = False

    def add_section(self, name: str, columns: Sequence[str]) -> str:
        raise NotImplementedError

    def write_row(self, values: Sequence[object]) -> bool:
        raise NotImplementedError

    async def drain(self) -> None:
        return None

    def finish(self) -> bytes:
        raise NotImplementedError

    def _require_section(self) -> None:
        if self._finished:
            raise SinkError("Sink already finished")
        if not self.sections:
            raise SinkError("write_row called before add_section")


def _cell(value: object) -> object:
    return "" if value is None else value


class CsvSink(TabularSink):
    """Semicolon separated, fully quoted, UTF-8 with BOM.

    Rows are buffered in memory up to ``high_water_mark`` characters and then
    spooled to a temporary file when the writer drains.
    """

    media_type = "text/csv; charset=utf-8"
    extension = "csv"

    def __init__(self, config: Optional[SinkConfig] = None) -> None:
        super().__init__()
        self.config = config or SinkConfig()
        self._buffer = io.StringIO()
        self._writer = csv.writer(
            self._buffer,
            delimiter=CSV_DELIMITER,
            quoting=csv.QUOTE_ALL,
            lineterminator="\n",
        )
        self._spool = tempfile.SpooledTemporaryFile(max_size=self.config.spool_max_bytes, mode="w+b")
        self._buffer.write(UTF8_BOM)

    def add_section(self, name: str, columns: Sequence[str]) -> str:
        if self.sections:
            raise SinkError("CSV output holds a single section")
        self.sections.append(name)
        self._write(columns)
        return name

    def _write(self, values: Sequence[object]) -> None:
        try:
            self._writer.writerow([_cell(value) for value in values])
        except csv.Error as exc:
            raise SinkError(f"Could not write CSV row: {exc}") from exc

    def write_row(self, values: Sequence[object]) -> bool:
        self._require_section()
        self._write(values)
        self.rows_written += 1
        return self._buffer.tell() < self.config.high_water_mark

    def _flush(self) -> None:
        data = self._buffer.getvalue()
        if not data:
            return
        try:
            self._spool.write(data.encode("utf-8"))
        except OSError as exc:
            raise SinkError(f"Could not spool CSV data: {exc}") from exc
        self._buffer.seek(0)
        self._buffer.truncate(0)

    async def drain(self) -> None:
        await asyncio.to_thread(self._flush)

    def finish(self) -> bytes:
        if self._finished:
            raise SinkError("Sink already finished")
        self._flush()
        self._finished = True
        self._spool.seek(0)
        data = self._spool.read()
        self._spool.close()
        return data


def sanitize_sheet_name(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9 \-_]", "_", name or "")[:SHEET_NAME_STEM].strip()
    return cleaned or "Sheet"


def unique_sheet_name(name: str, taken: Sequence[str]) -> str:
    base = sanitize_sheet_name(name)
    existing = {title.lower() for title in taken}
    candidate = base
    counter = 1
    while candidate.lower() in existing:
        suffix = f"_{counter}"
        candidate = f"{base[: MAX_SHEET_NAME - len(suffix)]}{suffix}"
        counter += 1
    return candidate[:MAX_SHEET_NAME]


class WorkbookSink(TabularSink):
    """xlsx output through openpyxl's write-only mode.

    Write-only worksheets stream rows to a temporary file as they are
    appended, so memory stays flat however many rows a section holds.
    """

    media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    extension = "xlsx"

    def __init__(self) -> None:
        super().__init__()
        self._workbook = Workbook(write_only=True)
        self._sheet = None

    def add_section(self, name: str, columns: Sequence[str]) -> str:
        if self._finished:
            raise SinkError("Sink already finished")
        title = unique_sheet_name(name, self.sections)
        self._sheet = self._workbook.create_sheet(title=title)
        header = []
        for column in columns:
            cell = WriteOnlyCell(self._sheet, value=str(column))
            cell.font = Font(bold=True)
            cell.fill = PatternFill(start_color=HEADER_FILL, end_color=HEADER_FILL, fill_type="solid")
            header.append(cell)
        self._sheet.append(header)
        self.sections.append(title)
        return title

    def write_row(self, values: Sequence[object]) -> bool:
        self._require_section()
        try:
            self._sheet.append([None if value == "" else value for value in values])
        except (ValueError, TypeError) as exc:
            raise SinkError(f"Could not write worksheet row: {exc}") from exc
        self.rows_written += 1
        return True

    def finish(self) -> bytes:
        if self._finished:
            raise SinkError("Sink already finished")
        if not self.sections:
            raise SinkError("Workbook has no worksheets")
        buffer = io.BytesIO()
        try:
            self._workbook.save(buffer)
        except OSError as exc:
            raise SinkError(f"Could not write workbook: {exc}") from exc
        self._finished = True
        return buffer.getvalue()


def sink_for(fmt: str, config: Optional[SinkConfig] = None) -> TabularSink:
    if fmt == "csv":
        return CsvSink(config)
    if fmt in ("xlsx", "excel"):
        return WorkbookSink()
    raise SinkError(f"Unsupported export format: {fmt}")
