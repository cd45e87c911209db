from __future__ import annotations

import asyncio
import io
from pathlib import Path
import sys

import pytest
from openpyxl import load_workbook

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.config import SinkConfig
from codebench.errors import SinkError
from codebench.sinks import CsvSink, WorkbookSink, sanitize_sheet_name, sink_for, unique_sheet_name


def test_csv_sink_signals_backpressure_and_drains() -> None:
    sink = CsvSink(SinkConfig(high_water_mark=32))
    sink.add_section("Codings", ["a", "b"])

    assert sink.write_row(["x", 1]) is True
    assert sink.write_row(["a much longer value", None]) is False
    asyncio.run(sink.drain())
    assert sink.write_row(["y", 2]) is True

    data = sink.finish()
    assert data.decode("utf-8-sig") == '"a";"b"\n"x";"1"\n"a much longer value";""\n"y";"2"\n'
    assert data.startswith(b"\xef\xbb\xbf")
    assert sink.rows_written == 3


def test_csv_sink_holds_one_section() -> None:
    sink = CsvSink()
    with pytest.raises(SinkError):
        sink.write_row(["too early"])
    sink.add_section("Codings", ["a"])
    with pytest.raises(SinkError):
        sink.add_section("More", ["b"])
    sink.finish()
    with pytest.raises(SinkError):
        sink.finish()


def test_sheet_names_are_sanitized_and_unique() -> None:
    assert sanitize_sheet_name("Unit/1:V*2") == "Unit_1_V_2"
    assert sanitize_sheet_name("a" * 40) == "a" * 20
    assert sanitize_sheet_name("???") == "___"
    assert sanitize_sheet_name("") == "Sheet"
    assert unique_sheet_name("Coder", ["coder", "Coder_1"]) == "Coder_2"


def test_workbook_sink_writes_styled_sheets() -> None:
    sink = WorkbookSink()
    first = sink.add_section("UNIT1_V1", ["Login", "Code"])
    sink.write_row(["alice", 1])
    second = sink.add_section("UNIT1_V1", ["Login"])
    sink.write_row(["bob"])

    workbook = load_workbook(io.BytesIO(sink.finish()))
    assert (first, second) == ("UNIT1_V1", "UNIT1_V1_1")
    assert workbook.sheetnames == ["UNIT1_V1", "UNIT1_V1_1"]
    header = workbook["UNIT1_V1"]["A1"]
    assert header.value == "Login"
    assert header.font.bold is True
    assert workbook["UNIT1_V1"]["B2"].value == 1


def test_empty_workbook_is_an_error() -> None:
    with pytest.raises(SinkError):
        WorkbookSink().finish()


def test_sink_for_rejects_unknown_formats() -> None:
    assert isinstance(sink_for("csv"), CsvSink)
    assert isinstance(sink_for("excel"), WorkbookSink)
    with pytest.raises(SinkError):
        sink_for("pdf")
