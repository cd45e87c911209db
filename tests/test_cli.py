from __future__ import annotations

import json
from pathlib import Path
import sys

from typer.testing import CliRunner

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.cli import app

from conftest import workspace_payload

runner = CliRunner()


def _loaded_db(tmp_path: Path) -> Path:
    db = tmp_path / "cli.db"
    payload = tmp_path / "payload.json"
    payload.write_text(json.dumps(workspace_payload()), "utf-8")
    assert runner.invoke(app, ["init-db", str(db)]).exit_code == 0
    result = runner.invoke(app, ["load-json", str(db), "--payload", str(payload), "--workspace", "1"])
    assert result.exit_code == 0, result.output
    assert "coding_jobs: 3" in result.output
    return db


def test_coverage_command_prints_summary(tmp_path: Path) -> None:
    db = _loaded_db(tmp_path)

    result = runner.invoke(app, ["coverage", str(db), "--workspace", "1"])

    assert result.exit_code == 0, result.output
    assert "Variables needing coding" in result.output
    assert "0.00" in result.output


def test_export_coding_list_writes_file(tmp_path: Path) -> None:
    db = _loaded_db(tmp_path)
    output = tmp_path / "out" / "coding_list.csv"

    result = runner.invoke(
        app,
        ["export-coding-list", str(db), "--workspace", "1", "--output", str(output), "--server-url", "http://srv"],
    )

    assert result.exit_code == 0, result.output
    lines = output.read_text("utf-8-sig").splitlines()
    assert len(lines) == 9
    assert lines[0].endswith('"url"')


def test_export_failure_exits_non_zero(tmp_path: Path) -> None:
    db = _loaded_db(tmp_path)

    result = runner.invoke(
        app,
        ["export-aggregated", str(db), "--workspace", "99", "--output", str(tmp_path / "none.xlsx")],
    )

    assert result.exit_code == 1
    assert "No coding jobs" in result.output
    assert not (tmp_path / "none.xlsx").exists()


def test_agreement_command(tmp_path: Path) -> None:
    db = _loaded_db(tmp_path)

    result = runner.invoke(app, ["agreement", str(db), "--workspace", "1"])

    assert result.exit_code == 0, result.output
    assert "Average kappa: 0.000" in result.output
