"""Command-line admin tools."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.table import Table

from .aggregation import AggregationOptions, ExportShape, PseudoMode
from .config import ExportLimits, WorkbenchConfig
from .errors import CodebenchError
from .importer import import_workspace_file
from .pipeline import SegmentKey
from .replay import ReplayUrlOptions
from .runtime import setup_logging
from .schema import initialize_workspace_db
from .service import CodingWorkbench

app = typer.Typer(help="codebench admin CLI")


def _workbench(db: Path) -> CodingWorkbench:
    return CodingWorkbench(db, WorkbenchConfig(database_path=db))


def _replay(server_url: Optional[str], auth_token: str) -> Optional[ReplayUrlOptions]:
    return ReplayUrlOptions(server_url, auth_token) if server_url else None


def _write_output(data: bytes, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(data)
    print(f"Wrote {len(data)} bytes to {output}")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at debug level")) -> None:
    setup_logging(logging.DEBUG if verbose else logging.INFO)


@app.command("init-db")
def init_db(db: Path = typer.Argument(..., help="Workspace SQLite database")) -> None:
    """Create the workspace database."""
    initialize_workspace_db(db)
    print(f"Initialized workspace database at {db}")


@app.command("load-json")
def load_json(
    db: Path = typer.Argument(...),
    payload: Path = typer.Option(..., help="JSON document with persons, unit resources and coding jobs"),
    workspace: int = typer.Option(..., help="Workspace id"),
) -> None:
    counts = import_workspace_file(initialize_workspace_db(db), workspace, payload)
    print(", ".join(f"{name}: {count}" for name, count in counts.items()))


@app.command()
def coverage(
    db: Path = typer.Argument(...),
    workspace: int = typer.Option(...),
    details: bool = typer.Option(False, help="List every variable with its case counts"),
) -> None:
    """Show how much of the coding work job definitions cover."""
    report = _workbench(db).coverage_overview(workspace)
    summary = Table(title=f"Variable coverage, workspace {workspace}")
    summary.add_column("Metric")
    summary.add_column("Value", justify="right")
    summary.add_row("Variables needing coding", str(report.total_variables))
    summary.add_row("Covered", str(report.covered_variables))
    summary.add_row("  draft", str(report.covered_by_draft))
    summary.add_row("  pending review", str(report.covered_by_pending_review))
    summary.add_row("  approved", str(report.covered_by_approved))
    summary.add_row("Fully covered", str(report.fully_covered))
    summary.add_row("Partially covered", str(report.partially_covered))
    summary.add_row("Missing", str(len(report.missing)))
    summary.add_row("Conflicted", str(len(report.conflicted)))
    summary.add_row("Coverage %", f"{report.coverage_percentage:.2f}")
    print(summary)
    for conflict in report.conflicted:
        owners = ", ".join(f"#{def_id} ({status})" for def_id, status in conflict.definitions)
        print(f"[red]Conflict[/red] {conflict.key.label}: {owners}")
    if details:
        frame = report.to_frame()
        table = Table(title="Per variable")
        for column in frame.columns:
            table.add_column(str(column))
        for record in frame.itertuples(index=False):
            table.add_row(*[str(value) for value in record])
        print(table)


@app.command()
def approve(
    db: Path = typer.Argument(...),
    definition: int = typer.Option(..., help="Job definition id"),
    check_only: bool = typer.Option(False, help="Only report whether approval would succeed"),
) -> None:
    bench = _workbench(db)
    if check_only:
        check = bench.can_approve(definition)
        if check.ok:
            print(f"Job definition {definition} can be approved")
        else:
            print(f"[red]Unavailable variables:[/red] {', '.join(check.unavailable)}")
        return
    try:
        bench.approve(definition)
    except CodebenchError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    print(f"Job definition {definition} approved")


@app.command("export-aggregated")
def export_aggregated(
    db: Path = typer.Argument(...),
    workspace: int = typer.Option(...),
    output: Path = typer.Option(...),
    shape: ExportShape = typer.Option(ExportShape.MOST_FREQUENT),
    anonymize: bool = typer.Option(False),
    pseudo_mode: PseudoMode = typer.Option(PseudoMode.PSEUDO),
    include_comments: bool = typer.Option(False),
    include_modal: bool = typer.Option(False),
    include_auto_coded: bool = typer.Option(False, help="Keep variables the scheme derives automatically"),
    comments_instead_of_codes: bool = typer.Option(False),
    server_url: Optional[str] = typer.Option(None, help="Adds replay links when set"),
    auth_token: str = typer.Option(""),
) -> None:
    options = AggregationOptions(
        shape=shape,
        anonymize=anonymize,
        pseudo_mode=pseudo_mode,
        include_comments=include_comments,
        include_modal=include_modal,
        exclude_auto_coded=not include_auto_coded,
        comments_instead_of_codes=comments_instead_of_codes,
        replay=_replay(server_url, auth_token),
    )
    try:
        data = asyncio.run(_workbench(db).export_aggregated(workspace, options))
    except CodebenchError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    _write_output(data, output)


@app.command("export-segments")
def export_segments(
    db: Path = typer.Argument(...),
    workspace: int = typer.Option(...),
    output: Path = typer.Option(...),
    segment: SegmentKey = typer.Option(SegmentKey.VARIABLE),
    anonymize: bool = typer.Option(False),
    include_modal: bool = typer.Option(False),
    include_double_coded: bool = typer.Option(False),
    include_comments: bool = typer.Option(False),
    max_segments: Optional[int] = typer.Option(None),
    max_rows_per_segment: Optional[int] = typer.Option(None),
) -> None:
    """One worksheet per variable or per coder."""
    limits = ExportLimits()
    if max_segments is not None:
        limits.max_segments = max_segments
    if max_rows_per_segment is not None:
        limits.max_rows_per_segment = max_rows_per_segment
    options = AggregationOptions(
        anonymize=anonymize,
        include_modal=include_modal,
        include_double_coded=include_double_coded,
        include_comments=include_comments,
    )
    try:
        data = asyncio.run(_workbench(db).export_by_segment(workspace, segment, options, limits))
    except CodebenchError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    _write_output(data, output)


@app.command("export-coding-list")
def export_coding_list(
    db: Path = typer.Argument(...),
    workspace: int = typer.Option(...),
    output: Path = typer.Option(...),
    fmt: str = typer.Option("csv", "--format", help="csv or xlsx"),
    server_url: Optional[str] = typer.Option(None),
    auth_token: str = typer.Option(""),
) -> None:
    try:
        data = asyncio.run(
            _workbench(db).export_coding_list(workspace, fmt, _replay(server_url, auth_token))
        )
    except CodebenchError as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    _write_output(data, output)


@app.command()
def agreement(db: Path = typer.Argument(...), workspace: int = typer.Option(...)) -> None:
    """Cohen's kappa per coder pair on double-coded responses."""
    summary = _workbench(db).agreement_summary(workspace)
    table = Table(title="Coder agreement")
    for column in ("Variable", "Coder A", "Coder B", "Kappa", "Interpretation", "Shared"):
        table.add_column(column)
    for pair in summary.pairs:
        table.add_row(
            pair.variable.label,
            pair.coder_a,
            pair.coder_b,
            f"{pair.kappa:.3f}",
            pair.interpretation,
            str(pair.shared_items),
        )
    print(table)
    average = "n/a" if summary.average_kappa is None else f"{summary.average_kappa:.3f}"
    print(f"Average kappa: {average}, percent agreement: {summary.percent_agreement:.3f}")


if __name__ == "__main__":
    app()
