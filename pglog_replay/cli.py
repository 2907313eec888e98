from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Sequence

import polars as pl
import psycopg2
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .parsers import ParseStats
from .parsers.postgres import PostgresLogParser
from .replay import (
    ConnectionConfig,
    ReplayError,
    ReplayReport,
    parse_and_replay,
    parse_and_replay_via_replayfile,
    parse_to_replayfile,
    replay_from_replayfile,
)

console = Console()
err_console = Console(stderr=True)
app = typer.Typer(help="Parse PostgreSQL statement logs and replay them against a database")

STATEMENT_PREVIEW_LENGTH = 120


def shorten(text: str | None, length: int = STATEMENT_PREVIEW_LENGTH) -> str:
    if text is None:
        return "<missing>"
    text = " ".join(text.split())
    if len(text) <= length:
        return text
    return text[: length - 1] + "…"


def to_table(title: str, columns: Sequence[str], rows: Sequence[Sequence[str]]) -> Table:
    table = Table(title=title, title_style="bold", show_lines=False, expand=True)
    for name in columns:
        justify = "left"
        if name.lower().endswith(("count", "executions", "statements", "lines", "index")):
            justify = "right"
        table.add_column(name, justify=justify, overflow="fold")
    for row in rows:
        table.add_row(*row)
    return table


def stats_rows(stats: ParseStats) -> list[list[str]]:
    return [[name.replace("_", " ").capitalize(), f"{value:,}"] for name, value in stats.as_dict().items()]


def print_stats(stats: ParseStats) -> None:
    console.print(to_table("Parse statistics", ["Counter", "Count"], stats_rows(stats)))


def print_errors(errors: Sequence[ReplayError], limit: int) -> None:
    if not errors:
        console.print("[green]All statements replayed successfully.[/green]")
        return

    rows = [
        [str(error.index), error.pgcode or "", shorten(error.message), shorten(error.statement)]
        for error in errors[:limit]
    ]
    console.print(to_table(f"Failed statements ({len(errors):,})", ["Index", "Code", "Error", "Statement"], rows))
    if len(errors) > limit:
        console.print(f"… and {len(errors) - limit:,} more", style="yellow")


def print_replay_report(report: ReplayReport, error_limit: int) -> None:
    print_stats(report.stats)
    console.print(f"Parsed in {report.parse_seconds:.2f}s, replayed in {report.replay_seconds:.2f}s.")
    print_errors(report.errors, error_limit)


@dataclass
class ReportData:
    """Collected data for a statement summary report."""

    source_path: Path
    generated_at: datetime
    stats: ParseStats
    parser_name: str
    sections: list[dict] = field(default_factory=list)


def collect_top_counts(
    frame: pl.DataFrame,
    column: str,
    top: int = 10,
    title: str | None = None,
) -> dict | None:
    """Collect the most frequent values of ``column`` without rendering."""
    if column not in frame.columns or frame.is_empty():
        return None

    aggregation = (
        frame.group_by(column)
        .agg(pl.len().alias("executions"), pl.col("param_count").max().alias("parameters"))
        .sort(["executions", column], descending=[True, False], nulls_last=True)
        .head(top)
    )

    rows = [
        {
            column: values[column] if values[column] is not None else "<missing>",
            "executions": values["executions"],
            "parameters": values["parameters"],
        }
        for values in aggregation.iter_rows(named=True)
    ]

    return {
        "title": title or f"Top {top} by {column}",
        "columns": [column.replace("_", " ").title(), "Executions", "Parameters"],
        "keys": [column, "executions", "parameters"],
        "rows": rows,
    }


def print_report(report: ReportData) -> None:
    """Print report to console."""
    console.print(f"[bold]Parser:[/bold] {report.parser_name}")
    console.print(
        f"Parsed {report.stats.total_statements:,} statements (from {report.stats.lines_read:,} lines)."
    )
    if report.stats.orphaned_parameters:
        console.print(
            f"Parameter lines without a statement: {report.stats.orphaned_parameters:,}", style="yellow"
        )

    print_stats(report.stats)
    for section in report.sections:
        rows = [
            [shorten(str(row[key])) if key == "statement" else f"{row[key]}" for key in section["keys"]]
            for row in section["rows"]
        ]
        console.print(to_table(section["title"], section["columns"], rows))


def export_to_markdown(report: ReportData, path: Path) -> None:
    """Export report as Markdown."""
    md = f"""# {report.parser_name} Statement Log Report

**Source:** {report.source_path.name}
**Parser:** {report.parser_name}
**Generated:** {report.generated_at.strftime("%Y-%m-%d %H:%M:%S")}
**Statements Parsed:** {report.stats.total_statements:,} / {report.stats.lines_read:,} total lines

## Parse statistics

| Counter | Count |
| --- | ---: |
"""
    for name, value in stats_rows(report.stats):
        md += f"| {name} | {value} |\n"
    md += "\n"

    for section in report.sections:
        md += f"## {section['title']}\n\n"
        md += "| " + " | ".join(section["columns"]) + " |\n"
        md += "|" + "|".join(" --- " if key == section["keys"][0] else " ---: " for key in section["keys"]) + "|\n"

        for row in section["rows"]:
            values = [str(row[key]).replace("|", "\\|").replace("\n", " ") for key in section["keys"]]
            md += "| " + " | ".join(values) + " |\n"

        md += "\n"

    path.write_text(md, encoding="utf-8")


def export_to_json(report: ReportData, path: Path) -> None:
    """Export report as JSON."""
    data = {
        "source": str(report.source_path),
        "parser": report.parser_name,
        "generated_at": report.generated_at.isoformat(),
        "stats": report.stats.as_dict(),
        "prepared_statement_names": sorted(report.stats.prepared_statement_names),
        "sections": report.sections,
    }
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def export_report(report: ReportData, path: Path) -> None:
    """Export report in the appropriate format based on file extension."""
    suffix = path.suffix.lower()

    if suffix == ".md":
        export_to_markdown(report, path)
    elif suffix == ".json":
        export_to_json(report, path)
    else:
        raise typer.BadParameter(f"Unsupported export format: {suffix}. Use .md or .json")


def fail(message: str, code: int = 2) -> typer.Exit:
    err_console.print(f"[red]{message}[/red]")
    return typer.Exit(code=code)


HostOption = typer.Option(None, "--host", envvar="PGHOST", help="Database server host.")
PortOption = typer.Option(None, "--port", envvar="PGPORT", help="Database server port.")
UserOption = typer.Option(None, "--user", "-U", envvar="PGUSER", help="Database user.")
PasswordOption = typer.Option(None, "--password", envvar="PGPASSWORD", help="Database password.")
DbnameOption = typer.Option(None, "--dbname", "-d", envvar="PGDATABASE", help="Database to replay against.")
DsnOption = typer.Option(None, "--dsn", envvar="PGDSN", help="libpq connection string, merged with the options above.")
ErrorLimitOption = typer.Option(20, "--show-errors", min=0, help="Number of failed statements to list.")
ProgressOption = typer.Option(True, "--progress/--no-progress", help="Display a progress bar while parsing the log.")


def file_argument(description: str) -> Path:
    return typer.Argument(..., exists=True, file_okay=True, dir_okay=False, readable=True, help=description)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Parse PostgreSQL statement logs and replay them against a database."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.command("parse")
def parse_command(
    logfile: Path = file_argument("Path to a PostgreSQL log written with log_statement = 'all'"),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Replay file to write (defaults to LOGFILE.replay)."
    ),
    progress: bool = ProgressOption,
) -> None:
    """Parse a log into a replay file."""
    replayfile = output or logfile.with_name(logfile.name + ".replay")
    try:
        stats = parse_to_replayfile(logfile, replayfile, show_progress=progress)
    except OSError as exc:
        raise fail(f"Cannot parse {logfile}: {exc}")

    print_stats(stats)
    if stats.total_statements == 0:
        typer.echo(f"No statements parsed from {logfile} (checked {stats.lines_read} lines).", err=True)
        raise typer.Exit(code=1)
    console.print(f"[green]Replay file written to {replayfile}[/green]")


@app.command("replay")
def replay_command(
    replayfile: Path = file_argument("Replay file produced by the parse command"),
    host: str | None = HostOption,
    port: int | None = PortOption,
    user: str | None = UserOption,
    password: str | None = PasswordOption,
    dbname: str | None = DbnameOption,
    dsn: str | None = DsnOption,
    show_errors: int = ErrorLimitOption,
) -> None:
    """Replay the statements of a replay file."""
    config = ConnectionConfig(host=host, port=port, user=user, password=password, dbname=dbname, dsn=dsn)
    try:
        errors = replay_from_replayfile(replayfile, config)
    except OSError as exc:
        raise fail(f"Cannot read {replayfile}: {exc}")
    except psycopg2.OperationalError as exc:
        raise fail(f"Cannot connect to the database: {exc}")

    print_errors(errors, show_errors)
    if errors:
        raise typer.Exit(code=1)


@app.command("run")
def run_command(
    logfile: Path = file_argument("Path to a PostgreSQL log written with log_statement = 'all'"),
    via: Path | None = typer.Option(
        None, "--via", help="Stream statements through this replay file instead of holding them in memory."
    ),
    host: str | None = HostOption,
    port: int | None = PortOption,
    user: str | None = UserOption,
    password: str | None = PasswordOption,
    dbname: str | None = DbnameOption,
    dsn: str | None = DsnOption,
    show_errors: int = ErrorLimitOption,
    progress: bool = ProgressOption,
) -> None:
    """Parse a log and replay it in one go."""
    config = ConnectionConfig(host=host, port=port, user=user, password=password, dbname=dbname, dsn=dsn)
    try:
        if via is not None:
            report = parse_and_replay_via_replayfile(logfile, via, config, show_progress=progress)
        else:
            report = parse_and_replay(logfile, config, show_progress=progress)
    except OSError as exc:
        raise fail(f"Cannot parse {logfile}: {exc}")
    except psycopg2.OperationalError as exc:
        raise fail(f"Cannot connect to the database: {exc}")

    print_replay_report(report, show_errors)
    if report.errors:
        raise typer.Exit(code=1)


@app.command("summary")
def summary_command(
    logfile: Path = file_argument("Path to a PostgreSQL log written with log_statement = 'all'"),
    top: int = typer.Option(10, min=1, help="Number of rows to show in each summary table."),
    progress: bool = ProgressOption,
    export: Path | None = typer.Option(None, "--export", "-o", help="Export report to file (.md or .json)"),
) -> None:
    """Summarise the statements found in a log without replaying them."""
    parser = PostgresLogParser()
    try:
        frame, stats = parser.load_dataframe(logfile, show_progress=progress)
    except OSError as exc:
        raise fail(f"Cannot parse {logfile}: {exc}")

    if stats.total_statements == 0:
        typer.echo(f"No statements parsed from {logfile} (checked {stats.lines_read} lines).", err=True)
        raise typer.Exit(code=1)

    report = ReportData(
        source_path=logfile,
        generated_at=datetime.now(),
        stats=stats,
        parser_name=parser.name,
    )

    sections = [
        collect_top_counts(frame, "keyword", top=top, title="Statement kinds"),
        collect_top_counts(frame, "statement", top=top, title="Most executed statements"),
    ]
    report.sections = [s for s in sections if s is not None]

    if export:
        export_report(report, export)
        console.print(f"[green]Report exported to {export}[/green]")
    else:
        print_report(report)


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
