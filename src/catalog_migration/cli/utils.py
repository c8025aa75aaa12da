"""
Utility functions for CLI commands.

Output helpers shared by the command modules, plus reading id lists from
files.
"""

import csv
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from catalog_migration.migration.dispatcher import RunSummary

console = Console()


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    """Print warning message in yellow."""
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2h 30m 15s")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60

    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def format_count(count: int) -> str:
    return f"{count:,}"


def print_table(
    title: str,
    columns: list[str],
    rows: list[list[Any]],
    show_header: bool = True,
) -> None:
    """
    Print a formatted table using rich.

    Args:
        title: Table title
        columns: Column headers
        rows: List of row data
        show_header: Whether to show header row
    """
    table = Table(title=title, show_header=show_header)

    for col in columns:
        table.add_column(col)

    for row in rows:
        table.add_row(*[str(cell) for cell in row])

    console.print(table)


def print_stats(stats: dict[str, Any], title: str = "Statistics") -> None:
    """Print key/value statistics as a two-column table."""
    rows = [[key.replace("_", " ").title(), str(value)] for key, value in stats.items()]
    print_table(title, ["Metric", "Value"], rows)


def print_summary(summary: RunSummary, title: str) -> None:
    """Print a run's outcome counts and report how it ended."""
    print_stats(
        {
            "processed": format_count(summary.processed),
            "succeeded": format_count(summary.succeeded),
            "failed": format_count(summary.failed),
            "skipped": format_count(summary.skipped),
            "batches": format_count(summary.batches),
            "duration": format_duration(summary.duration_seconds),
        },
        title,
    )
    if summary.cancelled:
        echo_warning("Run was cancelled before all batches finished")
    elif summary.failed:
        echo_warning(f"{summary.failed} item(s) failed; see 'ledger failures' for details")
    else:
        echo_success("Run completed")


def read_id_file(path: Path, column: int = 0) -> list[str]:
    """
    Read source ids from a CSV or plain text file, one per row.

    A first row whose id cell is not numeric is treated as a header.
    Blank rows are ignored; order and duplicates are preserved.
    """
    ids: list[str] = []
    with open(path, newline="", encoding="utf-8") as f:
        for line_number, row in enumerate(csv.reader(f)):
            if len(row) <= column:
                continue
            value = row[column].strip()
            if not value:
                continue
            if line_number == 0 and not value.isdigit():
                continue
            ids.append(value)
    return ids
