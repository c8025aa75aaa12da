"""
Ledger commands.

Inspect the source-to-destination mappings and the failure log that
migration runs leave behind.
"""

from pathlib import Path

import click

from catalog_migration.cli.context import MigrationContext
from catalog_migration.cli.decorators import handle_errors, pass_context, requires_config
from catalog_migration.cli.utils import (
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    print_stats,
    print_table,
    read_id_file,
)
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

KINDS = ("product", "variant", "stock_variant", "file")


@click.group(name="ledger")
def ledger() -> None:
    """Inspect the migration ledger.

    The ledger maps legacy source ids (and variant keys) to destination
    ids and keeps a log of failed items.
    """
    pass


@ledger.command(name="show")
@pass_context
@requires_config
@handle_errors
def show(ctx: MigrationContext) -> None:
    """Show entry counts per kind."""
    with ctx:
        rows = [[kind, format_count(ctx.ledger.count(kind))] for kind in KINDS]
        print_table("Ledger Entries", ["Kind", "Count"], rows)
        print_stats(
            {
                "database": ctx.config.state.db_path,
                "total_entries": format_count(ctx.ledger.count()),
                "failures": format_count(len(ctx.ledger.scan_failures())),
            },
            "Ledger Summary",
        )


@ledger.command(name="get")
@click.argument("source_id")
@click.option("--variant", "variant_key", help="Variant key within the source record")
@pass_context
@requires_config
@handle_errors
def get(ctx: MigrationContext, source_id: str, variant_key: str | None) -> None:
    """Print the destination id recorded for SOURCE_ID."""
    with ctx:
        destination_id = ctx.ledger.get(source_id, variant_key)
    if destination_id is None:
        echo_warning(f"No ledger entry for {source_id}")
        raise click.exceptions.Exit(1)
    click.echo(destination_id)


@ledger.command(name="missing")
@click.argument("ids_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write missing ids here, one per line, for a follow-up run",
)
@pass_context
@requires_config
@handle_errors
def missing(ctx: MigrationContext, ids_file: Path, output: Path | None) -> None:
    """List ids from IDS_FILE that have no ledger entry yet."""
    source_ids = read_id_file(ids_file)
    with ctx:
        not_migrated = ctx.ledger.missing(source_ids)

    echo_info(f"{format_count(len(not_migrated))} of {format_count(len(source_ids))} ids not migrated")
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text("".join(f"{source_id}\n" for source_id in not_migrated))
        echo_success(f"Missing ids written to {output}")
    else:
        for source_id in not_migrated:
            click.echo(source_id)


@ledger.command(name="failures")
@click.option("--kind", type=click.Choice(KINDS), help="Only failures of this kind")
@click.option("--limit", type=int, default=50, show_default=True, help="Rows to show")
@pass_context
@requires_config
@handle_errors
def failures(ctx: MigrationContext, kind: str | None, limit: int) -> None:
    """Show recorded item failures, newest last."""
    with ctx:
        records = ctx.ledger.scan_failures(kind)

    if not records:
        echo_success("No failures recorded")
        return

    rows = [
        [r.source_id, r.variant_key or "-", r.kind, r.error_type, (r.error_message or "")[:80]]
        for r in records[-limit:]
    ]
    print_table(
        f"Failures ({format_count(len(records))} total)",
        ["Source Id", "Variant", "Kind", "Error", "Message"],
        rows,
    )


@ledger.command(name="export")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("reports/ledger.json"),
    show_default=True,
    help="JSON file to write",
)
@pass_context
@requires_config
@handle_errors
def export(ctx: MigrationContext, output: Path) -> None:
    """Export every ledger entry and failure to JSON."""
    with ctx:
        count = ctx.ledger.export(output)
    echo_success(f"Exported {format_count(count)} entries to {output}")
