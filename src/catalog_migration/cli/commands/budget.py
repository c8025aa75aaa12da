"""Credit budget commands."""

import asyncio

import click

from catalog_migration.cli.context import MigrationContext
from catalog_migration.cli.decorators import handle_errors, pass_context, requires_config
from catalog_migration.cli.utils import echo_warning, format_count, print_stats


@click.group(name="budget")
def budget() -> None:
    """Inspect the destination call-cost allowance."""
    pass


@budget.command(name="check")
@pass_context
@requires_config
@handle_errors
def check(ctx: MigrationContext) -> None:
    """Ask the destination for its throttle status and show the synced budget.

    The check itself is a zero-cost query.
    """

    async def run():
        try:
            return await ctx.graphql_client.refresh_budget()
        finally:
            await ctx.aclose()

    status = asyncio.run(run())
    if status is None:
        echo_warning("The destination reported no throttle status; showing configured values")

    snapshot = ctx.budget.snapshot()
    print_stats(
        {
            "capacity": format_count(snapshot.capacity),
            "remaining": format_count(snapshot.remaining),
            "safe_threshold": format_count(snapshot.safe_threshold),
            "cost_per_call": format_count(ctx.budget.cost_per_call),
            "recovery_rate": f"{format_count(ctx.budget.recovery_rate)}/s",
        },
        "Credit Budget",
    )
