"""
Migration commands.

Each command builds one pipeline, runs it through the batch dispatcher and
prints the run summary. Every run records its successes and failures in
the ledger, so an interrupted run can be resumed by re-running the failed
ids (see ``ledger failures``).
"""

import asyncio
import signal
from collections.abc import Awaitable, Callable, Iterable
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
    print_summary,
    read_id_file,
)
from catalog_migration.migration.collection_order import CollectionOrderer, members_from_rows
from catalog_migration.migration.dispatcher import (
    BatchDispatcher,
    MigrationPipeline,
    RunSummary,
    WorkItem,
)
from catalog_migration.migration.pipelines import (
    PagedVariantPipeline,
    ProductPipeline,
    ProductUpdatePipeline,
    StockVariantPipeline,
    paged_work_items,
)
from catalog_migration.reporting.progress import ProgressTracker
from catalog_migration.utils.logging import get_logger
from catalog_migration.utils.retry import with_retries

logger = get_logger(__name__)

ListItems = Callable[[], Awaitable[Iterable[str | WorkItem]]]


def _source_ids(ids: tuple[str, ...], ids_file: Path | None) -> list[str]:
    source_ids = [i.strip() for i in ids if i.strip()]
    if ids_file is not None:
        source_ids.extend(read_id_file(ids_file))
    return source_ids


def _with_fetch_retries(ctx: MigrationContext, pipeline: MigrationPipeline) -> MigrationPipeline:
    performance = ctx.config.performance
    if performance.retry_attempts > 0:
        pipeline.fetch = with_retries(  # type: ignore[method-assign]
            pipeline.fetch,
            max_attempts=performance.retry_attempts + 1,
            min_wait=performance.retry_backoff_min,
            max_wait=performance.retry_backoff_max,
        )
    return pipeline


async def run_pipeline(
    ctx: MigrationContext,
    pipeline: MigrationPipeline,
    phase: str,
    items: list[str | WorkItem] | None = None,
    list_items: ListItems | None = None,
    skip_existing: bool = False,
    load_references: bool = True,
) -> RunSummary:
    """Run ``pipeline`` over ``items``, or over whatever ``list_items`` returns.

    Vocabularies are loaded first unless ``load_references`` is False.
    SIGINT stops the run after the items in flight instead of killing it.
    """
    if (items is None) == (list_items is None):
        raise ValueError("Pass exactly one of items or list_items")

    config = ctx.config
    budget = ctx.budget
    if config.credit_budget.enable_ticking_recovery:
        budget.start_recovery()

    try:
        if load_references:
            await ctx.reference_cache.initialize_all()

        if items is not None:
            echo_info(f"Migrating {format_count(len(items))} {pipeline.kind} item(s)")
        else:
            echo_info(f"Listing {pipeline.kind} items from the legacy catalog")

        with ProgressTracker(phase, enable=not config.logging.disable_progress) as tracker:
            dispatcher = BatchDispatcher(
                _with_fetch_retries(ctx, pipeline),
                ctx.ledger,
                skip_existing=skip_existing or config.migration.skip_existing,
                progress_callback=tracker.update,
            )
            concurrency = config.performance.concurrency
            batch_size = config.performance.batch_size
            if items is not None:
                handle = dispatcher.submit(items, concurrency, batch_size)
            else:
                handle = dispatcher.submit_all(list_items, concurrency, batch_size)

            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, handle.cancel)
            except (NotImplementedError, RuntimeError):
                logger.debug("sigint_handler_unavailable")
            try:
                summary = await handle.wait()
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass

        if summary.processed == 0 and not summary.cancelled:
            echo_warning("Nothing to migrate")
        return summary
    finally:
        await budget.stop_recovery()
        snapshot = budget.snapshot()
        logger.info(
            "credit_budget_final",
            remaining=snapshot.remaining,
            consumed_total=snapshot.consumed_total,
            waits=snapshot.waits,
            waited_seconds=snapshot.waited_seconds,
        )
        await ctx.aclose()


def finish_run(summary: RunSummary, title: str) -> None:
    print_summary(summary, title)
    if summary.failed:
        raise click.exceptions.Exit(1)


@click.group(name="migrate")
def migrate() -> None:
    """Migrate legacy catalog records to the destination store."""
    pass


_ids_option = click.option(
    "--id",
    "ids",
    multiple=True,
    help="Source product id (repeatable)",
)
_ids_file_option = click.option(
    "--ids-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="CSV or text file with one source product id per row",
)
_skip_existing_option = click.option(
    "--skip-existing",
    is_flag=True,
    help="Skip ids that already have a ledger entry",
)


@migrate.command(name="products")
@_ids_option
@_ids_file_option
@_skip_existing_option
@pass_context
@requires_config
@handle_errors
def migrate_products(
    ctx: MigrationContext,
    ids: tuple[str, ...],
    ids_file: Path | None,
    skip_existing: bool,
) -> None:
    """Create one destination product per legacy product.

    Without --id or --ids-file every product in the legacy stock listing
    is migrated.

    Examples:

        catalog-bridge migrate products --ids-file products.csv

        catalog-bridge migrate products --id 1201 --id 1202
    """
    source_ids = _source_ids(ids, ids_file)

    async def run() -> RunSummary:
        pipeline = ProductPipeline(ctx.legacy_client, ctx.transformer(), ctx.writer())
        if source_ids:
            return await run_pipeline(
                ctx, pipeline, "products", items=list(source_ids), skip_existing=skip_existing
            )
        return await run_pipeline(
            ctx, pipeline, "products", list_items=ctx.legacy_client.list_product_ids,
            skip_existing=skip_existing,
        )

    finish_run(asyncio.run(run()), "Product Migration")


@migrate.command(name="variants")
@_ids_option
@_ids_file_option
@_skip_existing_option
@pass_context
@requires_config
@handle_errors
def migrate_variants(
    ctx: MigrationContext,
    ids: tuple[str, ...],
    ids_file: Path | None,
    skip_existing: bool,
) -> None:
    """Create one destination product per stock variant of each legacy product.

    Variants are keyed in the ledger by product id and variant key, so a
    later collection run can place each variant individually.
    """
    source_ids = _source_ids(ids, ids_file)
    options = ctx.config.migration

    async def run() -> RunSummary:
        pipeline = StockVariantPipeline(
            ctx.legacy_client,
            ctx.transformer(),
            ctx.writer(),
            variant_key_field=options.variant_key_field,
        )
        if source_ids:
            return await run_pipeline(
                ctx, pipeline, "variants", items=list(source_ids), skip_existing=skip_existing
            )
        return await run_pipeline(
            ctx, pipeline, "variants", list_items=ctx.legacy_client.list_product_ids,
            skip_existing=skip_existing,
        )

    finish_run(asyncio.run(run()), "Variant Migration")


@migrate.command(name="stock")
@_skip_existing_option
@pass_context
@requires_config
@handle_errors
def migrate_stock(ctx: MigrationContext, skip_existing: bool) -> None:
    """Migrate paged variant detail: every page of every listed product.

    The paged listing gives each product's page count; each page becomes
    one work item and each record on it one destination product.
    """
    options = ctx.config.migration

    async def run() -> RunSummary:
        legacy = ctx.legacy_client
        pipeline = PagedVariantPipeline(
            legacy,
            ctx.transformer(),
            ctx.writer(),
            variant_key_field=options.paged_variant_key_field,
            page_limit=ctx.config.legacy.detail_page_limit,
        )

        async def list_pages() -> list[WorkItem]:
            return paged_work_items(await legacy.list_paged_products())

        return await run_pipeline(
            ctx, pipeline, "stock", list_items=list_pages, skip_existing=skip_existing
        )

    finish_run(asyncio.run(run()), "Stock Migration")


@migrate.command(name="update")
@_ids_option
@_ids_file_option
@pass_context
@requires_config
@handle_errors
def migrate_update(ctx: MigrationContext, ids: tuple[str, ...], ids_file: Path | None) -> None:
    """Re-read legacy products and update the destination products they map to.

    Ids without a ledger entry fail and are recorded as failures.
    """
    source_ids = _source_ids(ids, ids_file)
    if not source_ids:
        source_ids = [entry.source_id for entry in ctx.ledger.scan_all(kind="product")]

    async def run() -> RunSummary:
        pipeline = ProductUpdatePipeline(
            ctx.legacy_client, ctx.transformer(), ctx.writer(), ctx.ledger
        )
        return await run_pipeline(ctx, pipeline, "update", items=list(source_ids))

    finish_run(asyncio.run(run()), "Product Update")


@migrate.command(name="collection")
@click.argument("collection_id")
@click.option(
    "--variants/--products",
    "by_variant",
    default=False,
    help="Place stock variant products instead of base products",
)
@pass_context
@requires_config
@handle_errors
def migrate_collection(ctx: MigrationContext, collection_id: str, by_variant: bool) -> None:
    """Add migrated products to COLLECTION_ID in legacy sort order.

    Products are resolved through the ledger; members that were never
    migrated are reported and left out.

    Examples:

        catalog-bridge migrate collection gid://shopify/Collection/42 --variants
    """
    options = ctx.config.migration

    async def run():
        try:
            rows = await ctx.legacy_client.list_stock_products()
            members = members_from_rows(rows, options.variant_key_field if by_variant else None)
            orderer = CollectionOrderer(
                ctx.graphql_client,
                ctx.ledger,
                batch_size=ctx.config.performance.collection_batch_size,
            )
            return await orderer.add(collection_id, members)
        finally:
            await ctx.aclose()

    result = asyncio.run(run())
    print_stats(
        {
            "requested": format_count(result.requested),
            "resolved": format_count(result.resolved),
            "missing": format_count(len(result.missing)),
            "batches_added": result.batches_added,
            "batches_failed": result.batches_failed,
        },
        "Collection Ordering",
    )
    if result.missing:
        echo_warning("Not yet migrated: " + ", ".join(result.missing[:20]))
    if result.batches_failed:
        raise click.exceptions.Exit(1)
    echo_success(f"Collection {collection_id} updated")
