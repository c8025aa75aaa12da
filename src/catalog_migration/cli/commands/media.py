"""
Media reconciliation commands.

``export-files`` dumps the file names the destination store already holds;
``compare`` checks a list of object storage keys or URLs against them and
writes the URLs that still need uploading; ``upload`` registers them as
destination files and writes back whatever is left.
"""

import asyncio
from pathlib import Path

import click

from catalog_migration.cli.commands.migrate import finish_run, run_pipeline
from catalog_migration.cli.context import MigrationContext
from catalog_migration.cli.decorators import handle_errors, pass_context, requires_config
from catalog_migration.cli.utils import echo_info, echo_success, format_count, print_stats
from catalog_migration.migration.dispatcher import RunSummary
from catalog_migration.migration.media import MediaReconciler, MediaUploadPipeline, write_url_report
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


def _reconciler(ctx: MigrationContext) -> MediaReconciler:
    return MediaReconciler(
        extensions=ctx.config.migration.supported_media_extensions,
        batch_size=ctx.config.performance.compare_batch_size,
        concurrency=ctx.config.performance.compare_concurrency,
    )


async def _export_names(ctx: MigrationContext, paged: bool) -> set[str]:
    reconciler = _reconciler(ctx)
    try:
        if paged:
            return await reconciler.export_names_paged(
                ctx.fetcher, page_size=ctx.config.performance.page_size
            )
        return await reconciler.export_names_bulk(ctx.bulk_runner)
    finally:
        await ctx.aclose()


def _read_lines(path: Path) -> list[str]:
    with open(path, encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def _object_urls(ctx: MigrationContext, path: Path) -> list[str]:
    """Read keys or URLs from ``path``; bare keys become public URLs."""
    storage = ctx.config.object_storage
    urls = []
    for entry in _read_lines(path):
        if entry.startswith(("http://", "https://")) or storage is None:
            urls.append(entry)
        else:
            urls.append(storage.public_url(entry))
    return urls


@click.group(name="media")
def media() -> None:
    """Compare object storage media with the destination store's files."""
    pass


_paged_option = click.option(
    "--paged",
    is_flag=True,
    help="Page through the files connection instead of running a bulk export job",
)


@media.command(name="export-files")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("reports/destination_files.txt"),
    show_default=True,
    help="File receiving one destination file name per line",
)
@_paged_option
@pass_context
@requires_config
@handle_errors
def export_files(ctx: MigrationContext, output: Path, paged: bool) -> None:
    """Export the names of every file the destination store holds.

    By default a bulk export job is started and polled until it finishes;
    this can take minutes on large stores.
    """
    echo_info("Exporting destination file names" + (" (paged)" if paged else " (bulk job)"))
    names = asyncio.run(_export_names(ctx, paged))
    count = write_url_report(sorted(names), output)
    echo_success(f"Wrote {format_count(count)} file names to {output}")


@media.command(name="compare")
@click.argument("objects_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--names-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Previously exported destination file names (skips the export)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("reports/missing_media.txt"),
    show_default=True,
    help="File receiving the URLs missing from the destination",
)
@_paged_option
@pass_context
@requires_config
@handle_errors
def compare(
    ctx: MigrationContext,
    objects_file: Path,
    names_file: Path | None,
    output: Path,
    paged: bool,
) -> None:
    """Report object storage media not yet uploaded to the destination.

    OBJECTS_FILE lists one object key or public URL per line. Bare keys are
    turned into URLs with the object_storage.public_url_template setting.

    Examples:

        catalog-bridge media compare bucket_keys.txt --names-file reports/destination_files.txt
    """
    urls = _object_urls(ctx, objects_file)

    if names_file is not None:
        known = set(_read_lines(names_file))
    else:
        echo_info("Exporting destination file names")
        known = asyncio.run(_export_names(ctx, paged))

    missing = asyncio.run(_reconciler(ctx).compare(urls, known))
    write_url_report(missing, output)

    print_stats(
        {
            "object_urls": format_count(len(urls)),
            "destination_files": format_count(len(known)),
            "missing": format_count(len(missing)),
        },
        "Media Compare",
    )
    echo_success(f"Missing URLs written to {output}")


@media.command(name="upload")
@click.argument("objects_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("reports/remaining_media.txt"),
    show_default=True,
    help="File receiving the URLs that are still not uploaded",
)
@click.option(
    "--skip-existing",
    is_flag=True,
    help="Skip URLs the ledger already records as uploaded",
)
@pass_context
@requires_config
@handle_errors
def upload(ctx: MigrationContext, objects_file: Path, output: Path, skip_existing: bool) -> None:
    """Register object storage media as destination files.

    OBJECTS_FILE lists one object key or public URL per line, typically the
    output of ``media compare``. Each file's alt text is its object key with
    ``/`` and whitespace replaced by ``_``. URLs that failed, were skipped
    as unsupported, or were never reached are written to --output so the
    next run can pick them up.

    Examples:

        catalog-bridge media upload reports/missing_media.txt -o reports/remaining_media.txt
    """
    urls = list(dict.fromkeys(_object_urls(ctx, objects_file)))
    extensions = ctx.config.migration.upload_media_extensions

    async def run() -> RunSummary:
        pipeline = MediaUploadPipeline(ctx.graphql_client, extensions)
        return await run_pipeline(
            ctx,
            pipeline,
            "media",
            items=list(urls),
            skip_existing=skip_existing,
            load_references=False,
        )

    summary = asyncio.run(run())

    remaining = ctx.ledger.missing(urls)
    write_url_report(remaining, output)
    echo_info(f"{format_count(len(remaining))} URL(s) remaining, written to {output}")
    finish_run(summary, "Media Upload")
