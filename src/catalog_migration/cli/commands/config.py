"""
Configuration commands.

Validate and display the loaded configuration.
"""

import click
import yaml

from catalog_migration.cli.context import MigrationContext
from catalog_migration.cli.decorators import handle_errors, pass_context, requires_config
from catalog_migration.cli.utils import echo_success, print_stats
from catalog_migration.utils.logging import sanitize_payload


@click.group(name="config")
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="validate")
@pass_context
@requires_config
@handle_errors
def validate(ctx: MigrationContext) -> None:
    """Validate the configuration file and summarise it."""
    cfg = ctx.config
    print_stats(
        {
            "destination": cfg.destination.store_url,
            "api_version": cfg.destination.api_version,
            "legacy_api": cfg.legacy.base_url,
            "ledger": cfg.state.db_path,
            "concurrency": cfg.performance.concurrency,
            "batch_size": cfg.performance.batch_size,
            "skip_existing": cfg.migration.skip_existing,
            "vocabularies": len(cfg.migration.vocabularies),
            "object_storage": cfg.object_storage.bucket if cfg.object_storage else "-",
        },
        "Configuration",
    )
    echo_success(f"Configuration is valid: {ctx.config_path}")


@config.command(name="show")
@pass_context
@requires_config
@handle_errors
def show(ctx: MigrationContext) -> None:
    """Print the effective configuration with secrets redacted."""
    data = sanitize_payload(ctx.config.model_dump(mode="json"))
    click.echo(yaml.safe_dump(data, sort_keys=False))
