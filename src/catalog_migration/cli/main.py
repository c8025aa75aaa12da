"""
Main CLI entry point for Catalog Bridge.

This module provides the command-line interface for migrating a legacy
catalog into the destination store.
"""

import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from catalog_migration import __version__
from catalog_migration.cli.commands import budget as budget_commands
from catalog_migration.cli.commands import config as config_commands
from catalog_migration.cli.commands import ledger as ledger_commands
from catalog_migration.cli.commands import media as media_commands
from catalog_migration.cli.commands import migrate as migrate_commands
from catalog_migration.cli.context import MigrationContext
from catalog_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="catalog-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="CATALOG_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Console logging level (overrides logging.level in the config file)",
    envvar="CATALOG_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Log file path (overrides logging.file in the config file)",
    envvar="CATALOG_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str | None,
    log_file: Path | None,
) -> None:
    """Catalog Bridge - migrate a legacy catalog into the destination store.

    Examples:

        # Validate configuration
        catalog-bridge config validate --config config.yaml

        # Migrate products listed in a CSV
        catalog-bridge migrate products --ids-file products.csv -c config.yaml

        # Inspect failures of earlier runs
        catalog-bridge ledger failures -c config.yaml
    """
    migration_ctx = MigrationContext(
        config_path=config,
        log_level=(log_level or "WARNING").upper(),
        log_file=log_file,
    )

    level = log_level
    file_level = None
    log_format = "json"
    effective_log_file = str(log_file) if log_file else None
    if config is not None:
        try:
            logging_config = migration_ctx.config.logging
        except Exception:
            # Reported properly by requires_config; log with defaults meanwhile
            logging_config = None
        if logging_config is not None:
            level = level or logging_config.level
            file_level = logging_config.file_level
            log_format = logging_config.format
            effective_log_file = effective_log_file or logging_config.file

    if effective_log_file:
        Path(effective_log_file).parent.mkdir(parents=True, exist_ok=True)

    configure_logging(
        level=level or "WARNING",
        log_format=log_format,
        log_file=effective_log_file,
        file_level=file_level,
    )

    ctx.obj = migration_ctx

    logger.debug(
        "CLI initialized",
        config=str(config) if config else None,
        log_level=level,
    )


# Register command groups
cli.add_command(config_commands.config)
cli.add_command(migrate_commands.migrate)
cli.add_command(ledger_commands.ledger)
cli.add_command(media_commands.media)
cli.add_command(budget_commands.budget)


def main() -> int:
    """Main entry point for CLI."""
    try:
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except Exception as e:
        logger.error("Unexpected error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
