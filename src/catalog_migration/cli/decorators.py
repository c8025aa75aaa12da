"""
Decorators for CLI commands.

This module provides decorators for error handling, context passing,
and configuration loading.
"""

import functools
from collections.abc import Callable

import click

from catalog_migration.cli.context import MigrationContext
from catalog_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    MigrationError,
    StateError,
)
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


def pass_context(f: Callable) -> Callable:
    """
    Decorator to pass MigrationContext to command function.

    Usage:
        @click.command()
        @pass_context
        def my_command(ctx: MigrationContext):
            print(ctx.config)
    """

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        migration_ctx: MigrationContext = click_ctx.obj
        return f(migration_ctx, *args, **kwargs)

    return wrapper


# Checked in order, so subclasses come before their bases.
_EXIT_CODES: tuple[tuple[type[Exception], int, str, str | None], ...] = (
    (
        ConfigurationError,
        2,
        "Configuration Error",
        "Check the configuration file and the environment variables it references.",
    ),
    (
        AuthenticationError,
        3,
        "Authentication Error",
        "Verify the destination access token and the legacy API token.",
    ),
    (APIError, 4, "API Error", None),
    (
        StateError,
        5,
        "Ledger Error",
        "The migration ledger could not be read or written; it may be locked by another run.",
    ),
    (MigrationError, 6, "Migration Error", None),
)


def exit_code_for(error: Exception) -> int:
    """Exit code a command reports for ``error`` (1 when unmapped)."""
    for error_type, code, _, _ in _EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return 1


def handle_errors(f: Callable) -> Callable:
    """
    Decorator turning migration errors into exit codes.

    Exit codes:
        0: Success
        1: Unexpected error, or a run that recorded failed items
        2: Configuration error
        3: Authentication error
        4: API error
        5: Ledger error
        6: Run aborted
    """

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except click.exceptions.Exit:
            raise
        except Exception as e:
            for error_type, code, label, hint in _EXIT_CODES:
                if isinstance(e, error_type):
                    logger.error("command_failed", error_type=type(e).__name__, error=str(e))
                    click.echo(f"{label}: {e}", err=True)
                    status_code = getattr(e, "status_code", None)
                    if status_code:
                        click.echo(f"\nResponse status: {status_code}", err=True)
                    if hint:
                        click.echo(f"\n{hint}", err=True)
                    raise click.exceptions.Exit(code) from e

            logger.error("command_crashed", error=str(e), exc_info=True)
            click.echo(f"Unexpected Error: {e}", err=True)
            click.echo("\nSee the log file for the full traceback.", err=True)
            raise click.exceptions.Exit(1) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """
    Decorator to ensure configuration is loaded.

    Checks that a configuration file has been provided and loads it
    before executing the command.
    """

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        if ctx.config_path is None:
            click.echo(
                "Error: Configuration file required. "
                "Use --config option or set CATALOG_BRIDGE_CONFIG.",
                err=True,
            )
            raise click.exceptions.Exit(2)

        try:
            _ = ctx.config
        except Exception as e:
            click.echo(f"Error loading configuration: {e}", err=True)
            raise click.exceptions.Exit(2) from e

        return f(ctx, *args, **kwargs)

    return wrapper
