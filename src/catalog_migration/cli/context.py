"""
CLI context for Catalog Bridge.

This module provides the context object that is passed to all CLI commands,
containing configuration, clients, the credit budget and the ledger.
"""

from dataclasses import dataclass, field
from pathlib import Path

from catalog_migration.client.graphql_client import DestinationGraphQLClient
from catalog_migration.client.legacy_client import LegacyCatalogClient
from catalog_migration.config import MigrationConfig, load_config_from_yaml
from catalog_migration.migration.bulk_jobs import BulkJobRunner
from catalog_migration.migration.credit_budget import CreditBudget
from catalog_migration.migration.ledger import MigrationLedger
from catalog_migration.migration.paged_fetcher import PagedFetcher
from catalog_migration.migration.pipelines import ProductWriter
from catalog_migration.migration.reference_cache import ReferenceCache
from catalog_migration.migration.transform import CatalogTransformer, ReferenceResolver
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Context object for CLI commands.

    Everything except the configuration is created on first use, so
    commands that only touch the ledger never open an HTTP connection.
    Clients must be created and closed inside the same event loop; commands
    call ``aclose()`` at the end of their ``asyncio.run`` coroutine.

    Attributes:
        config_path: Path to configuration file
        log_level: Console logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None

    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _budget: CreditBudget | None = field(default=None, init=False, repr=False)
    _legacy_client: LegacyCatalogClient | None = field(default=None, init=False, repr=False)
    _graphql_client: DestinationGraphQLClient | None = field(default=None, init=False, repr=False)
    _ledger: MigrationLedger | None = field(default=None, init=False, repr=False)
    _reference_cache: ReferenceCache | None = field(default=None, init=False, repr=False)
    _bulk_runner: BulkJobRunner | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load migration configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ValueError(
                    "Configuration file path not provided. "
                    "Use --config option or set CATALOG_BRIDGE_CONFIG environment variable."
                )

            logger.debug("Loading configuration", config_path=str(self.config_path))
            self._config = load_config_from_yaml(self.config_path)
            logger.debug("Configuration loaded successfully")

        return self._config

    @property
    def budget(self) -> CreditBudget:
        """The one credit budget shared by every destination call in this process."""
        if self._budget is None:
            self._budget = CreditBudget.from_config(self.config.credit_budget)
        return self._budget

    @property
    def legacy_client(self) -> LegacyCatalogClient:
        if self._legacy_client is None:
            logger.debug("Creating legacy client", url=self.config.legacy.base_url)
            self._legacy_client = LegacyCatalogClient(
                config=self.config.legacy,
                log_payloads=self.config.logging.log_payloads,
                max_payload_size=self.config.logging.max_payload_size,
                max_connections=self.config.performance.http_max_connections,
                max_keepalive_connections=self.config.performance.http_max_keepalive_connections,
            )
        return self._legacy_client

    @property
    def graphql_client(self) -> DestinationGraphQLClient:
        if self._graphql_client is None:
            logger.debug("Creating destination client", url=self.config.destination.store_url)
            self._graphql_client = DestinationGraphQLClient(
                config=self.config.destination,
                budget=self.budget,
                log_payloads=self.config.logging.log_payloads,
                max_payload_size=self.config.logging.max_payload_size,
                max_connections=self.config.performance.http_max_connections,
                max_keepalive_connections=self.config.performance.http_max_keepalive_connections,
            )
        return self._graphql_client

    @property
    def ledger(self) -> MigrationLedger:
        if self._ledger is None:
            logger.debug("Opening ledger", db_path=self.config.state.db_path)
            self._ledger = MigrationLedger.from_config(self.config.state)
        return self._ledger

    @property
    def fetcher(self) -> PagedFetcher:
        return PagedFetcher(self.graphql_client)

    @property
    def reference_cache(self) -> ReferenceCache:
        if self._reference_cache is None:
            self._reference_cache = ReferenceCache(
                self.fetcher,
                self.config.migration.vocabularies,
                page_size=self.config.performance.page_size,
            )
        return self._reference_cache

    @property
    def bulk_runner(self) -> BulkJobRunner:
        if self._bulk_runner is None:
            self._bulk_runner = BulkJobRunner(
                self.graphql_client,
                poll_interval=self.config.performance.bulk_poll_interval,
                max_attempts=self.config.performance.bulk_poll_max_attempts,
            )
        return self._bulk_runner

    def writer(self) -> ProductWriter:
        return ProductWriter(
            self.graphql_client,
            metafield_batch_size=self.config.performance.metafield_batch_size,
        )

    def transformer(self) -> CatalogTransformer:
        """Transformer wired to the reference cache and ledger-backed cross references."""
        return CatalogTransformer(
            self.reference_cache,
            resolver=ReferenceResolver(self.ledger),
            vendor=self.config.migration.vendor,
            vocabulary_filter_groups=self.config.migration.vocabulary_filter_groups,
        )

    async def aclose(self) -> None:
        """Close HTTP clients created during the current event loop."""
        if self._bulk_runner is not None:
            await self._bulk_runner.close()
            self._bulk_runner = None
        if self._graphql_client is not None:
            await self._graphql_client.close()
            self._graphql_client = None
        if self._legacy_client is not None:
            await self._legacy_client.close()
            self._legacy_client = None
        self._reference_cache = None

    def cleanup(self) -> None:
        """Release the ledger's database connections."""
        logger.debug("Cleaning up context resources")
        if self._ledger is not None:
            self._ledger.close()
            self._ledger = None

    def __enter__(self) -> "MigrationContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
