"""
Shared test fixtures and configuration for pytest.
"""

import asyncio
from collections.abc import Callable
import httpx
import pytest

from catalog_migration.client.graphql_client import DestinationGraphQLClient
from catalog_migration.client.legacy_client import LegacyCatalogClient
from catalog_migration.config import DestinationConfig, LegacyConfig
from catalog_migration.migration.database import Database
from catalog_migration.migration.ledger import MigrationLedger

STORE_URL = "https://test-store.myshopify.com"
LEGACY_URL = "https://legacy.example.com/api"


class FakeSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def destination_config() -> DestinationConfig:
    return DestinationConfig(store_url=STORE_URL, access_token="shpat_test")


@pytest.fixture
def legacy_config() -> LegacyConfig:
    return LegacyConfig(base_url=LEGACY_URL, token="legacy-token")


@pytest.fixture
def ledger(tmp_path):
    """Ledger on a throwaway SQLite file."""
    ledger = MigrationLedger(Database(f"sqlite:///{tmp_path / 'ledger.db'}"))
    yield ledger
    ledger.close()


@pytest.fixture
def make_graphql_client(destination_config):
    """Build a DestinationGraphQLClient whose HTTP calls go to ``handler``."""
    clients: list[DestinationGraphQLClient] = []

    def factory(
        handler: Callable[[httpx.Request], httpx.Response], budget=None
    ) -> DestinationGraphQLClient:
        client = DestinationGraphQLClient(
            destination_config, budget=budget, transport=httpx.MockTransport(handler)
        )
        clients.append(client)
        return client

    return factory


@pytest.fixture
def make_legacy_client(legacy_config):
    """Build a LegacyCatalogClient whose HTTP calls go to ``handler``."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> LegacyCatalogClient:
        return LegacyCatalogClient(legacy_config, transport=httpx.MockTransport(handler))

    return factory
