"""
Unit tests for the vocabulary reference cache.
"""

import asyncio
import json

import httpx
import pytest

from catalog_migration.client.exceptions import FetchError
from catalog_migration.migration.paged_fetcher import PagedFetcher
from catalog_migration.migration.reference_cache import ReferenceCache, metaobject_name


def metaobjects_response(nodes: list[dict]) -> dict:
    return {
        "data": {
            "metaobjects": {
                "edges": [{"node": node} for node in nodes],
                "pageInfo": {"hasNextPage": False, "endCursor": None},
            }
        }
    }


VOCABULARIES = {
    "metal": [
        {"id": "gid://shopify/Metaobject/1", "fields": [{"key": "name", "value": "Gold"}]},
        {"id": "gid://shopify/Metaobject/2", "fields": [{"key": "name", "value": "Silver"}]},
        {"id": "gid://shopify/Metaobject/3", "fields": [{"key": "name", "value": "Gold"}]},
    ],
    "shape": [
        {
            "id": "gid://shopify/Metaobject/10",
            "fields": [{"key": "filter_id", "value": "77"}, {"key": "name", "value": "Round"}],
        },
        {"id": "gid://shopify/Metaobject/11", "fields": [{"key": "filter_id", "value": "78"}]},
    ],
}


@pytest.fixture
def vocabulary_handler():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        vocabulary = json.loads(request.content)["variables"]["type"]
        requests.append(vocabulary)
        return httpx.Response(200, json=metaobjects_response(VOCABULARIES[vocabulary]))

    handler.requests = requests
    return handler


class TestMetaobjectName:
    """Tests for picking a metaobject's display name."""

    def test_skips_filter_id(self):
        """Test that the filter handle is never used as the name."""
        node = {"fields": [{"key": "filter_id", "value": "12"}, {"key": "label", "value": "Oval"}]}

        assert metaobject_name(node) == "Oval"

    def test_skips_empty_values(self):
        """Test that empty fields are passed over."""
        node = {"fields": [{"key": "name", "value": ""}, {"key": "title", "value": "Pear"}]}

        assert metaobject_name(node) == "Pear"

    def test_no_name(self):
        """Test a metaobject with nothing usable."""
        assert metaobject_name({"fields": [{"key": "filter_id", "value": "1"}]}) is None


class TestReferenceCache:
    """Tests for loading and resolving vocabularies."""

    async def test_loads_each_vocabulary_once_under_concurrency(
        self, make_graphql_client, vocabulary_handler
    ):
        """Test that concurrent initialize_all calls perform a single load."""
        client = make_graphql_client(vocabulary_handler)
        cache = ReferenceCache(PagedFetcher(client), ["metal", "shape"])

        results = await asyncio.gather(*(cache.initialize_all() for _ in range(5)))

        assert results.count(True) == 1
        assert vocabulary_handler.requests == ["metal", "shape"]
        assert cache.initialized
        await client.close()

    async def test_first_duplicate_wins(self, make_graphql_client, vocabulary_handler):
        """Test that a repeated name keeps the first id listed."""
        client = make_graphql_client(vocabulary_handler)
        cache = ReferenceCache(PagedFetcher(client), ["metal", "shape"])
        await cache.initialize_all()

        assert cache.resolve("metal", "Gold") == "gid://shopify/Metaobject/1"
        assert cache.resolve("shape", "Round") == "gid://shopify/Metaobject/10"
        assert cache.stats() == {"metal": 2, "shape": 1}
        await client.close()

    async def test_resolve_many_drops_unknown_and_repeats(
        self, make_graphql_client, vocabulary_handler
    ):
        """Test resolving a list of names."""
        client = make_graphql_client(vocabulary_handler)
        cache = ReferenceCache(PagedFetcher(client), ["metal"])
        await cache.initialize_all()

        resolved = cache.resolve_many("metal", ["Silver", "Platinum", "Gold", "Silver", None])

        assert resolved == ["gid://shopify/Metaobject/2", "gid://shopify/Metaobject/1"]
        assert cache.resolve("unknown", "Gold") is None
        await client.close()

    async def test_maps_are_read_only(self, make_graphql_client, vocabulary_handler):
        """Test that callers cannot mutate a loaded vocabulary."""
        client = make_graphql_client(vocabulary_handler)
        cache = ReferenceCache(PagedFetcher(client), ["metal"])
        await cache.initialize_all()

        with pytest.raises(TypeError):
            cache.vocabulary("metal")["Copper"] = "gid://x"  # type: ignore[index]
        await client.close()

    async def test_failed_load_can_be_retried(self, make_graphql_client):
        """Test that a failed load leaves the cache uninitialized."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(502, json={"message": "bad gateway"})
            return httpx.Response(200, json=metaobjects_response(VOCABULARIES["metal"]))

        client = make_graphql_client(handler)
        cache = ReferenceCache(PagedFetcher(client), ["metal"])

        with pytest.raises(FetchError):
            await cache.initialize_all()
        assert not cache.initialized

        assert await cache.initialize_all() is True
        assert cache.resolve("metal", "Silver") == "gid://shopify/Metaobject/2"
        await client.close()

    async def test_node_without_id_counts_as_unnamed(self, make_graphql_client):
        """Test that a metaobject missing its id is left out instead of failing the load."""
        nodes = [
            {"fields": [{"key": "name", "value": "Platinum"}]},
            {"id": "gid://shopify/Metaobject/5", "fields": [{"key": "name", "value": "Rose"}]},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=metaobjects_response(nodes))

        client = make_graphql_client(handler)
        cache = ReferenceCache(PagedFetcher(client), ["metal"])
        await cache.initialize_all()

        assert cache.vocabulary("metal") == {"Rose": "gid://shopify/Metaobject/5"}
        assert cache.resolve("metal", "Platinum") is None
        await client.close()


class GatedFetcher:
    """Serves metaobject nodes; can hold a load open until released."""

    def __init__(self, nodes: list[dict]):
        self.nodes = nodes
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def fetch_all(self, query, page_size, connection, variables=None):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        for node in self.nodes:
            yield node


class TestReinitialize:
    """Tests for rebuilding loaded vocabularies."""

    async def test_readers_keep_old_maps_until_swap(self):
        """Test that lookups during a rebuild still see the previous maps."""
        fetcher = GatedFetcher(
            [{"id": "gid://shopify/Metaobject/1", "fields": [{"key": "name", "value": "Gold"}]}]
        )
        cache = ReferenceCache(fetcher, ["metal"])
        await cache.initialize_all()

        fetcher.nodes = [
            {"id": "gid://shopify/Metaobject/9", "fields": [{"key": "name", "value": "Gold"}]}
        ]
        fetcher.gate = asyncio.Event()
        fetcher.entered.clear()
        rebuild = asyncio.create_task(cache.reinitialize())
        await fetcher.entered.wait()

        assert cache.resolve("metal", "Gold") == "gid://shopify/Metaobject/1"

        fetcher.gate.set()
        await rebuild

        assert cache.resolve("metal", "Gold") == "gid://shopify/Metaobject/9"
        assert cache.initialized

    async def test_initialize_all_waits_for_running_rebuild(self):
        """Test that initialize_all does not start a second load during a rebuild."""
        fetcher = GatedFetcher(
            [{"id": "gid://shopify/Metaobject/1", "fields": [{"key": "name", "value": "Gold"}]}]
        )
        cache = ReferenceCache(fetcher, ["metal"])
        fetcher.gate = asyncio.Event()

        rebuild = asyncio.create_task(cache.reinitialize())
        await fetcher.entered.wait()
        init = asyncio.create_task(cache.initialize_all())
        await asyncio.sleep(0)
        assert not init.done()

        fetcher.gate.set()
        await rebuild

        assert await init is False
