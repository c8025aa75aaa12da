"""
Unit tests for cursor pagination over GraphQL connections and object listings.
"""

import json

import httpx
import pytest

from catalog_migration.client.exceptions import FetchError, MalformedResponseError
from catalog_migration.migration.paged_fetcher import (
    ObjectListingSource,
    Page,
    PagedFetcher,
    parse_connection,
)

PRODUCTS_QUERY = """
query Products($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    edges { node { id } }
    pageInfo { hasNextPage endCursor }
  }
}
"""


def connection_page(start: int, count: int, has_next: bool, cursor: str | None) -> dict:
    return {
        "data": {
            "products": {
                "edges": [{"node": {"id": f"gid://shopify/Product/{n}"}} for n in range(start, start + count)],
                "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
            }
        }
    }


class TestParseConnection:
    """Tests for turning a connection object into a Page."""

    def test_edges(self):
        """Test reading nodes from edges."""
        page = parse_connection(connection_page(0, 2, True, "c1")["data"], "products")

        assert [n["id"] for n in page.items] == ["gid://shopify/Product/0", "gid://shopify/Product/1"]
        assert page.has_more is True
        assert page.cursor == "c1"

    def test_nodes(self):
        """Test reading the nodes shorthand."""
        data = {"files": {"nodes": [{"id": "f1"}], "pageInfo": {"hasNextPage": False}}}

        page = parse_connection(data, "files")

        assert page.items == [{"id": "f1"}]
        assert page.has_more is False

    def test_missing_connection(self):
        """Test that a response without the connection is malformed."""
        with pytest.raises(MalformedResponseError):
            parse_connection({}, "products")

    def test_more_pages_without_cursor(self):
        """Test that hasNextPage without an endCursor is malformed."""
        data = {"products": {"edges": [], "pageInfo": {"hasNextPage": True, "endCursor": None}}}

        with pytest.raises(MalformedResponseError):
            parse_connection(data, "products")


class TestPagedFetcher:
    """Tests for the traversal itself."""

    async def test_two_pages_yield_every_node(self, make_graphql_client):
        """Test a 250 + 80 node listing yields 330 nodes, passing the cursor on."""
        afters = []

        def handler(request: httpx.Request) -> httpx.Response:
            variables = json.loads(request.content)["variables"]
            afters.append(variables["after"])
            if variables["after"] is None:
                return httpx.Response(200, json=connection_page(0, 250, True, "c1"))
            return httpx.Response(200, json=connection_page(250, 80, False, None))

        client = make_graphql_client(handler)
        nodes = await PagedFetcher(client).collect(PRODUCTS_QUERY, 250, "products")

        assert len(nodes) == 330
        assert nodes[0]["id"] == "gid://shopify/Product/0"
        assert nodes[-1]["id"] == "gid://shopify/Product/329"
        assert afters == [None, "c1"]
        await client.close()

    async def test_failed_page_raises_fetch_error(self, make_graphql_client):
        """Test that a failing second page aborts the traversal with its page number."""
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(200, json=connection_page(0, 250, True, "c1"))
            return httpx.Response(500, json={"message": "internal"})

        client = make_graphql_client(handler)
        seen = []

        with pytest.raises(FetchError) as exc_info:
            async for node in PagedFetcher(client).fetch_all(PRODUCTS_QUERY, 250, "products"):
                seen.append(node)

        assert exc_info.value.page_number == 2
        assert len(seen) == 250
        await client.close()

    async def test_iterate_over_any_page_function(self):
        """Test the generic traversal with a plain page function."""
        pages = {
            None: Page(items=[1, 2], has_more=True, cursor="a"),
            "a": Page(items=[3], has_more=False),
        }

        async def fetch_page(cursor):
            return pages[cursor]

        items = [item async for item in PagedFetcher().iterate(fetch_page)]

        assert items == [1, 2, 3]

    async def test_fetch_all_requires_client(self):
        """Test that GraphQL traversal without a client is refused."""
        with pytest.raises(ValueError):
            async for _ in PagedFetcher().fetch_all(PRODUCTS_QUERY, 250, "products"):
                pass


class FakeObjectStorage:
    """ListObjectsV2-shaped client returning canned pages."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def list_objects_v2(self, **kwargs):
        self.calls.append(kwargs)
        return self.pages[kwargs.get("ContinuationToken")]


class TestObjectListingSource:
    """Tests for paging through object storage keys."""

    async def test_lists_all_keys(self):
        """Test following continuation tokens until the listing is complete."""
        storage = FakeObjectStorage(
            {
                None: {
                    "Contents": [{"Key": "media/a.avif"}, {"Key": "media/b.mp4"}],
                    "IsTruncated": True,
                    "NextContinuationToken": "t1",
                },
                "t1": {"Contents": [{"Key": "media/c.avif"}], "IsTruncated": False},
            }
        )
        source = ObjectListingSource(storage, bucket="assets", prefix="media/", max_keys=2)

        keys = [key async for key in PagedFetcher().iterate(source)]

        assert keys == ["media/a.avif", "media/b.mp4", "media/c.avif"]
        assert storage.calls[0] == {"Bucket": "assets", "MaxKeys": 2, "Prefix": "media/"}
        assert storage.calls[1]["ContinuationToken"] == "t1"
