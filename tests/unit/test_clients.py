"""
Unit tests for the HTTP clients.

HTTP is served by httpx.MockTransport handlers; nothing leaves the process.
"""

import json

import httpx
import pytest

from catalog_migration.client.exceptions import (
    AuthenticationError,
    MalformedResponseError,
    RateLimitError,
    RemoteValidationError,
    ServerError,
    TransientNetworkError,
)
from catalog_migration.migration.credit_budget import CreditBudget


class TestDestinationGraphQLClient:
    """Tests for GraphQL error handling and budget metering."""

    async def test_returns_data(self, make_graphql_client):
        """Test that a clean response returns its data object."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["token"] = request.headers.get("X-Shopify-Access-Token")
            return httpx.Response(200, json={"data": {"shop": {"id": "gid://shopify/Shop/1"}}})

        client = make_graphql_client(handler)
        data = await client.execute("query { shop { id } }")

        assert data == {"shop": {"id": "gid://shopify/Shop/1"}}
        assert seen["url"].endswith("/admin/api/2025-01/graphql.json")
        assert seen["token"] == "shpat_test"
        await client.close()

    async def test_user_errors_on_http_200_raise(self, make_graphql_client):
        """Test that userErrors fail the call even though the status is 200."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {
                        "productCreate": {
                            "product": None,
                            "userErrors": [{"field": ["title"], "message": "Title can't be blank"}],
                        }
                    }
                },
            )

        client = make_graphql_client(handler)

        with pytest.raises(RemoteValidationError) as exc_info:
            await client.execute("mutation", payload_key="productCreate")

        assert exc_info.value.errors[0]["message"] == "Title can't be blank"
        await client.close()

    async def test_top_level_errors_raise(self, make_graphql_client):
        """Test that a non-empty errors array fails the call."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"errors": [{"message": "Field 'x' doesn't exist"}]})

        client = make_graphql_client(handler)

        with pytest.raises(RemoteValidationError):
            await client.execute("query { x }")
        await client.close()

    async def test_throttled_maps_to_rate_limit(self, make_graphql_client):
        """Test that a THROTTLED error becomes RateLimitError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]},
            )

        client = make_graphql_client(handler)

        with pytest.raises(RateLimitError):
            await client.execute("query { shop { id } }")
        await client.close()

    async def test_missing_payload_key_is_malformed(self, make_graphql_client):
        """Test that a response without the expected mutation payload is rejected."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {}})

        client = make_graphql_client(handler)

        with pytest.raises(MalformedResponseError):
            await client.execute("mutation", payload_key="productCreate")
        await client.close()

    async def test_every_call_is_metered(self, make_graphql_client, fake_sleep):
        """Test that each call debits the shared budget once."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"shop": {"id": "1"}}})

        budget = CreditBudget(sleep=fake_sleep)
        client = make_graphql_client(handler, budget=budget)

        for _ in range(3):
            await client.execute("query { shop { id } }")

        assert budget.remaining == 20000 - 3 * 40
        await client.close()

    async def test_refresh_budget_syncs_throttle_status(self, make_graphql_client):
        """Test that the reported throttle status replaces the local estimate."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {"shop": {"id": "1"}},
                    "extensions": {
                        "cost": {
                            "throttleStatus": {
                                "maximumAvailable": 2000.0,
                                "currentlyAvailable": 1500,
                                "restoreRate": 100.0,
                            }
                        }
                    },
                },
            )

        budget = CreditBudget()
        client = make_graphql_client(handler, budget=budget)

        status = await client.refresh_budget()

        assert status["currentlyAvailable"] == 1500
        assert budget.remaining == 1500
        assert budget.capacity == 2000
        await client.close()

    async def test_http_errors_map_to_exceptions(self, make_graphql_client):
        """Test the status code to exception mapping."""
        statuses = iter([401, 503])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses), json={"message": "nope"})

        client = make_graphql_client(handler)

        with pytest.raises(AuthenticationError):
            await client.execute("query")
        with pytest.raises(ServerError):
            await client.execute("query")
        await client.close()

    async def test_connection_failure_is_transient(self, make_graphql_client):
        """Test that transport failures raise TransientNetworkError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_graphql_client(handler)

        with pytest.raises(TransientNetworkError):
            await client.execute("query")
        await client.close()

    async def test_sends_variables(self, make_graphql_client):
        """Test that variables are sent in the request body."""
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"data": {"node": None}})

        client = make_graphql_client(handler)
        await client.execute("query($id: ID!) { node(id: $id) { id } }", {"id": "gid://x/1"})

        assert bodies[0]["variables"] == {"id": "gid://x/1"}
        await client.close()


class TestLegacyCatalogClient:
    """Tests for the legacy read API client."""

    async def test_fetch_product_posts_json(self, make_legacy_client):
        """Test that the detail route receives the product id as JSON."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[{"product_id": "5", "name": "Ring"}])

        client = make_legacy_client(handler)
        records = await client.fetch_product("5")

        assert records == [{"product_id": "5", "name": "Ring"}]
        assert seen["path"].endswith("/product/product_detail.php")
        assert seen["body"] == {"product_id": "5"}
        assert seen["auth"] == "Bearer legacy-token"
        await client.close()

    async def test_empty_body_means_no_records(self, make_legacy_client):
        """Test that an empty response is an empty record list."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"")

        client = make_legacy_client(handler)

        assert await client.fetch_stock_variants("5") == []
        await client.close()

    async def test_non_array_is_malformed(self, make_legacy_client):
        """Test that an object instead of an array is rejected."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": "something"})

        client = make_legacy_client(handler)

        with pytest.raises(MalformedResponseError):
            await client.fetch_product("5")
        await client.close()

    async def test_detail_page_payload(self, make_legacy_client):
        """Test the paged detail request body."""
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=[])

        client = make_legacy_client(handler)
        await client.fetch_detail_page("77", 3)

        assert bodies == [{"product_id": "77", "page": "3", "limit": "50"}]
        await client.close()

    async def test_list_product_ids_is_distinct(self, make_legacy_client):
        """Test that repeated listing rows collapse to one id each, in order."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[
                    {"product_id": "2", "tag_no": "A"},
                    {"product_id": "1", "tag_no": "B"},
                    {"product_id": "2", "tag_no": "C"},
                ],
            )

        client = make_legacy_client(handler)

        assert await client.list_product_ids() == ["2", "1"]
        await client.close()
