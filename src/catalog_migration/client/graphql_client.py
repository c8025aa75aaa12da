"""Client for the destination platform's GraphQL Admin API.

Every call is ``{query, variables}`` POSTed to the store's GraphQL
endpoint. A response carrying a non-empty ``errors`` array, or a mutation
payload carrying a non-empty ``userErrors`` array, is a failed call even
when the HTTP status is 200.

When constructed with a ``CreditBudget`` the client regulates and then
consumes credits before each call, so every remote call is paced.
"""

from typing import Any

import httpx

from catalog_migration.client.base_client import BaseAPIClient
from catalog_migration.client.exceptions import (
    MalformedResponseError,
    RateLimitError,
    RemoteValidationError,
)
from catalog_migration.config import DestinationConfig
from catalog_migration.migration.credit_budget import CreditBudget
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

THROTTLE_QUERY = "query { shop { id } }"


def dig(data: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts; None when any step is missing."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class DestinationGraphQLClient(BaseAPIClient):
    """GraphQL client for the destination store."""

    def __init__(
        self,
        config: DestinationConfig,
        budget: CreditBudget | None = None,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        max_connections: int = 50,
        max_keepalive_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the destination client.

        Args:
            config: Destination store configuration
            budget: Credit budget shared by all callers (None disables pacing)
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            transport: Custom httpx transport
        """
        super().__init__(
            base_url=config.store_url,
            token=config.access_token,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            transport=transport,
        )
        self.graphql_path = config.graphql_path
        self.budget = budget

    def _build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Shopify-Access-Token": self.token or "",
        }

    async def execute_raw(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        cost: int | None = None,
    ) -> dict[str, Any]:
        """Run a query and return the whole response body after checking ``errors``.

        Raises:
            RateLimitError: If the platform reports the call as throttled
            RemoteValidationError: If the response carries top-level ``errors``
            MalformedResponseError: If the body has no ``data`` object
        """
        if self.budget is not None:
            await self.budget.spend(cost)

        body: dict[str, Any] = {"query": query}
        if variables is not None:
            body["variables"] = variables

        response = await self.post(self.graphql_path, json_data=body)
        if not isinstance(response, dict):
            raise MalformedResponseError("GraphQL response is not an object", response=response)

        errors = response.get("errors")
        if errors:
            if any(dig(error, "extensions.code") == "THROTTLED" for error in errors):
                raise RateLimitError("GraphQL call throttled", status_code=200, response=errors)
            raise RemoteValidationError("GraphQL errors", errors=errors)

        if not isinstance(response.get("data"), dict):
            raise MalformedResponseError("GraphQL response has no data", response=response)
        return response

    async def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        payload_key: str | None = None,
        cost: int | None = None,
    ) -> dict[str, Any]:
        """Run a query or mutation and return its ``data``.

        Args:
            query: GraphQL document
            variables: Variables for the document
            payload_key: Top-level field to return instead of the whole ``data``
                (e.g. ``productCreate``); it must be present
            cost: Credits to debit instead of the budget's default

        Raises:
            RemoteValidationError: On ``errors`` or any non-empty ``userErrors``
            MalformedResponseError: If ``payload_key`` is missing from ``data``
        """
        data = (await self.execute_raw(query, variables, cost))["data"]

        for field, payload in data.items():
            user_errors = payload.get("userErrors") if isinstance(payload, dict) else None
            if user_errors:
                logger.warning("graphql_user_errors", field=field, user_errors=user_errors)
                raise RemoteValidationError(f"{field} returned userErrors", errors=user_errors)

        if payload_key is None:
            return data

        payload = data.get(payload_key)
        if payload is None:
            raise MalformedResponseError(f"Response is missing '{payload_key}'", response=data)
        return payload

    async def refresh_budget(self) -> dict[str, Any] | None:
        """Sync the credit budget from the platform's reported throttle status.

        Returns:
            The ``throttleStatus`` object, or None if the platform reported none
        """
        response = await self.execute_raw(THROTTLE_QUERY, cost=0)
        status = dig(response, "extensions.cost.throttleStatus")
        if not status:
            logger.warning("throttle_status_missing")
            return None

        if self.budget is not None:
            self.budget.sync_from_throttle_status(
                currently_available=status.get("currentlyAvailable", 0),
                maximum_available=status.get("maximumAvailable"),
                restore_rate=status.get("restoreRate"),
            )
        return status
