"""Client for the legacy catalog read API.

Every legacy route takes a JSON body and answers with a JSON array of
record objects. An empty array (or an empty body) is a valid "no data"
answer, not an error.
"""

from typing import Any

import httpx

from catalog_migration.client.base_client import BaseAPIClient
from catalog_migration.client.exceptions import MalformedResponseError
from catalog_migration.config import LegacyConfig
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

Record = dict[str, Any]


class LegacyCatalogClient(BaseAPIClient):
    """Client for the legacy commerce backend.

    Route names come from ``LegacyConfig.endpoints`` so the client carries
    no knowledge of the backend's URL layout.
    """

    def __init__(
        self,
        config: LegacyConfig,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        max_connections: int = 50,
        max_keepalive_connections: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            base_url=config.base_url,
            token=config.token,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            transport=transport,
        )
        self.endpoints = config.endpoints
        self.detail_page_limit = config.detail_page_limit

    async def fetch_records(self, endpoint: str, payload: dict[str, Any] | None = None) -> list[Record]:
        """POST ``payload`` to ``endpoint`` and return the record array.

        Raises:
            MalformedResponseError: If the body is neither empty nor a JSON array of objects
        """
        data = await self.post(endpoint, json_data=payload)

        if data in ({}, None):
            return []
        if not isinstance(data, list):
            raise MalformedResponseError(
                f"Expected a JSON array from {endpoint}", response=str(data)[:500]
            )
        if any(not isinstance(record, dict) for record in data):
            raise MalformedResponseError(f"Non-object record in {endpoint} response")
        return data

    async def fetch_product(self, product_id: str) -> list[Record]:
        """Fetch the detail records of one product (usually a single record)."""
        return await self.fetch_records(
            self.endpoints.product_detail, {"product_id": str(product_id)}
        )

    async def fetch_stock_variants(self, product_id: str) -> list[Record]:
        """Fetch the stock variant records of one product."""
        return await self.fetch_records(
            self.endpoints.stock_detail, {"product_id": str(product_id)}
        )

    async def fetch_detail_page(
        self, product_id: str, page: int, limit: int | None = None
    ) -> list[Record]:
        """Fetch one page of a product's paged variant detail."""
        return await self.fetch_records(
            self.endpoints.paged_detail,
            {
                "product_id": str(product_id),
                "page": str(page),
                "limit": str(limit or self.detail_page_limit),
            },
        )

    async def list_stock_products(self) -> list[Record]:
        """List stock rows: ``product_id``, ``sort_order``, ``tag_no``, ..."""
        records = await self.fetch_records(self.endpoints.stock_listing)
        logger.info("legacy_stock_listing_fetched", count=len(records))
        return records

    async def list_paged_products(self) -> list[Record]:
        """List products with paged detail: ``product_id`` and ``total_page``."""
        records = await self.fetch_records(self.endpoints.paged_listing)
        logger.info("legacy_paged_listing_fetched", count=len(records))
        return records

    async def list_product_ids(self) -> list[str]:
        """Distinct product ids from the stock listing, in listing order."""
        records = await self.list_stock_products()
        return list(
            dict.fromkeys(str(r["product_id"]) for r in records if r.get("product_id"))
        )
