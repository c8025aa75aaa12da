"""
Cursor-based "fetch all pages" traversal.

One algorithm serves every paginated listing: GraphQL connections on the
destination platform and ListObjectsV2-style object-storage listings. Each
page request carries the cursor returned by the previous page, and the
traversal ends when a page reports that nothing follows.

A failed page aborts the traversal with ``FetchError``. Pages are never
retried and cursors are not resumable, so callers wanting resilience
re-run the traversal from the start.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from catalog_migration.client.exceptions import FetchError, MalformedResponseError
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Page:
    """One page of a listing plus the cursor that leads to the next one."""

    items: list[Any] = field(default_factory=list)
    has_more: bool = False
    cursor: str | None = None


PageFunc = Callable[[str | None], Awaitable[Page]]


class GraphQLExecutor(Protocol):
    async def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        payload_key: str | None = None,
        cost: int | None = None,
    ) -> dict[str, Any]: ...


def parse_connection(data: dict[str, Any], connection: str) -> Page:
    """
    Turn ``{<connection>: {edges: [{node}], pageInfo: {...}}}`` into a Page.

    ``connection`` may be a dotted path for nested connections.

    Raises:
        MalformedResponseError: If the connection or its pageInfo is missing,
            or a page claims more data without an end cursor
    """
    conn: Any = data
    for part in connection.split("."):
        conn = conn.get(part) if isinstance(conn, dict) else None
    if not isinstance(conn, dict):
        raise MalformedResponseError(f"Connection '{connection}' missing from response")

    page_info = conn.get("pageInfo")
    if not isinstance(page_info, dict):
        raise MalformedResponseError(f"Connection '{connection}' has no pageInfo")

    if "edges" in conn:
        items = [edge.get("node") for edge in conn.get("edges") or [] if edge.get("node")]
    else:
        items = list(conn.get("nodes") or [])

    has_more = bool(page_info.get("hasNextPage"))
    cursor = page_info.get("endCursor")
    if has_more and not cursor:
        raise MalformedResponseError(f"Connection '{connection}' has more pages but no endCursor")

    return Page(items=items, has_more=has_more, cursor=cursor)


class PagedFetcher:
    """Drives cursor traversal for GraphQL connections or any page function."""

    def __init__(self, client: GraphQLExecutor | None = None):
        self.client = client

    async def iterate(self, fetch_page: PageFunc, label: str = "listing") -> AsyncIterator[Any]:
        """
        Yield the items of every page produced by ``fetch_page``, in page order.

        ``fetch_page`` receives None for the first page and the previous
        page's cursor afterwards.

        Raises:
            FetchError: If any page request fails
        """
        cursor: str | None = None
        page_number = 0
        total = 0

        while True:
            page_number += 1
            logger.debug("fetching_page", listing=label, page=page_number)
            try:
                page = await fetch_page(cursor)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "page_fetch_failed",
                    listing=label,
                    page=page_number,
                    items_so_far=total,
                    error=str(e),
                )
                raise FetchError(
                    f"Fetching page {page_number} of {label} failed: {e}", page_number=page_number
                ) from e

            total += len(page.items)
            logger.debug(
                "page_fetched",
                listing=label,
                page=page_number,
                items_this_page=len(page.items),
                total_items_so_far=total,
            )

            for item in page.items:
                yield item

            if not page.has_more:
                break
            if not page.cursor:
                raise FetchError(
                    f"Page {page_number} of {label} has more data but no cursor",
                    page_number=page_number,
                )
            cursor = page.cursor

        logger.info("pagination_complete", listing=label, total_pages=page_number, total_items=total)

    async def fetch_all(
        self,
        query_template: str,
        page_size: int,
        connection: str,
        variables: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield every node of a GraphQL connection, lazily page by page.

        The query must declare ``$first: Int!`` and ``$after: String``.

        Args:
            query_template: GraphQL document selecting the connection
            page_size: Nodes per page (the platform caps this at 250)
            connection: Field (or dotted path) under ``data`` holding the connection
            variables: Extra variables merged into every page request

        Raises:
            FetchError: If any page fails
        """
        if self.client is None:
            raise ValueError("fetch_all requires a GraphQL client")
        client = self.client
        base_variables = dict(variables or {})

        async def fetch_page(cursor: str | None) -> Page:
            data = await client.execute(
                query_template, {**base_variables, "first": page_size, "after": cursor}
            )
            return parse_connection(data, connection)

        async for node in self.iterate(fetch_page, label=connection):
            yield node

    async def collect(
        self,
        query_template: str,
        page_size: int,
        connection: str,
        variables: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """``fetch_all`` materialised into a list."""
        return [
            node async for node in self.fetch_all(query_template, page_size, connection, variables)
        ]


class ObjectListingSource:
    """
    Page function over a ListObjectsV2-style object storage client.

    ``client`` is any already-authenticated object exposing
    ``list_objects_v2(Bucket=, MaxKeys=, Prefix=, ContinuationToken=)``
    (e.g. a boto3 S3 client). Blocking calls run in a worker thread.
    """

    def __init__(self, client: Any, bucket: str, prefix: str = "", max_keys: int = 1000):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix
        self.max_keys = max_keys

    def _list(self, cursor: str | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "MaxKeys": self.max_keys}
        if self.prefix:
            kwargs["Prefix"] = self.prefix
        if cursor:
            kwargs["ContinuationToken"] = cursor
        return self.client.list_objects_v2(**kwargs)

    async def __call__(self, cursor: str | None) -> Page:
        response = await asyncio.to_thread(self._list, cursor)
        keys = [obj["Key"] for obj in response.get("Contents") or []]
        return Page(
            items=keys,
            has_more=bool(response.get("IsTruncated")),
            cursor=response.get("NextContinuationToken"),
        )
