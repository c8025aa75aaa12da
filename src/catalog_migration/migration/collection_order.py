"""
Ordered collection membership.

Batches finish in no particular order, so destination ordering is applied
in a separate pass once migration is done: members are sorted by an
explicit sort key, resolved to destination ids through the ledger and
appended to the collection in fixed-size batches.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from catalog_migration.client.exceptions import CatalogMigrationError
from catalog_migration.client.graphql_client import DestinationGraphQLClient
from catalog_migration.migration.ledger import MigrationLedger
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

COLLECTION_ADD_PRODUCTS = """
mutation CollectionAddProducts($id: ID!, $productIds: [ID!]!) {
  collectionAddProducts(id: $id, productIds: $productIds) {
    collection { id productsCount { count } }
    userErrors { field message }
  }
}
"""


@dataclass(frozen=True)
class CollectionMember:
    source_id: str
    sort_order: float = 0
    variant_key: str | None = None


@dataclass
class OrderingResult:
    requested: int = 0
    resolved: int = 0
    missing: list[str] = field(default_factory=list)
    batches_added: int = 0
    batches_failed: int = 0


def members_from_rows(
    rows: Iterable[dict[str, Any]], variant_key_field: str | None = None
) -> list[CollectionMember]:
    """Build members from legacy listing rows (``product_id``, ``sort_order``, ...)."""
    members = []
    for row in rows:
        source_id = str(row.get("product_id") or "").strip()
        if not source_id:
            continue
        try:
            sort_order = float(row.get("sort_order") or 0)
        except (TypeError, ValueError):
            sort_order = 0
        variant = row.get(variant_key_field) if variant_key_field else None
        members.append(CollectionMember(source_id, sort_order, str(variant) if variant else None))
    return members


class CollectionOrderer:
    """Adds migrated products to a collection in sort order."""

    def __init__(self, client: DestinationGraphQLClient, ledger: MigrationLedger, batch_size: int = 240):
        self.client = client
        self.ledger = ledger
        self.batch_size = batch_size

    def resolve(self, members: Iterable[CollectionMember]) -> tuple[list[str], list[str]]:
        """
        Sort, de-duplicate and resolve members.

        Returns:
            (destination ids in sort order, labels of members missing from the ledger)
        """
        # sorted() is stable, so equal sort keys keep listing order
        ordered = sorted(members, key=lambda m: m.sort_order)
        seen: set[tuple[str, str | None]] = set()
        destination_ids: list[str] = []
        missing: list[str] = []

        for member in ordered:
            key = (member.source_id, member.variant_key)
            if key in seen:
                continue
            seen.add(key)

            destination_id = self.ledger.get(member.source_id, member.variant_key)
            if destination_id is None:
                missing.append(
                    member.source_id if member.variant_key is None
                    else f"{member.source_id}::{member.variant_key}"
                )
            elif destination_id not in destination_ids:
                destination_ids.append(destination_id)

        return destination_ids, missing

    async def add(self, collection_id: str, members: Iterable[CollectionMember]) -> OrderingResult:
        """Append resolved members to ``collection_id``; a failed batch is logged and skipped."""
        members = list(members)
        destination_ids, missing = self.resolve(members)
        result = OrderingResult(requested=len(members), resolved=len(destination_ids), missing=missing)

        if missing:
            logger.warning("collection_members_missing", collection_id=collection_id, count=len(missing))

        for start in range(0, len(destination_ids), self.batch_size):
            batch = destination_ids[start : start + self.batch_size]
            batch_number = start // self.batch_size + 1
            try:
                await self.client.execute(
                    COLLECTION_ADD_PRODUCTS,
                    {"id": collection_id, "productIds": batch},
                    payload_key="collectionAddProducts",
                )
            except CatalogMigrationError as e:
                result.batches_failed += 1
                logger.error(
                    "collection_batch_failed",
                    collection_id=collection_id,
                    batch=batch_number,
                    size=len(batch),
                    error=str(e),
                )
                continue
            result.batches_added += 1
            logger.info("collection_batch_added", collection_id=collection_id, batch=batch_number, size=len(batch))

        return result
