"""
Concrete migration pipelines driven by the ``BatchDispatcher``.

- ``ProductPipeline``: one legacy product detail record becomes one product.
- ``StockVariantPipeline``: every stock variant of a product becomes its own
  product, keyed in the ledger by its tag number.
- ``PagedVariantPipeline``: one page of a product's paged variant detail;
  every record becomes a product keyed by its variant code.
- ``ProductUpdatePipeline``: refreshes already migrated products in place.
"""

from collections.abc import Iterable
from typing import Any

from catalog_migration.client.exceptions import MalformedResponseError, MigrationError
from catalog_migration.client.graphql_client import DestinationGraphQLClient, dig
from catalog_migration.client.legacy_client import LegacyCatalogClient
from catalog_migration.migration.dispatcher import WorkItem
from catalog_migration.migration.ledger import MigrationLedger
from catalog_migration.migration.transform import ProductDraft, Transformer
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

Record = dict[str, Any]

PRODUCT_CREATE = """
mutation ProductCreate($product: ProductCreateInput!) {
  productCreate(product: $product) {
    product { id variants(first: 1) { nodes { id } } }
    userErrors { field message }
  }
}
"""

PRODUCT_UPDATE = """
mutation ProductUpdate($product: ProductUpdateInput!) {
  productUpdate(product: $product) {
    product { id variants(first: 1) { nodes { id } } }
    userErrors { field message }
  }
}
"""

VARIANTS_UPDATE = """
mutation VariantsUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id }
    userErrors { field message }
  }
}
"""

METAFIELDS_SET = """
mutation MetafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id key }
    userErrors { field message }
  }
}
"""


class ProductWriter:
    """Writes ``ProductDraft``s to the destination store."""

    def __init__(self, client: DestinationGraphQLClient, metafield_batch_size: int = 25):
        self.client = client
        self.metafield_batch_size = metafield_batch_size

    async def create(self, draft: ProductDraft) -> str:
        """
        Create a product with its base variant data and metafields.

        Returns:
            The new product's global id

        Raises:
            MalformedResponseError: If the create response carries no product id
        """
        payload = await self.client.execute(
            PRODUCT_CREATE, {"product": draft.product}, payload_key="productCreate"
        )
        product_id = dig(payload, "product.id")
        if not product_id:
            raise MalformedResponseError("productCreate returned no product id", response=payload)

        await self._finish(product_id, payload, draft)
        return product_id

    async def update(self, product_id: str, draft: ProductDraft) -> str:
        payload = await self.client.execute(
            PRODUCT_UPDATE, {"product": {"id": product_id, **draft.product}}, payload_key="productUpdate"
        )
        if not dig(payload, "product.id"):
            raise MalformedResponseError("productUpdate returned no product", response=payload)

        await self._finish(product_id, payload, draft)
        return product_id

    async def _finish(self, product_id: str, payload: dict[str, Any], draft: ProductDraft) -> None:
        variants = dig(payload, "product.variants.nodes") or []
        if variants and (draft.sku or draft.price):
            await self.update_base_variant(product_id, variants[0]["id"], draft)
        if draft.metafields:
            await self.set_metafields(product_id, draft.metafields)

    async def update_base_variant(self, product_id: str, variant_id: str, draft: ProductDraft) -> None:
        variant: dict[str, Any] = {"id": variant_id}
        if draft.price:
            variant["price"] = draft.price
        if draft.sku:
            variant["inventoryItem"] = {"sku": draft.sku}
        await self.client.execute(
            VARIANTS_UPDATE,
            {"productId": product_id, "variants": [variant]},
            payload_key="productVariantsBulkUpdate",
        )

    async def set_metafields(self, owner_id: str, metafields: list[dict[str, Any]]) -> int:
        """Set metafields on ``owner_id`` in batches. Returns how many were sent."""
        for start in range(0, len(metafields), self.metafield_batch_size):
            batch = [
                {**field, "ownerId": owner_id}
                for field in metafields[start : start + self.metafield_batch_size]
            ]
            await self.client.execute(METAFIELDS_SET, {"metafields": batch}, payload_key="metafieldsSet")
        logger.debug("metafields_set", owner_id=owner_id, count=len(metafields))
        return len(metafields)


class ProductPipeline:
    """Legacy product detail -> one destination product."""

    kind = "product"

    def __init__(self, legacy: LegacyCatalogClient, transformer: Transformer, writer: ProductWriter):
        self.legacy = legacy
        self.transformer = transformer
        self.writer = writer

    async def fetch(self, item: WorkItem) -> list[Record]:
        records = await self.legacy.fetch_product(item.source_id)
        # The detail route repeats the product per store; only the first record is used
        return records[:1]

    def transform(self, record: Record, item: WorkItem) -> ProductDraft:
        return self.transformer.transform(record)

    async def write(self, payload: ProductDraft, record: Record, item: WorkItem) -> str:
        return await self.writer.create(payload)

    def variant_key(self, record: Record, item: WorkItem) -> str | None:
        return None


class StockVariantPipeline(ProductPipeline):
    """Each stock variant of a legacy product -> its own destination product."""

    kind = "variant"

    def __init__(
        self,
        legacy: LegacyCatalogClient,
        transformer: Transformer,
        writer: ProductWriter,
        variant_key_field: str = "tag_no",
    ):
        super().__init__(legacy, transformer, writer)
        self.variant_key_field = variant_key_field

    async def fetch(self, item: WorkItem) -> list[Record]:
        records = await self.legacy.fetch_stock_variants(item.source_id)
        if item.variant_key is None:
            return records
        return [r for r in records if str(r.get(self.variant_key_field)) == item.variant_key]

    def variant_key(self, record: Record, item: WorkItem) -> str | None:
        key = record.get(self.variant_key_field)
        if key in (None, ""):
            raise MalformedResponseError(f"Variant record has no '{self.variant_key_field}'")
        return str(key)


class PagedVariantPipeline(StockVariantPipeline):
    """One page of paged variant detail; each record -> one destination product."""

    kind = "stock_variant"

    def __init__(
        self,
        legacy: LegacyCatalogClient,
        transformer: Transformer,
        writer: ProductWriter,
        variant_key_field: str = "code",
        page_limit: int | None = None,
    ):
        super().__init__(legacy, transformer, writer, variant_key_field)
        self.page_limit = page_limit

    async def fetch(self, item: WorkItem) -> list[Record]:
        if item.page is None:
            raise MigrationError(f"Paged work item for {item.source_id} has no page")
        return await self.legacy.fetch_detail_page(item.source_id, item.page, self.page_limit)


def paged_work_items(listing: Iterable[Record]) -> list[WorkItem]:
    """Expand ``{product_id, total_page}`` rows into one work item per page."""
    items: list[WorkItem] = []
    for row in listing:
        product_id = str(row.get("product_id") or "").strip()
        try:
            total_pages = int(row.get("total_page") or 0)
        except (TypeError, ValueError):
            total_pages = 0
        if not product_id or total_pages <= 0:
            logger.debug("paged_listing_row_skipped", row=row)
            continue
        items.extend(WorkItem(source_id=product_id, page=page) for page in range(1, total_pages + 1))
    return items


class ProductUpdatePipeline(ProductPipeline):
    """Re-reads legacy records and updates the products the ledger maps them to."""

    def __init__(
        self,
        legacy: LegacyCatalogClient,
        transformer: Transformer,
        writer: ProductWriter,
        ledger: MigrationLedger,
    ):
        super().__init__(legacy, transformer, writer)
        self.ledger = ledger

    async def write(self, payload: ProductDraft, record: Record, item: WorkItem) -> str:
        destination_id = self.ledger.get(item.source_id)
        if destination_id is None:
            raise MigrationError(f"Product {item.source_id} has not been migrated yet")
        return await self.writer.update(destination_id, payload)
