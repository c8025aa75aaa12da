"""
Legacy record to destination product payload.

The full attribute-mapping table lives with whoever configures a migration;
this module defines the ``Transformer`` seam the pipelines call and a
``CatalogTransformer`` covering the common catalog fields, vocabulary
metafields resolved through the ``ReferenceCache`` and product
cross-references resolved through the ledger.
"""

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from catalog_migration.client.exceptions import TransformationError
from catalog_migration.migration.ledger import MigrationLedger
from catalog_migration.migration.reference_cache import ReferenceCache

Record = dict[str, Any]

METAFIELD_NAMESPACE = "custom"


@dataclass
class ProductDraft:
    """Everything needed to create or update one destination product."""

    product: dict[str, Any]
    sku: str | None = None
    price: str | None = None
    metafields: list[dict[str, Any]] = field(default_factory=list)


class Transformer(Protocol):
    def transform(self, record: Record) -> ProductDraft: ...


def metafield(key: str, value: Any, type_: str, namespace: str = METAFIELD_NAMESPACE) -> dict[str, Any]:
    if not isinstance(value, str):
        value = json.dumps(value) if isinstance(value, (list, dict)) else str(value)
    return {"namespace": namespace, "key": key, "type": type_, "value": value}


def format_price(value: Any) -> str | None:
    """Two-decimal money string, or None for missing/invalid values."""
    if value is None or value == "":
        return None
    try:
        return str(Decimal(str(value)).quantize(Decimal("0.01")))
    except InvalidOperation:
        return None


def option_value_names(record: Record, option_key: str) -> list[str]:
    """Names under ``product_options[option_key].product_option_value``."""
    options = _as_json(record.get("product_options"))
    if not isinstance(options, dict):
        return []
    option = options.get(option_key)
    values = option.get("product_option_value") if isinstance(option, dict) else None
    if isinstance(values, dict):
        values = list(values.values())
    return [v["name"] for v in values or [] if isinstance(v, dict) and v.get("name")]


def filter_names(record: Record, filter_group_id: str) -> list[str]:
    """Names of ``product_filters`` entries belonging to one filter group."""
    filters = _as_json(record.get("product_filters"))
    if isinstance(filters, dict):
        filters = list(filters.values())
    if not isinstance(filters, list):
        return []
    return [
        f["name"]
        for f in filters
        if isinstance(f, dict) and str(f.get("filter_group_id")) == filter_group_id and f.get("name")
    ]


def _as_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class ReferenceResolver:
    """Turns legacy product ids into destination ids for reference metafields."""

    def __init__(self, ledger: MigrationLedger):
        self.ledger = ledger

    def resolve(self, source_ids: Iterable[Any]) -> list[str]:
        """Destination ids in input order; ids not yet migrated are dropped."""
        return self.ledger.resolve_many(str(s).strip() for s in source_ids if str(s).strip())

    def metafield(self, key: str, source_ids: Iterable[Any]) -> dict[str, Any] | None:
        resolved = self.resolve(source_ids)
        if not resolved:
            return None
        return metafield(key, resolved, "list.product_reference")


def split_ids(value: Any) -> list[str]:
    """Accept ``"1,2,3"``, ``[1, 2, 3]`` or a single id."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class CatalogTransformer:
    """
    Maps a legacy catalog record to a ``ProductDraft``.

    ``plain_metafields`` maps a record key to ``(metafield key, type)``.
    ``vocabulary_filter_groups`` maps a vocabulary to the legacy filter
    group whose names feed it; names are also read from the record's
    product options of the same name.
    """

    DEFAULT_PLAIN_METAFIELDS: Mapping[str, tuple[str, str]] = {
        "product_id": ("open_cart_product_id", "number_integer"),
        "tag_no": ("tag_no", "single_line_text_field"),
        "model": ("model", "single_line_text_field"),
        "upc": ("upc", "single_line_text_field"),
        "certificate_number": ("certificate_number", "single_line_text_field"),
        "is_quickship": ("is_quickship", "boolean"),
        "sort_order": ("sort_order", "single_line_text_field"),
        "product_minimum_price": ("minimum_price_json", "json"),
        "product_options": ("option_json", "json"),
    }

    DEFAULT_CROSS_REFERENCES: Mapping[str, str] = {
        "related_products": "related_product_open_cart",
        "matching_products": "matching_product_open_cart",
    }

    def __init__(
        self,
        references: ReferenceCache,
        resolver: ReferenceResolver | None = None,
        vendor: str | None = None,
        plain_metafields: Mapping[str, tuple[str, str]] | None = None,
        vocabulary_filter_groups: Mapping[str, str] | None = None,
        cross_references: Mapping[str, str] | None = None,
    ):
        self.references = references
        self.resolver = resolver
        self.vendor = vendor
        self.plain_metafields = dict(plain_metafields or self.DEFAULT_PLAIN_METAFIELDS)
        self.vocabulary_filter_groups = dict(vocabulary_filter_groups or {})
        self.cross_references = dict(
            self.DEFAULT_CROSS_REFERENCES if cross_references is None else cross_references
        )

    def transform(self, record: Record) -> ProductDraft:
        """
        Raises:
            TransformationError: If the record has no name to use as title
        """
        title = record.get("name") or record.get("title")
        if not title:
            raise TransformationError(f"Record {record.get('product_id')!r} has no name")

        product: dict[str, Any] = {"title": title}
        if record.get("description") is not None:
            product["descriptionHtml"] = record["description"]
        if self.vendor:
            product["vendor"] = self.vendor
        if record.get("tag"):
            product["tags"] = split_ids(record["tag"])

        seo = {
            "title": record.get("meta_title") or title,
            "description": record.get("meta_description") or record.get("description"),
        }
        product["seo"] = {k: v for k, v in seo.items() if v}

        return ProductDraft(
            product=product,
            sku=str(record["sku"]) if record.get("sku") else None,
            price=format_price(record.get("price")),
            metafields=self.metafields(record),
        )

    def metafields(self, record: Record) -> list[dict[str, Any]]:
        fields: list[dict[str, Any]] = []

        for source_key, (key, type_) in self.plain_metafields.items():
            value = record.get(source_key)
            if value is None or value == "":
                continue
            if type_ == "boolean":
                value = str(value).strip().lower()
                if value not in ("true", "false"):
                    continue
            fields.append(metafield(key, value, type_))

        for vocabulary in self.references.vocabularies:
            names = option_value_names(record, vocabulary)
            group = self.vocabulary_filter_groups.get(vocabulary)
            if group is not None:
                names += filter_names(record, group)
            ids = self.references.resolve_many(vocabulary, names)
            if ids:
                fields.append(metafield(vocabulary, ids, "list.metaobject_reference"))

        if self.resolver is not None:
            for source_key, key in self.cross_references.items():
                reference = self.resolver.metafield(key, split_ids(record.get(source_key)))
                if reference is not None:
                    fields.append(reference)

        return fields
