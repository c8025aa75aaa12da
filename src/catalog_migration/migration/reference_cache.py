"""
Controlled-vocabulary lookup tables.

The destination platform stores option vocabularies (metal, shape,
category, ...) as metaobjects. ``ReferenceCache`` loads each vocabulary
once into an immutable ``name -> metaobject id`` map that every worker
reads without locking.
"""

import asyncio
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from catalog_migration.migration.paged_fetcher import PagedFetcher
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

METAOBJECTS_QUERY = """
query Metaobjects($type: String!, $first: Int!, $after: String) {
  metaobjects(type: $type, first: $first, after: $after) {
    edges {
      node {
        id
        fields { key value }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

# Field holding an internal filter handle rather than the display name
IGNORED_NAME_FIELD = "filter_id"

_EMPTY: Mapping[str, str] = MappingProxyType({})


def metaobject_name(node: dict[str, Any]) -> str | None:
    """First non-empty field value whose key is not the filter handle."""
    for field in node.get("fields") or []:
        value = field.get("value")
        if value and field.get("key") != IGNORED_NAME_FIELD:
            return value
    return None


class ReferenceCache:
    """
    Once-loaded, read-only vocabulary maps.

    ``initialize_all`` loads every vocabulary exactly once per instance;
    repeated or concurrent calls after a success return immediately. A
    failed load leaves the cache uninitialized so a later call can retry.
    """

    def __init__(
        self,
        fetcher: PagedFetcher,
        vocabularies: Iterable[str],
        page_size: int = 250,
    ):
        self.fetcher = fetcher
        self.vocabularies = list(dict.fromkeys(vocabularies))
        self.page_size = page_size
        self._maps: Mapping[str, Mapping[str, str]] = MappingProxyType({})
        self._init_lock = asyncio.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def load(self, vocabulary: str) -> Mapping[str, str]:
        """
        Load one vocabulary from the destination platform.

        When two metaobjects share a name the first one listed wins. Nodes
        without a usable name or id are counted as unnamed and left out.

        Raises:
            FetchError: If any page of the listing fails
        """
        entries: dict[str, str] = {}
        unnamed = 0
        async for node in self.fetcher.fetch_all(
            METAOBJECTS_QUERY,
            page_size=self.page_size,
            connection="metaobjects",
            variables={"type": vocabulary},
        ):
            name = metaobject_name(node)
            node_id = node.get("id")
            if name is None or not node_id:
                unnamed += 1
                continue
            entries.setdefault(name, node_id)

        logger.info("vocabulary_loaded", vocabulary=vocabulary, entries=len(entries), unnamed=unnamed)
        return MappingProxyType(entries)

    async def _load_all(self) -> None:
        maps: dict[str, Mapping[str, str]] = {}
        for vocabulary in self.vocabularies:
            maps[vocabulary] = await self.load(vocabulary)
        self._maps = MappingProxyType(maps)
        self._initialized = True

    async def initialize_all(self) -> bool:
        """
        Load every configured vocabulary unless already done.

        Returns:
            True if this call performed the load, False if it was a no-op
        """
        if self._initialized:
            return False
        async with self._init_lock:
            if self._initialized:
                return False
            logger.info("reference_cache_initializing", vocabularies=len(self.vocabularies))
            await self._load_all()
            logger.info("reference_cache_initialized", vocabularies=len(self._maps))
            return True

    async def reinitialize(self) -> None:
        """Rebuild every map. Readers keep the old maps until the rebuild completes."""
        async with self._init_lock:
            logger.info("reference_cache_reinitializing")
            await self._load_all()

    def vocabulary(self, vocabulary: str) -> Mapping[str, str]:
        """Read-only map for one vocabulary (empty if unknown)."""
        return self._maps.get(vocabulary, _EMPTY)

    def resolve(self, vocabulary: str, name: str | None) -> str | None:
        """Metaobject id for ``name``, or None when it has no entry."""
        if not name:
            return None
        return self._maps.get(vocabulary, _EMPTY).get(name)

    def resolve_many(self, vocabulary: str, names: Iterable[str | None]) -> list[str]:
        """Resolve names in order, dropping unknown names and repeated ids."""
        table = self._maps.get(vocabulary, _EMPTY)
        resolved: dict[str, None] = {}
        for name in names:
            if name and name in table:
                resolved.setdefault(table[name])
        return list(resolved)

    def stats(self) -> dict[str, int]:
        return {vocabulary: len(table) for vocabulary, table in self._maps.items()}
