"""
Media reconciliation and upload between object storage and the destination.

The destination's file names are exported (bulk job or paged listing),
object-storage keys are listed page by page, and every supported media URL
whose file name the destination does not know is reported as missing.
``MediaUploadPipeline`` then registers those URLs as destination files.

File names follow one rule everywhere: the object key with ``/`` and
whitespace replaced by ``_`` (see ``shopify_file_name``).
"""

import asyncio
import re
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import quote, unquote, urlparse, urlsplit, urlunsplit

from catalog_migration.client.exceptions import MalformedResponseError, TransformationError
from catalog_migration.client.graphql_client import DestinationGraphQLClient, dig
from catalog_migration.migration.bulk_jobs import BulkJobRunner
from catalog_migration.migration.dispatcher import WorkItem, partition
from catalog_migration.migration.paged_fetcher import PagedFetcher
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

FILES_BULK_QUERY = """
{
  files {
    edges {
      node {
        id
        alt
        preview { image { altText url } }
      }
    }
  }
}
"""

FILES_PAGE_QUERY = """
query Files($first: Int!, $after: String) {
  files(first: $first, after: $after) {
    edges {
      node {
        id
        alt
        preview { image { altText url } }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


FILE_CREATE = """
mutation FileCreate($files: [FileCreateInput!]!) {
  fileCreate(files: $files) {
    files { id alt fileStatus }
    userErrors { field message }
  }
}
"""

CONTENT_TYPES = {
    ".avif": "IMAGE",
    ".gif": "IMAGE",
    ".jpeg": "IMAGE",
    ".jpg": "IMAGE",
    ".png": "IMAGE",
    ".webp": "IMAGE",
    ".mov": "VIDEO",
    ".mp4": "VIDEO",
    ".glb": "MODEL_3D",
    ".usdz": "MODEL_3D",
}

_WHITESPACE = re.compile(r"\s+")


def filename_from_url(url: str) -> str:
    """Last path segment of a URL, percent-decoded, without query string."""
    return unquote(PurePosixPath(urlparse(url).path).name)


def shopify_file_name(url: str) -> str:
    """
    Name an object-storage file is stored under in the destination.

    The whole key after the host's ``.com/`` is kept, with ``/`` and runs of
    whitespace replaced by ``_``, so ``media/rings/ring one.avif`` becomes
    ``media_rings_ring_one.avif``. Keys are percent-decoded first, so an
    encoded and a raw URL for the same object share one name.
    """
    marker = url.find(".com/")
    if marker >= 0:
        key = url[marker + len(".com/") :]
    else:
        key = urlparse(url).path.lstrip("/")
    key = unquote(key)
    return _WHITESPACE.sub("_", key.replace("/", "_"))


def encode_source_url(url: str) -> str:
    """Percent-encode the path of ``url`` so the destination can fetch it."""
    parts = urlsplit(url)
    return urlunsplit(parts._replace(path=quote(unquote(parts.path), safe="/")))


def content_type_for(url: str) -> str:
    """Destination file content type for a media URL, by extension."""
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    return CONTENT_TYPES.get(suffix, "FILE")


def file_name_of(node: dict[str, Any]) -> str | None:
    """Name a destination file is known by: its alt text, else its preview file name."""
    preview = (node.get("preview") or {}).get("image") or {}
    name = preview.get("altText") or node.get("alt")
    if name:
        return name
    url = preview.get("url")
    return filename_from_url(url) if url else None


def is_supported(url: str, extensions: Iterable[str]) -> bool:
    return PurePosixPath(urlparse(url).path).suffix.lower() in set(extensions)


class MediaReconciler:
    """Finds object-storage media the destination store does not have yet."""

    def __init__(
        self,
        extensions: Iterable[str] = (".avif", ".mp4"),
        batch_size: int = 100000,
        concurrency: int = 5,
    ):
        self.extensions = frozenset(e.lower() for e in extensions)
        self.batch_size = batch_size
        self.concurrency = concurrency

    async def export_names_bulk(
        self,
        runner: BulkJobRunner,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> set[str]:
        """File names known to the destination, via a bulk export job."""
        names: set[str] = set()

        def collect(record: dict[str, Any]) -> None:
            name = file_name_of(record)
            if name:
                names.add(name)

        await runner.run(FILES_BULK_QUERY, collect, interval, max_attempts)
        logger.info("destination_file_names_exported", count=len(names), via="bulk")
        return names

    async def export_names_paged(self, fetcher: PagedFetcher, page_size: int = 250) -> set[str]:
        """File names known to the destination, via the paged ``files`` connection."""
        names: set[str] = set()
        async for node in fetcher.fetch_all(FILES_PAGE_QUERY, page_size, connection="files"):
            name = file_name_of(node)
            if name:
                names.add(name)
        logger.info("destination_file_names_exported", count=len(names), via="paged")
        return names

    async def list_object_urls(self, fetcher: PagedFetcher, source: Any, url_for_key: Any) -> list[str]:
        """Public URLs of every listed object key."""
        urls = [url_for_key(key) async for key in fetcher.iterate(source, label="object_storage")]
        logger.info("object_urls_listed", count=len(urls))
        return urls

    def _missing_in_batch(self, urls: list[str], known: frozenset[str]) -> list[str]:
        return [
            url
            for url in urls
            if is_supported(url, self.extensions) and shopify_file_name(url) not in known
        ]

    async def compare(self, urls: list[str], known_names: Iterable[str]) -> list[str]:
        """
        Supported URLs whose file name is not in ``known_names``, in input order.

        URLs are checked in batches, at most ``concurrency`` at a time.
        """
        known = frozenset(known_names)
        semaphore = asyncio.Semaphore(self.concurrency)
        batches = partition(urls, self.batch_size) if urls else []

        async def check(batch_number: int, batch: list[str]) -> list[str]:
            async with semaphore:
                missing = await asyncio.to_thread(self._missing_in_batch, batch, known)
                logger.debug("media_batch_compared", batch=batch_number, size=len(batch), missing=len(missing))
                return missing

        results = await asyncio.gather(*(check(n, b) for n, b in enumerate(batches, start=1)))
        missing = [url for batch in results for url in batch]
        logger.info("media_compare_complete", urls=len(urls), known=len(known), missing=len(missing))
        return missing


class MediaUploadPipeline:
    """
    Registers object-storage media as destination files.

    Each work item is one public URL. The destination fetches the file
    itself from ``originalSource``; the file's alt text is set to
    ``shopify_file_name(url)`` so later compares recognise it. URLs whose
    extension is not in ``extensions`` fail and stay in the remaining list.
    """

    kind = "file"

    def __init__(self, client: DestinationGraphQLClient, extensions: Iterable[str]):
        self.client = client
        self.extensions = frozenset(e.lower() for e in extensions)

    async def fetch(self, item: WorkItem) -> list[dict[str, Any]]:
        url = item.source_id.strip()
        return [{"url": url}] if url else []

    def transform(self, record: dict[str, Any], item: WorkItem) -> dict[str, Any]:
        url = record["url"]
        if not is_supported(url, self.extensions):
            raise TransformationError(f"Unsupported media type: {url}")
        return {
            "originalSource": encode_source_url(url),
            "alt": shopify_file_name(url),
            "contentType": content_type_for(url),
        }

    async def write(self, payload: dict[str, Any], record: dict[str, Any], item: WorkItem) -> str:
        result = await self.client.execute(FILE_CREATE, {"files": [payload]}, payload_key="fileCreate")
        files = result.get("files") or []
        file_id = dig(files[0], "id") if files else None
        if not file_id:
            raise MalformedResponseError("fileCreate returned no file id", response=result)
        logger.debug("media_file_registered", url=record["url"], file_id=file_id, alt=payload["alt"])
        return file_id

    def variant_key(self, record: dict[str, Any], item: WorkItem) -> str | None:
        return None


def write_url_report(urls: Iterable[str], output_path: str | Path) -> int:
    """Write one URL per line. Returns the number written."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    lines = list(urls)
    output_path.write_text("".join(f"{url}\n" for url in lines))
    return len(lines)
