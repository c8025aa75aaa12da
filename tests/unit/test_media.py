"""
Unit tests for media reconciliation.
"""

import json

import httpx
import pytest

from catalog_migration.client.exceptions import RemoteValidationError, TransformationError
from catalog_migration.migration.dispatcher import BatchDispatcher, WorkItem
from catalog_migration.migration.media import (
    MediaReconciler,
    MediaUploadPipeline,
    content_type_for,
    encode_source_url,
    file_name_of,
    filename_from_url,
    is_supported,
    shopify_file_name,
    write_url_report,
)
from catalog_migration.migration.paged_fetcher import Page, PagedFetcher

BASE = "https://assets.s3.us-east-1.amazonaws.com/media"


class TestMediaHelpers:
    """Tests for file name extraction and filtering."""

    def test_filename_from_url(self):
        """Test taking the last path segment without the query string."""
        assert filename_from_url(f"{BASE}/ring%20one.avif?v=2") == "ring one.avif"

    def test_shopify_file_name_keeps_whole_key(self):
        """Test that folders become part of the name and whitespace becomes underscores."""
        assert shopify_file_name(f"{BASE}/rings/ring one.avif") == "media_rings_ring_one.avif"
        assert shopify_file_name(f"{BASE}/rings/ring%20one.avif") == "media_rings_ring_one.avif"
        assert shopify_file_name(f"{BASE}/a  b\tc.mp4") == "media_a_b_c.mp4"
        assert shopify_file_name("https://cdn.example.org/x/y.avif") == "x_y.avif"

    def test_same_basename_in_different_folders(self):
        """Test that equal file names in separate folders stay distinct."""
        assert shopify_file_name(f"{BASE}/a/x.avif") != shopify_file_name(f"{BASE}/b/x.avif")

    def test_encode_source_url(self):
        """Test that spaces in the key are percent-encoded exactly once."""
        assert encode_source_url(f"{BASE}/ring one.avif") == f"{BASE}/ring%20one.avif"
        assert encode_source_url(f"{BASE}/ring%20one.avif") == f"{BASE}/ring%20one.avif"

    def test_content_type_for(self):
        """Test the extension to content type mapping."""
        assert content_type_for(f"{BASE}/a.AVIF") == "IMAGE"
        assert content_type_for(f"{BASE}/a.mov") == "VIDEO"
        assert content_type_for(f"{BASE}/a.glb") == "MODEL_3D"
        assert content_type_for(f"{BASE}/a.pdf") == "FILE"

    def test_file_name_prefers_alt_text(self):
        """Test the alt text, alt, preview URL order."""
        assert file_name_of({"preview": {"image": {"altText": "a.avif", "url": "https://x/b.avif"}}}) == "a.avif"
        assert file_name_of({"alt": "c.mp4", "preview": {"image": None}}) == "c.mp4"
        assert file_name_of({"preview": {"image": {"url": "https://cdn/files/d.avif?v=1"}}}) == "d.avif"
        assert file_name_of({"preview": None}) is None

    def test_is_supported(self):
        """Test the extension filter is case-insensitive."""
        assert is_supported(f"{BASE}/a.AVIF", {".avif"})
        assert not is_supported(f"{BASE}/a.jpg", {".avif", ".mp4"})


class TestMediaReconciler:
    """Tests for comparing object storage against the destination."""

    async def test_compare_reports_missing_in_order(self):
        """Test that only supported, unknown files are reported, in input order."""
        urls = [
            f"{BASE}/a.avif",
            f"{BASE}/b.mp4",
            f"{BASE}/c.jpg",
            f"{BASE}/d.avif",
            f"{BASE}/e.mp4",
        ]
        reconciler = MediaReconciler(batch_size=2, concurrency=2)

        missing = await reconciler.compare(urls, {"media_a.avif", "media_e.mp4"})

        assert missing == [f"{BASE}/b.mp4", f"{BASE}/d.avif"]

    async def test_compare_matches_nested_keys(self):
        """Test that nested keys and keys with spaces match their destination names."""
        reconciler = MediaReconciler()
        url = "https://bucket.s3.amazonaws.com/media/rings/ring one.avif"

        assert await reconciler.compare([url], {"media_rings_ring_one.avif"}) == []

    async def test_compare_same_basename_in_different_folders(self):
        """Test that a file in one folder does not hide its namesake in another."""
        first = "https://bucket.s3.amazonaws.com/a/x.avif"
        second = "https://bucket.s3.amazonaws.com/b/x.avif"

        missing = await MediaReconciler().compare([first, second], {"a_x.avif"})

        assert missing == [second]

    async def test_compare_empty(self):
        """Test that nothing to compare reports nothing."""
        assert await MediaReconciler().compare([], {"a.avif"}) == []

    async def test_export_names_paged(self, make_graphql_client):
        """Test collecting destination file names through the files connection."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": {
                        "files": {
                            "edges": [
                                {"node": {"id": "1", "alt": "", "preview": {"image": {"altText": "a.avif"}}}},
                                {"node": {"id": "2", "alt": "b.mp4", "preview": None}},
                                {"node": {"id": "3", "alt": "", "preview": None}},
                            ],
                            "pageInfo": {"hasNextPage": False, "endCursor": None},
                        }
                    }
                },
            )

        client = make_graphql_client(handler)

        names = await MediaReconciler().export_names_paged(PagedFetcher(client))

        assert names == {"a.avif", "b.mp4"}
        await client.close()

    async def test_list_object_urls(self):
        """Test turning listed keys into public URLs."""

        async def source(cursor):
            return Page(items=["media/a.avif", "media/b.mp4"])

        urls = await MediaReconciler().list_object_urls(
            PagedFetcher(), source, lambda key: f"https://assets.example.com/{key}"
        )

        assert urls == ["https://assets.example.com/media/a.avif", "https://assets.example.com/media/b.mp4"]

    def test_write_url_report(self, tmp_path):
        """Test writing one URL per line."""
        output = tmp_path / "reports" / "missing.txt"

        count = write_url_report(["u1", "u2"], output)

        assert count == 2
        assert output.read_text() == "u1\nu2\n"


def file_create_handler(requests: list, reject: tuple[str, ...] = ()):
    """Answer fileCreate mutations; sources containing a ``reject`` marker get userErrors."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        file_input = body["variables"]["files"][0]
        requests.append(file_input)
        if any(marker in file_input["originalSource"] for marker in reject):
            payload = {"files": [], "userErrors": [{"field": ["files"], "message": "bad source"}]}
        else:
            payload = {
                "files": [{"id": f"gid://shopify/MediaImage/{len(requests)}", "alt": file_input["alt"]}],
                "userErrors": [],
            }
        return httpx.Response(200, json={"data": {"fileCreate": payload}})

    return handler


class TestMediaUploadPipeline:
    """Tests for registering object storage media as destination files."""

    def test_transform_builds_file_input(self):
        """Test the originalSource, alt and content type of one file."""
        pipeline = MediaUploadPipeline(client=None, extensions={".avif"})
        url = f"{BASE}/rings/ring one.avif"

        payload = pipeline.transform({"url": url}, WorkItem(source_id=url))

        assert payload == {
            "originalSource": f"{BASE}/rings/ring%20one.avif",
            "alt": "media_rings_ring_one.avif",
            "contentType": "IMAGE",
        }

    def test_transform_rejects_unsupported_type(self):
        """Test that files outside the extension list fail."""
        pipeline = MediaUploadPipeline(client=None, extensions={".avif"})

        with pytest.raises(TransformationError):
            pipeline.transform({"url": f"{BASE}/a.pdf"}, WorkItem(source_id=f"{BASE}/a.pdf"))

    async def test_write_returns_file_id(self, make_graphql_client):
        """Test a successful fileCreate."""
        requests = []
        client = make_graphql_client(file_create_handler(requests))
        pipeline = MediaUploadPipeline(client, {".avif"})
        url = f"{BASE}/a.avif"
        item = WorkItem(source_id=url)
        record = (await pipeline.fetch(item))[0]

        file_id = await pipeline.write(pipeline.transform(record, item), record, item)

        assert file_id == "gid://shopify/MediaImage/1"
        assert requests[0]["alt"] == "media_a.avif"
        await client.close()

    async def test_write_raises_on_user_errors(self, make_graphql_client):
        """Test that a rejected source fails the item."""
        client = make_graphql_client(file_create_handler([], reject=("broken",)))
        pipeline = MediaUploadPipeline(client, {".avif"})
        url = f"{BASE}/broken.avif"
        item = WorkItem(source_id=url)

        with pytest.raises(RemoteValidationError):
            await pipeline.write(pipeline.transform({"url": url}, item), {"url": url}, item)
        await client.close()

    async def test_dispatched_upload_records_files_and_remaining(self, make_graphql_client, ledger):
        """Test a batch run: uploads land in the ledger, failures stay remaining."""
        requests = []
        client = make_graphql_client(file_create_handler(requests, reject=("broken",)))
        pipeline = MediaUploadPipeline(client, {".avif", ".mp4"})
        urls = [f"{BASE}/a.avif", f"{BASE}/broken.avif", f"{BASE}/notes.pdf", f"{BASE}/v/b.mp4"]

        summary = await BatchDispatcher(pipeline, ledger).run(urls, concurrency=2, batch_size=2)

        assert summary.succeeded == 2
        assert summary.failed == 2
        assert len(requests) == 3
        assert ledger.missing(urls) == [f"{BASE}/broken.avif", f"{BASE}/notes.pdf"]
        assert {entry.kind for entry in ledger.scan_all(kind="file")} == {"file"}
        assert len(ledger.scan_all(kind="file")) == 2
        await client.close()
