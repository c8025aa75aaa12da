"""
Unit tests for the batch dispatcher.

A fake pipeline stands in for the legacy API and the destination store so
the tests exercise only batching, concurrency, counting and the ledger.
"""

import asyncio

import pytest

from catalog_migration.client.exceptions import RunAbortedError, TransformationError
from catalog_migration.migration.dispatcher import (
    BatchDispatcher,
    RunCounters,
    WorkItem,
    as_work_items,
    partition,
)


class FakePipeline:
    """Records every step; ids in ``fail_transform``/``fail_fetch`` fail there."""

    kind = "product"

    def __init__(self, fail_transform=(), fail_fetch=(), empty=(), on_write=None):
        self.fail_transform = set(fail_transform)
        self.fail_fetch = set(fail_fetch)
        self.empty = set(empty)
        self.on_write = on_write
        self.written: list[str] = []

    async def fetch(self, item: WorkItem):
        await asyncio.sleep(0)
        if item.source_id in self.fail_fetch:
            raise ConnectionError("legacy API unreachable")
        if item.source_id in self.empty:
            return []
        return [{"product_id": item.source_id, "name": f"Product {item.source_id}"}]

    def transform(self, record, item):
        if item.source_id in self.fail_transform:
            raise TransformationError(f"Record {item.source_id} has no name")
        return {"title": record["name"]}

    async def write(self, payload, record, item):
        await asyncio.sleep(0)
        self.written.append(item.source_id)
        if self.on_write is not None:
            self.on_write(item)
        return f"gid://shopify/Product/{item.source_id}"

    def variant_key(self, record, item):
        return None


class CountingSemaphore(asyncio.Semaphore):
    """Semaphore that remembers how many holders it had at once."""

    def __init__(self, value: int):
        super().__init__(value)
        self.active = 0
        self.peak = 0

    async def __aenter__(self):
        await super().__aenter__()
        self.active += 1
        self.peak = max(self.peak, self.active)

    async def __aexit__(self, *exc):
        self.active -= 1
        await super().__aexit__(*exc)


@pytest.fixture
def semaphores():
    created: list[CountingSemaphore] = []

    def factory(value: int) -> CountingSemaphore:
        semaphore = CountingSemaphore(value)
        created.append(semaphore)
        return semaphore

    factory.created = created
    return factory


class TestPartition:
    """Tests for splitting work into batches."""

    def test_partition(self):
        """Test contiguous batches with a short final one."""
        assert partition([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_partition_rejects_zero(self):
        """Test that a batch size below one is refused."""
        with pytest.raises(ValueError):
            partition([1], 0)

    def test_as_work_items(self):
        """Test that plain ids and prepared items mix."""
        items = as_work_items(["1", WorkItem(source_id="2", page=3)])

        assert items[0].source_id == "1"
        assert items[1].page == 3


class TestBatchDispatcher:
    """Tests for running a pipeline over many items."""

    async def test_concurrency_cap(self, ledger, semaphores):
        """Test that no more than `concurrency` batches hold a permit at once."""
        dispatcher = BatchDispatcher(FakePipeline(), ledger, semaphore_factory=semaphores)

        summary = await dispatcher.run([str(n) for n in range(10)], concurrency=3, batch_size=2)

        assert semaphores.created[0].peak == 3
        assert summary.processed == 10
        assert summary.succeeded == 10
        assert summary.batches == 5
        assert ledger.count() == 10

    async def test_successes_written_to_ledger(self, ledger):
        """Test that each success leaves a ledger entry."""
        dispatcher = BatchDispatcher(FakePipeline(), ledger)

        await dispatcher.run(["1", "2"], concurrency=2, batch_size=1)

        assert ledger.get("1") == "gid://shopify/Product/1"
        assert ledger.get("2") == "gid://shopify/Product/2"

    async def test_transform_failure_is_counted_and_run_continues(self, ledger):
        """Test that one bad record fails alone."""
        pipeline = FakePipeline(fail_transform={"2"})
        dispatcher = BatchDispatcher(pipeline, ledger)

        summary = await dispatcher.run(["1", "2", "3"], concurrency=1, batch_size=3)

        assert summary.failed == 1
        assert summary.succeeded == 2
        assert summary.processed == 3
        assert pipeline.written == ["1", "3"]
        assert ledger.get("2") is None
        failures = ledger.scan_failures()
        assert [(f.source_id, f.error_type) for f in failures] == [("2", "TransformationError")]
        assert dispatcher.errors[0]["source_id"] == "2"

    async def test_fetch_failure_is_counted(self, ledger):
        """Test that a legacy read error fails the item."""
        dispatcher = BatchDispatcher(FakePipeline(fail_fetch={"1"}), ledger)

        summary = await dispatcher.run(["1", "2"], concurrency=2, batch_size=1)

        assert summary.failed == 1
        assert summary.succeeded == 1

    async def test_empty_record_list_is_skipped(self, ledger):
        """Test that no data from the legacy API is a skip, not a failure."""
        dispatcher = BatchDispatcher(FakePipeline(empty={"1"}), ledger)

        summary = await dispatcher.run(["1", "2"], concurrency=1, batch_size=2)

        assert summary.skipped == 1
        assert summary.failed == 0
        assert summary.succeeded == 1

    async def test_skip_existing(self, ledger):
        """Test that ids already in the ledger are not written again when asked."""
        ledger.put("1", "gid://shopify/Product/old")
        pipeline = FakePipeline()
        dispatcher = BatchDispatcher(pipeline, ledger, skip_existing=True)

        summary = await dispatcher.run(["1", "2"], concurrency=1, batch_size=2)

        assert pipeline.written == ["2"]
        assert summary.skipped == 1
        assert ledger.get("1") == "gid://shopify/Product/old"

    async def test_existing_entries_rewritten_by_default(self, ledger):
        """Test that without skip_existing a re-run creates a new record."""
        ledger.put("1", "gid://shopify/Product/old")
        pipeline = FakePipeline()

        await BatchDispatcher(pipeline, ledger).run(["1"], concurrency=1, batch_size=1)

        assert pipeline.written == ["1"]
        assert ledger.get("1") == "gid://shopify/Product/1"

    async def test_cancellation_stops_unstarted_work(self, ledger):
        """Test that setting the cancel event leaves later batches unstarted."""
        cancel = asyncio.Event()
        pipeline = FakePipeline(on_write=lambda item: cancel.set())
        dispatcher = BatchDispatcher(pipeline, ledger)

        summary = await dispatcher.run(
            [str(n) for n in range(5)], concurrency=1, batch_size=1, cancel_event=cancel
        )

        assert summary.cancelled is True
        assert summary.succeeded == 1
        assert pipeline.written == ["0"]

    async def test_progress_callback_sees_counters(self, ledger):
        """Test that the progress callback receives live counters."""
        snapshots: list[tuple[int, int]] = []

        def progress(counters: RunCounters) -> None:
            snapshots.append((counters.processed, counters.batches_total))

        dispatcher = BatchDispatcher(FakePipeline(), ledger, progress_callback=progress)
        await dispatcher.run(["1", "2", "3"], concurrency=1, batch_size=1)

        assert snapshots
        assert snapshots[-1] == (3, 3)

    async def test_prepared_payload_skips_fetch(self, ledger):
        """Test that a work item carrying its record is not fetched again."""
        pipeline = FakePipeline(fail_fetch={"9"})
        item = WorkItem(source_id="9", payload={"product_id": "9", "name": "Given"})

        summary = await BatchDispatcher(pipeline, ledger).run([item], concurrency=1, batch_size=1)

        assert summary.succeeded == 1

    async def test_invalid_concurrency(self, ledger):
        """Test that a concurrency below one is refused."""
        with pytest.raises(ValueError):
            await BatchDispatcher(FakePipeline(), ledger).run(["1"], concurrency=0, batch_size=1)

    async def test_run_all_aborts_when_listing_fails(self, ledger):
        """Test that a failed listing aborts the whole run."""

        async def list_items():
            raise ConnectionError("listing unavailable")

        with pytest.raises(RunAbortedError):
            await BatchDispatcher(FakePipeline(), ledger).run_all(list_items, 1, 1)

    async def test_submit_returns_handle(self, ledger):
        """Test running in the background through a handle."""
        dispatcher = BatchDispatcher(FakePipeline(), ledger)

        handle = dispatcher.submit(["1", "2"], concurrency=2, batch_size=1)
        summary = await handle.wait()

        assert handle.done()
        assert summary.succeeded == 2
        assert handle.counters.processed == 2

    async def test_submit_all_lists_then_runs(self, ledger):
        """Test a background run over the ids a listing call returns."""
        pipeline = FakePipeline()

        async def list_items():
            return ["4", "5", "6"]

        handle = BatchDispatcher(pipeline, ledger).submit_all(list_items, 2, 2)
        summary = await handle.wait()

        assert summary.succeeded == 3
        assert sorted(pipeline.written) == ["4", "5", "6"]
        assert ledger.get("5") == "gid://shopify/Product/5"

    async def test_submit_all_listing_failure_surfaces_on_wait(self, ledger):
        """Test that a failed listing aborts the background run."""
        pipeline = FakePipeline()

        async def list_items():
            raise ConnectionError("listing unavailable")

        handle = BatchDispatcher(pipeline, ledger).submit_all(list_items, 1, 1)

        with pytest.raises(RunAbortedError):
            await handle.wait()
        assert pipeline.written == []
