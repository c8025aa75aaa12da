"""
Batch dispatcher: the migration orchestrator.

Work items are split into ordered batches. Each batch runs as its own task
but must hold a permit from a semaphore sized ``concurrency`` while it
works, so at most ``concurrency`` batches are active at once. Inside a
batch, items run one after another:

    fetch legacy record(s) -> transform -> write to destination -> ledger.put

The destination write goes through the GraphQL client, which regulates and
debits the shared credit budget before each call. A failing item is
counted, logged and recorded in the ledger's failure table; it never stops
its batch or the run.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from catalog_migration.client.exceptions import RunAbortedError, StateError
from catalog_migration.migration.ledger import MigrationLedger
from catalog_migration.utils.logging import get_logger, log_error, log_migration_progress

logger = get_logger(__name__)

Record = dict[str, Any]


@dataclass
class WorkItem:
    """One unit of work: a source record id, optionally with its payload or page."""

    source_id: str
    payload: Record | None = None
    variant_key: str | None = None
    page: int | None = None

    @property
    def label(self) -> str:
        return self.source_id if self.page is None else f"{self.source_id}#p{self.page}"


@dataclass
class RunCounters:
    """Live run-level counters, updated as items finish."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    batches_completed: int = 0
    batches_total: int = 0


@dataclass
class BatchResult:
    batch_number: int
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class RunSummary:
    """What a finished run reports: counts only, detail lives in logs and the ledger."""

    processed: int
    succeeded: int
    failed: int
    skipped: int = 0
    batches: int = 0
    cancelled: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class MigrationPipeline(Protocol):
    """Per-item steps the dispatcher drives.

    ``fetch`` returns the legacy records for an item; an empty list is "no
    data". Each record is transformed and written separately.
    ``variant_key`` picks the ledger variant key for a record (None for
    single-record sources).
    """

    kind: str

    async def fetch(self, item: WorkItem) -> list[Record]: ...

    def transform(self, record: Record, item: WorkItem) -> Any: ...

    async def write(self, payload: Any, record: Record, item: WorkItem) -> str: ...

    def variant_key(self, record: Record, item: WorkItem) -> str | None: ...


ProgressCallback = Callable[[RunCounters], None]


def partition(items: Sequence[Any], batch_size: int) -> list[list[Any]]:
    """Split ``items`` into consecutive batches of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


def as_work_items(source_ids: Iterable[str | WorkItem]) -> list[WorkItem]:
    return [s if isinstance(s, WorkItem) else WorkItem(source_id=str(s)) for s in source_ids]


class BatchDispatcher:
    """Runs a pipeline over many work items with bounded batch concurrency."""

    def __init__(
        self,
        pipeline: MigrationPipeline,
        ledger: MigrationLedger,
        skip_existing: bool = False,
        progress_callback: ProgressCallback | None = None,
        semaphore_factory: Callable[[int], asyncio.Semaphore] = asyncio.Semaphore,
    ):
        """Initialize the dispatcher.

        Args:
            pipeline: Fetch/transform/write steps for one kind of record
            ledger: Ledger receiving an entry per successful write
            skip_existing: Skip records that already have a ledger entry
                instead of creating another destination record
            progress_callback: Called with the live counters after every item
            semaphore_factory: Builds the permit semaphore (tests pass an
                instrumented one)
        """
        self.pipeline = pipeline
        self.ledger = ledger
        self.skip_existing = skip_existing
        self.progress_callback = progress_callback
        self.semaphore_factory = semaphore_factory
        self.counters = RunCounters()
        self.errors: list[dict[str, Any]] = []

    def _notify(self) -> None:
        if self.progress_callback is not None:
            self.progress_callback(self.counters)

    def _record_failure(self, item: WorkItem, error: Exception, variant_key: str | None) -> None:
        self.counters.failed += 1
        self.counters.processed += 1
        log_error(
            logger,
            error,
            "item_failed",
            kind=self.pipeline.kind,
            source_id=item.source_id,
            page=item.page,
            variant_key=variant_key,
        )
        self.errors.append(
            {
                "source_id": item.source_id,
                "variant_key": variant_key,
                "page": item.page,
                "error_type": type(error).__name__,
                "error": str(error),
            }
        )
        try:
            self.ledger.record_failure(item.source_id, error, variant_key, kind=self.pipeline.kind)
        except StateError as e:
            logger.error("failure_record_not_saved", source_id=item.source_id, error=str(e))

    async def _process_record(self, record: Record, item: WorkItem, result: BatchResult) -> None:
        variant_key = None
        try:
            variant_key = self.pipeline.variant_key(record, item)

            if self.skip_existing and self.ledger.contains(item.source_id, variant_key):
                result.skipped += 1
                self.counters.skipped += 1
                self.counters.processed += 1
                logger.debug("item_skipped_existing", source_id=item.source_id, variant_key=variant_key)
                return

            payload = self.pipeline.transform(record, item)
            if inspect.isawaitable(payload):
                payload = await payload

            destination_id = await self.pipeline.write(payload, record, item)
            self.ledger.put(item.source_id, destination_id, variant_key, kind=self.pipeline.kind)
        except Exception as e:
            result.failed += 1
            self._record_failure(item, e, variant_key)
            return

        result.succeeded += 1
        self.counters.succeeded += 1
        self.counters.processed += 1
        logger.debug(
            "item_migrated",
            kind=self.pipeline.kind,
            source_id=item.source_id,
            variant_key=variant_key,
            destination_id=destination_id,
        )

    async def _process_item(self, item: WorkItem, result: BatchResult, cancel_event: asyncio.Event) -> None:
        result.attempted += 1
        if item.payload is not None:
            records = [item.payload]
        else:
            try:
                records = await self.pipeline.fetch(item)
            except Exception as e:
                result.failed += 1
                self._record_failure(item, e, item.variant_key)
                return

        if not records:
            result.skipped += 1
            self.counters.skipped += 1
            self.counters.processed += 1
            logger.info("item_no_data", kind=self.pipeline.kind, source_id=item.label)
            return

        for record in records:
            if cancel_event.is_set():
                result.cancelled = True
                return
            await self._process_record(record, item, result)
            self._notify()

    async def _run_batch(
        self,
        batch_number: int,
        batch: list[WorkItem],
        semaphore: asyncio.Semaphore,
        cancel_event: asyncio.Event,
    ) -> BatchResult:
        result = BatchResult(batch_number=batch_number)
        if cancel_event.is_set():
            result.cancelled = True
            return result

        async with semaphore:
            logger.debug("batch_started", batch=batch_number, size=len(batch))
            for item in batch:
                if cancel_event.is_set():
                    result.cancelled = True
                    break
                await self._process_item(item, result, cancel_event)
                self._notify()

        self.counters.batches_completed += 1
        log_migration_progress(
            logger,
            phase=self.pipeline.kind,
            completed=self.counters.batches_completed,
            total=self.counters.batches_total,
            batch=batch_number,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    async def run(
        self,
        source_ids: Iterable[str | WorkItem],
        concurrency: int,
        batch_size: int,
        cancel_event: asyncio.Event | None = None,
    ) -> RunSummary:
        """Migrate every item and return the run's counts.

        Args:
            source_ids: Source ids or prepared work items, in processing order
            concurrency: Maximum batches holding a permit at once
            batch_size: Items per batch
            cancel_event: When set, remaining batches and items are not started

        Returns:
            RunSummary with processed/succeeded/failed/skipped counts
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        items = as_work_items(source_ids)
        batches = partition(items, batch_size)
        cancel_event = cancel_event or asyncio.Event()
        semaphore = self.semaphore_factory(concurrency)

        self.counters = RunCounters(batches_total=len(batches))
        self.errors = []
        started_at = datetime.now(UTC)

        logger.info(
            "run_started",
            kind=self.pipeline.kind,
            items=len(items),
            batches=len(batches),
            concurrency=concurrency,
            skip_existing=self.skip_existing,
        )

        tasks = [
            asyncio.create_task(self._run_batch(number, batch, semaphore, cancel_event))
            for number, batch in enumerate(batches, start=1)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for number, outcome in enumerate(results, start=1):
            if isinstance(outcome, BaseException):
                # Items catch their own errors; reaching here means the batch machinery broke
                logger.error("batch_crashed", batch=number, error=str(outcome))

        cancelled = cancel_event.is_set()
        summary = RunSummary(
            processed=self.counters.processed,
            succeeded=self.counters.succeeded,
            failed=self.counters.failed,
            skipped=self.counters.skipped,
            batches=len(batches),
            cancelled=cancelled,
            started_at=started_at,
            finished_at=datetime.now(UTC),
        )
        logger.info(
            "run_completed",
            kind=self.pipeline.kind,
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            cancelled=cancelled,
            duration_seconds=round(summary.duration_seconds, 2),
        )
        return summary

    async def run_all(
        self,
        list_items: Callable[[], Awaitable[Iterable[str | WorkItem]]],
        concurrency: int,
        batch_size: int,
        cancel_event: asyncio.Event | None = None,
    ) -> RunSummary:
        """List every item with ``list_items`` and run them.

        Raises:
            RunAbortedError: If the listing call fails
        """
        try:
            items = list(await list_items())
        except Exception as e:
            logger.error("run_listing_failed", kind=self.pipeline.kind, error=str(e))
            raise RunAbortedError(f"Could not list {self.pipeline.kind} items: {e}") from e
        return await self.run(items, concurrency, batch_size, cancel_event)

    def submit(
        self,
        source_ids: Iterable[str | WorkItem],
        concurrency: int,
        batch_size: int,
    ) -> "RunHandle":
        """Start ``run`` as a background task and return a handle to it."""
        cancel_event = asyncio.Event()
        return self._start(self.run(source_ids, concurrency, batch_size, cancel_event), cancel_event)

    def submit_all(
        self,
        list_items: Callable[[], Awaitable[Iterable[str | WorkItem]]],
        concurrency: int,
        batch_size: int,
    ) -> "RunHandle":
        """Start ``run_all`` as a background task.

        A listing failure surfaces as ``RunAbortedError`` from ``RunHandle.wait``.
        """
        cancel_event = asyncio.Event()
        return self._start(self.run_all(list_items, concurrency, batch_size, cancel_event), cancel_event)

    def _start(self, coro: Coroutine[Any, Any, RunSummary], cancel_event: asyncio.Event) -> "RunHandle":
        task = asyncio.create_task(coro, name=f"migrate-{self.pipeline.kind}")
        return RunHandle(self, task, cancel_event)


class RunHandle:
    """Handle to a run started with ``BatchDispatcher.submit``."""

    def __init__(self, dispatcher: BatchDispatcher, task: asyncio.Task, cancel_event: asyncio.Event):
        self._dispatcher = dispatcher
        self._task = task
        self._cancel_event = cancel_event

    @property
    def counters(self) -> RunCounters:
        return self._dispatcher.counters

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Ask the run to stop after the items currently in flight."""
        self._cancel_event.set()

    async def wait(self) -> RunSummary:
        return await self._task
