"""
Asynchronous bulk export jobs on the destination platform.

A bulk job is started with a mutation, polled until it reaches a terminal
state, and its result (a JSONL file, one object per exported node) is then
streamed record by record.

    REQUESTED --start accepted--> RUNNING --poll--> RUNNING | COMPLETED | FAILED

A start rejected with ``userErrors`` goes straight to FAILED.
"""

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from catalog_migration.client.exceptions import (
    BulkOperationError,
    FetchError,
    JobTimeoutError,
    MalformedResponseError,
    TransientNetworkError,
)
from catalog_migration.client.graphql_client import DestinationGraphQLClient
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)

START_MUTATION = """
mutation BulkRun($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

STATUS_QUERY = """
query BulkStatus($id: ID!) {
  node(id: $id) {
    ... on BulkOperation {
      id status errorCode createdAt completedAt objectCount fileSize url
    }
  }
}
"""

RecordHandler = Callable[[dict[str, Any]], Awaitable[Any] | Any]


class BulkJobStatus(str, Enum):
    REQUESTED = "REQUESTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (BulkJobStatus.COMPLETED, BulkJobStatus.FAILED)


# Platform statuses that end a job without a result
_FAILED_STATUSES = {"FAILED", "CANCELED", "EXPIRED"}


@dataclass
class BulkJob:
    """A bulk export job. Only ``start`` and the poller change it."""

    id: str | None
    status: BulkJobStatus = BulkJobStatus.REQUESTED
    result_url: str | None = None
    error_code: str | None = None
    object_count: int | None = None
    poll_count: int = 0
    remote_status: str | None = None


@dataclass
class StreamStats:
    """Outcome of streaming one result file."""

    processed: int = 0
    malformed: int = 0
    handler_errors: int = 0


class BulkJobRunner:
    """Starts, polls and streams destination bulk export jobs."""

    def __init__(
        self,
        client: DestinationGraphQLClient,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = 20.0,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize the runner.

        Args:
            client: Destination GraphQL client
            http_client: Client used to download result files (no auth headers)
            poll_interval: Default seconds between status polls
            max_attempts: Default poll cap (None polls until terminal)
            sleep: Awaitable sleep, injectable for tests
        """
        self.client = client
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep or asyncio.sleep

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
        return self._http_client

    async def start(self, query: str) -> BulkJob:
        """Submit a bulk export of ``query``.

        Returns:
            A RUNNING job, or a FAILED one when the platform rejects the request
        """
        data = await self.client.execute_raw(START_MUTATION, {"query": query})
        payload = data["data"].get("bulkOperationRunQuery")
        if not isinstance(payload, dict):
            raise MalformedResponseError("bulkOperationRunQuery missing from response", response=data)

        user_errors = payload.get("userErrors") or []
        if user_errors:
            logger.error("bulk_job_rejected", user_errors=user_errors)
            return BulkJob(
                id=None,
                status=BulkJobStatus.FAILED,
                error_code="; ".join(str(e.get("message", e)) for e in user_errors),
            )

        operation = payload.get("bulkOperation") or {}
        if not operation.get("id"):
            raise MalformedResponseError("Bulk operation id missing from response", response=payload)

        job = BulkJob(
            id=operation["id"],
            status=BulkJobStatus.RUNNING,
            remote_status=operation.get("status"),
        )
        logger.info("bulk_job_started", job_id=job.id, remote_status=job.remote_status)
        return job

    async def _fetch_status(self, job_id: str) -> dict[str, Any] | None:
        data = await self.client.execute(STATUS_QUERY, {"id": job_id})
        node = data.get("node")
        return node if isinstance(node, dict) else None

    async def poll_until_terminal(
        self,
        job: BulkJob,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> BulkJob:
        """Poll ``job`` until it is COMPLETED or FAILED.

        Each attempt sleeps ``interval`` seconds and then queries the status.
        Unknown, pending and empty statuses keep the job RUNNING, as does a
        transient network error on a single poll.

        Returns:
            The same job, now COMPLETED (with ``result_url``) or FAILED (with ``error_code``)

        Raises:
            JobTimeoutError: If ``max_attempts`` polls pass without a terminal status
        """
        if job.status.is_terminal:
            return job
        if job.id is None:
            raise ValueError("Cannot poll a job without an id")

        interval = self.poll_interval if interval is None else interval
        cap = self.max_attempts if max_attempts is None else max_attempts

        while cap is None or job.poll_count < cap:
            await self._sleep(interval)
            job.poll_count += 1

            try:
                node = await self._fetch_status(job.id)
            except TransientNetworkError as e:
                logger.warning("bulk_job_poll_failed", job_id=job.id, attempt=job.poll_count, error=str(e))
                continue

            remote_status = (node or {}).get("status")
            job.remote_status = remote_status
            logger.debug("bulk_job_polled", job_id=job.id, attempt=job.poll_count, status=remote_status)

            if remote_status == "COMPLETED":
                job.status = BulkJobStatus.COMPLETED
                job.result_url = node.get("url")
                job.object_count = _as_int(node.get("objectCount"))
                logger.info(
                    "bulk_job_completed",
                    job_id=job.id,
                    polls=job.poll_count,
                    object_count=job.object_count,
                )
                return job

            if remote_status in _FAILED_STATUSES:
                job.status = BulkJobStatus.FAILED
                job.error_code = node.get("errorCode") or remote_status
                logger.error(
                    "bulk_job_failed",
                    job_id=job.id,
                    polls=job.poll_count,
                    status=remote_status,
                    error_code=job.error_code,
                )
                return job

        logger.error("bulk_job_timeout", job_id=job.id, attempts=job.poll_count)
        raise JobTimeoutError(
            f"Bulk job {job.id} not finished after {job.poll_count} polls",
            job_id=job.id,
            attempts=job.poll_count,
        )

    async def stream_result(self, result_url: str | None, record_handler: RecordHandler) -> StreamStats:
        """Stream a JSONL result, calling ``record_handler`` once per record.

        Malformed lines and handler failures are logged and skipped.

        Raises:
            FetchError: If the result file cannot be downloaded
        """
        stats = StreamStats()
        if not result_url:
            logger.info("bulk_result_empty")
            return stats

        try:
            async with self.http_client.stream("GET", result_url) as response:
                response.raise_for_status()
                line_number = 0
                async for line in response.aiter_lines():
                    line_number += 1
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError as e:
                        stats.malformed += 1
                        logger.warning("bulk_result_line_malformed", line=line_number, error=str(e))
                        continue

                    try:
                        result = record_handler(record)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        stats.handler_errors += 1
                        logger.warning("bulk_result_handler_failed", line=line_number, error=str(e))
                        continue
                    stats.processed += 1
        except httpx.HTTPError as e:
            logger.error("bulk_result_download_failed", error=str(e))
            raise FetchError(f"Could not download bulk result: {e}") from e

        logger.info(
            "bulk_result_streamed",
            processed=stats.processed,
            malformed=stats.malformed,
            handler_errors=stats.handler_errors,
        )
        return stats

    async def run(
        self,
        query: str,
        record_handler: RecordHandler,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> tuple[BulkJob, StreamStats]:
        """Start, poll and stream one bulk export.

        Raises:
            BulkOperationError: If the job ends FAILED
            JobTimeoutError: If polling hits the attempt cap
        """
        job = await self.start(query)
        job = await self.poll_until_terminal(job, interval, max_attempts)
        if job.status is BulkJobStatus.FAILED:
            raise BulkOperationError(
                f"Bulk job failed: {job.error_code}", job_id=job.id, error_code=job.error_code
            )
        return job, await self.stream_result(job.result_url, record_handler)

    async def close(self) -> None:
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
