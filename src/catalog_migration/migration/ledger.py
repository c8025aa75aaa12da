"""
Migration ledger.

Durable mapping from a legacy source record (plus optional variant key) to
the destination record created for it. The dispatcher writes an entry after
every successful create; later phases read the ledger to resolve
destination ids for price updates, collection ordering and
cross-reference fields.
"""

import json
import threading
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import func, select

from catalog_migration.client.exceptions import StateError
from catalog_migration.config import StateConfig
from catalog_migration.migration.database import Database
from catalog_migration.migration.models import NO_VARIANT, FailureRecord, LedgerEntry
from catalog_migration.utils.logging import get_logger

logger = get_logger(__name__)


def _variant(variant_key: str | None) -> str:
    return NO_VARIANT if variant_key is None else str(variant_key)


class MigrationLedger:
    """
    Thread-safe ledger backed by SQLAlchemy.

    ``put`` is an upsert keyed by ``(source_id, variant_key)``, so at most
    one entry exists per pair. Writes from concurrent workers are
    serialised through a re-entrant lock.

    Usage:
        ledger = MigrationLedger.from_config(config.state)
        ledger.put("123", "gid://shopify/Product/456")
        ledger.get("123")  # "gid://shopify/Product/456"
    """

    def __init__(self, database: Database):
        self.db = database
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: StateConfig) -> "MigrationLedger":
        try:
            database = Database(
                config.database_url,
                pool_size=config.db_pool_size,
                max_overflow=config.db_max_overflow,
                pool_timeout=config.db_pool_timeout,
                pool_recycle=config.db_pool_recycle,
            )
        except Exception as e:
            logger.error("ledger_init_failed", error=str(e))
            raise StateError(f"Failed to initialize ledger: {e}") from e
        logger.info("ledger_initialized", database_path=config.db_path)
        return cls(database)

    def put(
        self,
        source_id: str,
        destination_id: str,
        variant_key: str | None = None,
        kind: str = "product",
    ) -> None:
        """
        Record (or overwrite) the destination id for a source record.

        Raises:
            StateError: If the write fails
        """
        source_id = str(source_id)
        variant = _variant(variant_key)
        with self._lock:
            try:
                with self.db.session() as session:
                    existing = session.scalars(
                        select(LedgerEntry).filter_by(source_id=source_id, variant_key=variant)
                    ).first()

                    if existing:
                        existing.destination_id = destination_id
                        existing.kind = kind
                    else:
                        session.add(
                            LedgerEntry(
                                source_id=source_id,
                                variant_key=variant,
                                destination_id=destination_id,
                                kind=kind,
                            )
                        )

                logger.debug(
                    "ledger_entry_saved",
                    source_id=source_id,
                    variant_key=variant or None,
                    destination_id=destination_id,
                    updated=existing is not None,
                )
            except Exception as e:
                logger.error(
                    "ledger_put_failed",
                    source_id=source_id,
                    variant_key=variant or None,
                    error=str(e),
                )
                raise StateError(f"Failed to save ledger entry: {e}") from e

    def get(self, source_id: str, variant_key: str | None = None) -> str | None:
        """Return the destination id for a source record, or None."""
        with self._lock:
            try:
                with self.db.session() as session:
                    return session.scalars(
                        select(LedgerEntry.destination_id).filter_by(
                            source_id=str(source_id), variant_key=_variant(variant_key)
                        )
                    ).first()
            except Exception as e:
                logger.error("ledger_get_failed", source_id=source_id, error=str(e))
                raise StateError(f"Failed to read ledger entry: {e}") from e

    def contains(self, source_id: str, variant_key: str | None = None) -> bool:
        return self.get(source_id, variant_key) is not None

    def iter_entries(self, kind: str | None = None, chunk_size: int = 1000) -> Iterator[LedgerEntry]:
        """
        Yield every entry in insertion order, reading ``chunk_size`` rows per session.

        The lock is only held while a chunk is read, so workers may keep
        writing while a long scan is consumed.
        """
        last_id = 0
        while True:
            with self._lock:
                try:
                    with self.db.session() as session:
                        stmt = (
                            select(LedgerEntry)
                            .where(LedgerEntry.id > last_id)
                            .order_by(LedgerEntry.id)
                            .limit(chunk_size)
                        )
                        if kind is not None:
                            stmt = stmt.where(LedgerEntry.kind == kind)
                        chunk = list(session.scalars(stmt))
                except Exception as e:
                    logger.error("ledger_scan_failed", error=str(e))
                    raise StateError(f"Failed to scan ledger: {e}") from e

            if not chunk:
                return
            yield from chunk
            last_id = chunk[-1].id

    def scan_all(self, kind: str | None = None) -> list[LedgerEntry]:
        """Return every ledger entry, optionally restricted to one kind."""
        return list(self.iter_entries(kind=kind))

    def count(self, kind: str | None = None) -> int:
        with self._lock:
            try:
                with self.db.session() as session:
                    stmt = select(func.count(LedgerEntry.id))
                    if kind is not None:
                        stmt = stmt.where(LedgerEntry.kind == kind)
                    return session.scalar(stmt) or 0
            except Exception as e:
                raise StateError(f"Failed to count ledger entries: {e}") from e

    def lookup(self, source_ids: Iterable[str], variant_key: str | None = None) -> dict[str, str]:
        """Return ``{source_id: destination_id}`` for the ids that have an entry."""
        ids = list(dict.fromkeys(str(source_id) for source_id in source_ids))
        if not ids:
            return {}

        found: dict[str, str] = {}
        with self._lock:
            try:
                with self.db.session() as session:
                    # Chunked to stay under SQLite's bound-parameter limit
                    for start in range(0, len(ids), 500):
                        rows = session.execute(
                            select(LedgerEntry.source_id, LedgerEntry.destination_id).where(
                                LedgerEntry.source_id.in_(ids[start : start + 500]),
                                LedgerEntry.variant_key == _variant(variant_key),
                            )
                        )
                        found.update({row.source_id: row.destination_id for row in rows})
            except Exception as e:
                logger.error("ledger_lookup_failed", count=len(ids), error=str(e))
                raise StateError(f"Failed to resolve ledger entries: {e}") from e
        return found

    def resolve_many(self, source_ids: Iterable[str], variant_key: str | None = None) -> list[str]:
        """
        Resolve source ids to destination ids, keeping input order.

        Ids without an entry are dropped, as are repeats.
        """
        ordered = list(dict.fromkeys(str(source_id) for source_id in source_ids))
        found = self.lookup(ordered, variant_key)
        return [found[source_id] for source_id in ordered if source_id in found]

    def missing(self, source_ids: Iterable[str], variant_key: str | None = None) -> list[str]:
        """Return the source ids (input order, de-duplicated) that have no entry."""
        ordered = list(dict.fromkeys(str(source_id) for source_id in source_ids))
        found = self.lookup(ordered, variant_key)
        return [source_id for source_id in ordered if source_id not in found]

    def record_failure(
        self,
        source_id: str,
        error: BaseException | str,
        variant_key: str | None = None,
        kind: str = "product",
    ) -> None:
        """Append a failure record. Never updates existing rows."""
        if isinstance(error, BaseException):
            error_type, error_message = type(error).__name__, str(error)
        else:
            error_type, error_message = "Error", error

        with self._lock:
            try:
                with self.db.session() as session:
                    session.add(
                        FailureRecord(
                            source_id=str(source_id),
                            variant_key=_variant(variant_key),
                            kind=kind,
                            error_type=error_type,
                            error_message=error_message[:4000],
                        )
                    )
            except Exception as e:
                logger.error("ledger_failure_record_failed", source_id=source_id, error=str(e))
                raise StateError(f"Failed to record failure: {e}") from e

    def scan_failures(self, kind: str | None = None) -> list[FailureRecord]:
        with self._lock:
            try:
                with self.db.session() as session:
                    stmt = select(FailureRecord).order_by(FailureRecord.id)
                    if kind is not None:
                        stmt = stmt.where(FailureRecord.kind == kind)
                    return list(session.scalars(stmt))
            except Exception as e:
                raise StateError(f"Failed to scan failures: {e}") from e

    def export(self, output_path: str | Path) -> int:
        """
        Write all entries and failures to a JSON file.

        Returns:
            Number of ledger entries written
        """
        entries = self.scan_all()
        failures = self.scan_failures()
        export_data = {
            "exported_at": datetime.now(UTC).isoformat(),
            "entries": [
                {
                    "source_id": e.source_id,
                    "variant_key": e.variant,
                    "destination_id": e.destination_id,
                    "kind": e.kind,
                }
                for e in entries
            ],
            "failures": [
                {
                    "source_id": f.source_id,
                    "variant_key": f.variant_key or None,
                    "kind": f.kind,
                    "error_type": f.error_type,
                    "error_message": f.error_message,
                }
                for f in failures
            ],
        }

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(export_data, indent=2))
        logger.info("ledger_exported", output_path=str(output_path), entries=len(entries))
        return len(entries)

    def close(self) -> None:
        self.db.dispose()
