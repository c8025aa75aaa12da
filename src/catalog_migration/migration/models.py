"""
SQLAlchemy models for the migration ledger.

The ledger maps legacy source records to destination records and keeps an
append-only trail of item failures for audit.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Stored in place of an absent variant key so the unique constraint holds
NO_VARIANT = ""


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class LedgerEntry(Base):
    """
    Maps one source record (optionally one of its variants) to a destination id.

    Written by the dispatcher on success, read by later phases such as price
    updates, collection ordering and cross-reference resolution.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    source_id: Mapped[str] = mapped_column(
        String(2048),
        nullable=False,
        index=True,
        comment="Identifier in the legacy catalog, or a media URL for files",
    )
    variant_key: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        default=NO_VARIANT,
        comment="Variant identifier for multi-variant sources (empty when absent)",
    )
    destination_id: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True, comment="Destination global id (gid://...)"
    )
    kind: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="product",
        index=True,
        comment="What the entry represents: product, variant, stock_variant, file",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("source_id", "variant_key", name="uq_ledger_source_variant"),
    )

    @property
    def variant(self) -> str | None:
        return self.variant_key or None

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry(source_id={self.source_id!r}, variant_key={self.variant_key!r}, "
            f"destination_id={self.destination_id!r}, kind={self.kind!r})>"
        )


class FailureRecord(Base):
    """
    One failed work item.

    Rows are only ever appended; the summary of a run carries counts, this
    table carries the detail.
    """

    __tablename__ = "ledger_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(2048), nullable=False, index=True)
    variant_key: Mapped[str] = mapped_column(String(128), nullable=False, default=NO_VARIANT)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, default="product")
    error_type: Mapped[str] = mapped_column(String(100), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_failure_kind_created", "kind", "created_at"),)

    def __repr__(self) -> str:
        return (
            f"<FailureRecord(source_id={self.source_id!r}, kind={self.kind!r}, "
            f"error_type={self.error_type!r})>"
        )
