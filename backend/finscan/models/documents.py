"""
SQLAlchemy ORM Models — Document Jobs & Transactions

Uses SQLAlchemy 2.x mapped classes for full async support. Column types are
portable (Uuid, JSON with a JSONB variant) so repository tests can run
against aiosqlite while production runs on PostgreSQL.

Ownership: every row carries owner_id. Repositories always filter by it;
the HTTP layer never accepts an owner from the request body.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# DocumentJob model: document_jobs
# ---------------------------------------------------------------------------

class DocumentJob(Base):
    """
    Tracks one uploaded receipt or statement through the extraction pipeline.

    State machine (status column):
        processing — created at upload time; background pipeline running
        completed  — extracted_data written (linked_transaction_id only if
                     a transaction was materialized)
        failed     — classified error written (error_type + error_message)

    Both terminal states are written exactly once: repositories only update
    rows WHERE status = 'processing'.
    """

    __tablename__ = "document_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="document_jobs_status_check",
        ),
        CheckConstraint(
            "kind IN ('receipt', 'pdf-statement', 'image-statement')",
            name="document_jobs_kind_check",
        ),
        Index("idx_document_jobs_owner",  "owner_id", "created_at"),
        Index("idx_document_jobs_status", "status", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)

    # Upload reference
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    stored_filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Job state machine
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="processing",
        server_default="processing",
    )

    # Pipeline output
    ocr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Transactions live in the transaction store; no FK to avoid a create_all cycle.
    linked_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Classified failure: populated only when status='failed'
    error_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentJob id={self.id} owner={self.owner_id} kind={self.kind} "
            f"status={self.status} file={self.original_filename!r}>"
        )


# ---------------------------------------------------------------------------
# Transaction model: transactions
# ---------------------------------------------------------------------------

class Transaction(Base):
    """
    A persisted financial transaction.

    Only the columns the extraction pipeline writes are modelled here; CRUD
    and analytics over this table belong to the transaction service.
    document_job_id is the back-reference to the job that produced it.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "type IN ('income', 'expense', 'transfer')",
            name="transactions_type_check",
        ),
        CheckConstraint(
            "source IN ('manual', 'receipt', 'pdf', 'image')",
            name="transactions_source_check",
        ),
        Index("idx_transactions_owner_date", "owner_id", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    receipt_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tx_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # column name stays 'metadata'
        JSONType,
        nullable=False,
        default=dict,
    )

    document_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("document_jobs.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} owner={self.owner_id} type={self.type} "
            f"amount={self.amount} source={self.source}>"
        )
