"""
SQLAlchemy ORM Models — Documents, Chunks and Processing Records

Using SQLAlchemy 2.x mapped classes for full async support. Every child
table references documents(id) with ON DELETE CASCADE so that removing the
document row during cancellation cleanup takes its children with it; a
worker that later writes a child row for a vanished document gets a
foreign-key violation (23503), which the pipeline treats as cancellation.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


DOCUMENT_STATUSES = ("uploading", "queued", "processing", "completed", "error", "cancelled")
JOB_STATUSES = ("queued", "running", "completed", "failed", "cancelled")


# ---------------------------------------------------------------------------
# documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded PDF.

    State machine (status column):
        uploading  → queued → processing → completed | error | cancelled

    Search-time fields (written once chunks are indexed):
        centroid               L2-normalised mean chunk vector
        effective_chunk_count  chunks actually indexed
        total_characters       sum of chunk character counts

    doc_metadata holds business metadata (used as vector payload filters)
    plus the pipeline flags `embeddings_skipped` / `embeddings_error`.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploading', 'queued', 'processing', 'completed', 'error', 'cancelled')",
            name="documents_status_check",
        ),
        Index("idx_documents_user_id", "user_id"),
        Index("idx_documents_status",  "user_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    title:        Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    filename:     Mapped[str] = mapped_column(Text, nullable=False)
    file_path:    Mapped[str] = mapped_column(Text, nullable=False, comment="Storage object key")
    content_type: Mapped[str] = mapped_column(Text, nullable=False, default="application/pdf")
    file_size:    Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="uploading", server_default="uploading",
    )
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    page_count:       Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    centroid: Mapped[Optional[list[float]]] = mapped_column(ARRAY(Float), nullable=True)
    effective_chunk_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_characters:      Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} status={self.status} file={self.filename!r}>"


# ---------------------------------------------------------------------------
# document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index:       Mapped[int] = mapped_column(Integer, nullable=False)
    text:              Mapped[str] = mapped_column(Text, nullable=False)
    character_count:   Mapped[int] = mapped_column(Integer, nullable=False)
    page_number:       Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_page_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    end_page_number:   Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    vector_id:         Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(ARRAY(Float), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# processing_status (append-only progress log)
# ---------------------------------------------------------------------------

class ProcessingStatusEntry(Base):
    __tablename__ = "processing_status"
    __table_args__ = (
        CheckConstraint("progress BETWEEN 0 AND 100", name="processing_status_progress_check"),
        Index("idx_processing_status_document", "document_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    status:   Mapped[str] = mapped_column(Text, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# document_jobs (one row per Celery task)
# ---------------------------------------------------------------------------

class DocumentJob(Base):
    __tablename__ = "document_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'cancelled')",
            name="document_jobs_status_check",
        ),
        Index("idx_document_jobs_document", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    task_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="Celery task id")
    status:  Mapped[str] = mapped_column(Text, nullable=False, default="queued")
    error:   Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )


# ---------------------------------------------------------------------------
# document_content (raw extraction output)
# ---------------------------------------------------------------------------

class DocumentContent(Base):
    __tablename__ = "document_content"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    extracted_text:  Mapped[str] = mapped_column(Text, nullable=False, default="")
    structured_data: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=dict, server_default="{}",
        comment="entities, tables and key/value fields from extraction",
    )
    page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
