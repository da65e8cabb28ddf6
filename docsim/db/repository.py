"""
DocumentRepository — every relational read/write the pipeline, cleanup
service, search engine and API perform.

Each method opens its own short transaction through `session_scope`, so a
failure in one step never leaves a long transaction holding locks while
embeddings are generated.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable, Iterable, Sequence
from uuid import UUID

from sqlalchemy import Text, and_, cast, delete, func, select, text, update
from sqlalchemy.dialects.postgresql import ARRAY, insert
from sqlalchemy.ext.asyncio import AsyncSession

from docsim.db.session import session_scope
from docsim.models.documents import (
    Document,
    DocumentChunk,
    DocumentContent,
    DocumentJob,
    ProcessingStatusEntry,
)
from docsim.processing.centroid import CentroidResult, ChunkVectorRow
from docsim.processing.chunking import TextChunk
from docsim.processing.extraction import ExtractedDocument

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Job states that still own a Celery task
ACTIVE_JOB_STATUSES = ("queued", "running")


class DocumentRepository:
    def __init__(self, session_factory: SessionFactory = session_scope) -> None:
        self._session = session_factory

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_document(self, document_id: UUID) -> Document | None:
        async with self._session() as db:
            return await db.get(Document, document_id)

    async def get_owned_document(self, document_id: UUID, user_id: UUID) -> Document | None:
        async with self._session() as db:
            result = await db.execute(
                select(Document).where(Document.id == document_id, Document.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_documents(self, document_ids: Sequence[UUID | str]) -> Sequence[Document]:
        if not document_ids:
            return []
        ids = [UUID(str(i)) for i in document_ids]
        async with self._session() as db:
            result = await db.execute(select(Document).where(Document.id.in_(ids)))
            return result.scalars().all()

    async def get_status(self, document_id: UUID) -> str | None:
        async with self._session() as db:
            result = await db.execute(select(Document.status).where(Document.id == document_id))
            return result.scalar_one_or_none()

    async def update_document(self, document_id: UUID, **values: Any) -> None:
        async with self._session() as db:
            await db.execute(
                update(Document).where(Document.id == document_id).values(**values)
            )

    async def touch(self, document_id: UUID) -> None:
        await self.update_document(document_id, updated_at=func.now())

    async def set_status(
        self,
        document_id: UUID,
        status: str,
        *,
        error: str | None = None,
        **values: Any,
    ) -> None:
        await self.update_document(
            document_id, status=status, processing_error=error, **values,
        )

    async def claim_for_processing(self, document_id: UUID) -> bool:
        """queued/error/uploading → queued; False if processing or completed."""
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status.in_(("uploading", "queued", "error")),
                )
                .values(status="queued", processing_error=None)
                .returning(Document.id)
            )
            return result.scalar_one_or_none() is not None

    async def merge_metadata(self, document_id: UUID, patch: dict[str, Any]) -> dict[str, Any]:
        """JSONB merge (metadata || patch); returns the merged document metadata."""
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(doc_metadata=Document.doc_metadata.op("||")(patch))
                .returning(Document.doc_metadata)
            )
            merged = result.scalar_one_or_none()
        return dict(merged or {})

    async def delete_document(self, document_id: UUID) -> int:
        async with self._session() as db:
            result = await db.execute(delete(Document).where(Document.id == document_id))
            return result.rowcount or 0

    async def stale_documents(self, minutes: int, limit: int = 50) -> Sequence[Document]:
        """Queued documents whose last update is older than `minutes`."""
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(
                    and_(
                        Document.status == "queued",
                        Document.updated_at < func.now() - text(f"interval '{int(minutes)} minutes'"),
                    )
                )
                .limit(limit)
            )
            return result.scalars().all()

    async def embeddings_skipped_documents(self, limit: int = 20) -> Sequence[Document]:
        """Completed documents whose embedding phase gave up, oldest first."""
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(
                    Document.status == "completed",
                    Document.doc_metadata.contains({"embeddings_skipped": True}),
                )
                .order_by(Document.updated_at)
                .limit(limit)
            )
            return result.scalars().all()

    async def remove_metadata_keys(self, document_id: UUID, keys: Iterable[str]) -> dict[str, Any]:
        """JSONB key removal (metadata - keys); returns the remaining metadata."""
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(doc_metadata=Document.doc_metadata.op("-")(cast(sorted(keys), ARRAY(Text))))
                .returning(Document.doc_metadata)
            )
            remaining = result.scalar_one_or_none()
        return dict(remaining or {})

    # ------------------------------------------------------------------
    # Progress log
    # ------------------------------------------------------------------

    async def add_status_entry(
        self,
        document_id: UUID,
        status: str,
        progress: int,
        message: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self._session() as db:
            db.add(ProcessingStatusEntry(
                document_id=document_id,
                status=status,
                progress=max(0, min(100, int(progress))),
                message=message,
                error=error,
            ))

    async def latest_status_entries(
        self, document_id: UUID, limit: int = 20,
    ) -> Sequence[ProcessingStatusEntry]:
        async with self._session() as db:
            result = await db.execute(
                select(ProcessingStatusEntry)
                .where(ProcessingStatusEntry.document_id == document_id)
                .order_by(ProcessingStatusEntry.created_at.desc(), ProcessingStatusEntry.id.desc())
                .limit(limit)
            )
            return result.scalars().all()

    async def delete_status_entries(self, document_id: UUID) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(ProcessingStatusEntry).where(ProcessingStatusEntry.document_id == document_id)
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def upsert_chunk(
        self,
        document_id: UUID,
        chunk: TextChunk,
        vector_id: str,
        embedding: list[float],
    ) -> None:
        values = {
            "document_id":       document_id,
            "chunk_index":       chunk.chunk_index,
            "text":              chunk.text,
            "character_count":   chunk.character_count,
            "page_number":       chunk.page_number,
            "start_page_number": chunk.start_page_number,
            "end_page_number":   chunk.end_page_number,
            "vector_id":         vector_id,
            "embedding":         embedding,
        }
        stmt = insert(DocumentChunk).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DocumentChunk.document_id, DocumentChunk.chunk_index],
            set_={k: stmt.excluded[k] for k in values if k not in ("document_id", "chunk_index")},
        )
        async with self._session() as db:
            await db.execute(stmt)

    async def delete_chunks(self, document_id: UUID) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            return result.rowcount or 0

    async def chunk_indices(self, document_id: UUID) -> list[int]:
        async with self._session() as db:
            result = await db.execute(
                select(DocumentChunk.chunk_index)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index)
            )
            return list(result.scalars().all())

    async def load_chunk_vectors(self, document_id: UUID) -> list[ChunkVectorRow]:
        async with self._session() as db:
            result = await db.execute(
                select(
                    DocumentChunk.chunk_index,
                    DocumentChunk.embedding,
                    DocumentChunk.character_count,
                    DocumentChunk.text,
                )
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index, DocumentChunk.created_at)
            )
            return [ChunkVectorRow(r[0], r[1], r[2], r[3] or "") for r in result.all()]

    async def save_centroid(self, document_id: UUID, result: CentroidResult) -> None:
        await self.update_document(
            document_id,
            centroid=result.centroid,
            effective_chunk_count=result.effective_chunk_count,
            total_characters=result.total_characters,
        )

    # ------------------------------------------------------------------
    # Extraction content
    # ------------------------------------------------------------------

    async def save_content(self, document_id: UUID, extracted: ExtractedDocument) -> None:
        values = {
            "document_id":     document_id,
            "extracted_text":  extracted.text,
            "structured_data": {
                "entities": extracted.entities,
                "tables":   extracted.tables,
                "fields":   extracted.fields,
            },
            "page_count": extracted.page_count,
        }
        stmt = insert(DocumentContent).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DocumentContent.document_id],
            set_={k: stmt.excluded[k] for k in ("extracted_text", "structured_data", "page_count")},
        )
        async with self._session() as db:
            await db.execute(stmt)

    async def delete_content(self, document_id: UUID) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(DocumentContent).where(DocumentContent.document_id == document_id)
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, document_id: UUID, task_id: str | None) -> UUID:
        job = DocumentJob(document_id=document_id, task_id=task_id, status="queued")
        async with self._session() as db:
            db.add(job)
            await db.flush()
            return job.id

    async def update_jobs(
        self,
        document_id: UUID,
        status: str,
        *,
        error: str | None = None,
        only_active: bool = True,
    ) -> int:
        conditions = [DocumentJob.document_id == document_id]
        if only_active:
            conditions.append(DocumentJob.status.in_(ACTIVE_JOB_STATUSES))
        async with self._session() as db:
            result = await db.execute(
                update(DocumentJob).where(*conditions).values(status=status, error=error)
            )
            return result.rowcount or 0

    async def active_task_ids(self, document_id: UUID) -> list[str]:
        async with self._session() as db:
            result = await db.execute(
                select(DocumentJob.task_id).where(
                    DocumentJob.document_id == document_id,
                    DocumentJob.status.in_(ACTIVE_JOB_STATUSES),
                    DocumentJob.task_id.is_not(None),
                )
            )
            return [t for t in result.scalars().all() if t]

    async def delete_jobs(self, document_id: UUID) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(DocumentJob).where(DocumentJob.document_id == document_id)
            )
            return result.rowcount or 0
