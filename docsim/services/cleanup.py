"""
Document Cleanup
════════════════

Two flavours of teardown:

  purge_document          full removal after cancellation, in dependency
                          order so an interrupted run never leaves vectors
                          pointing at rows that no longer exist:
                            1. vectors (ids from stored chunk indices,
                               falling back to delete-by-document)
                            2. chunk rows
                            3. extraction content
                            4. status rows
                            5. job rows
                            6. stored file
                            7. document row

  cleanup_partial_vectors remove whatever a failed attempt indexed, keeping
                          the document row for the error state.

Vectors gate the rows. When the index delete fails, the ids go to the
injected scheduler (the delete_document_vectors Celery task in production)
and teardown continues; when there is no scheduler or publishing fails too,
teardown halts with every row intact so a later run can find the vectors
again. Every other step logs and carries on; the returned report says which
steps did not complete.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import UUID

from docsim.db.repository import DocumentRepository
from docsim.resilience.service import Dependency, ResilienceService
from docsim.storage.s3 import S3DocumentStorage
from docsim.vectorstore.base import VectorStoreBase, vector_id_for

logger = logging.getLogger(__name__)

# (document_id, vector_ids or None for delete-by-document)
VectorCleanupScheduler = Callable[[UUID, list[str] | None], Any]


@dataclass
class CleanupReport:
    document_id:       str
    vectors_deleted:   int = 0
    chunks_deleted:    int = 0
    vectors_scheduled: bool = False
    halted:            bool = False
    failed_steps:      list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_steps


class DocumentCleanupService:
    def __init__(
        self,
        repository: DocumentRepository,
        vector_store: VectorStoreBase,
        storage: S3DocumentStorage | None = None,
        resilience: ResilienceService | None = None,
        *,
        schedule_vector_cleanup: VectorCleanupScheduler | None = None,
    ) -> None:
        self.repository = repository
        self.vector_store = vector_store
        self.storage = storage
        self.resilience = resilience
        self.schedule_vector_cleanup = schedule_vector_cleanup

    async def _step(self, report: CleanupReport, name: str, op: Callable[[], Awaitable]):
        try:
            return await op()
        except Exception as exc:
            logger.error("Cleanup step failed | doc=%s step=%s error=%s", report.document_id, name, exc)
            report.failed_steps.append(name)
            return None

    async def _vector_ids(self, document_id: UUID) -> list[str]:
        indices = await self.repository.chunk_indices(document_id)
        return [vector_id_for(document_id, i) for i in indices]

    async def delete_vectors(self, document_id: UUID, vector_ids: list[str] | None = None) -> int:
        async def _delete() -> int:
            return await self.vector_store.delete_by_document(str(document_id), vector_ids)

        if self.resilience is None:
            return await _delete()
        return await self.resilience.call(Dependency.VECTOR_INDEX, _delete)

    async def _remove_vectors(
        self,
        report: CleanupReport,
        document_id: UUID,
        vector_ids: list[str] | None,
    ) -> bool:
        """Delete the vectors or hand them to the scheduler. False when neither happened."""
        try:
            report.vectors_deleted = await self.delete_vectors(document_id, vector_ids)
            return True
        except Exception as exc:
            logger.error("Cleanup step failed | doc=%s step=vectors error=%s", document_id, exc)
            report.failed_steps.append("vectors")

        if self.schedule_vector_cleanup is None:
            return False
        try:
            scheduled = self.schedule_vector_cleanup(document_id, vector_ids)
            if asyncio.iscoroutine(scheduled):
                await scheduled
        except Exception as exc:
            logger.error("Cleanup step failed | doc=%s step=schedule_vectors error=%s", document_id, exc)
            report.failed_steps.append("schedule_vectors")
            return False
        report.vectors_scheduled = True
        return True

    def _halt(self, report: CleanupReport, operation: str) -> CleanupReport:
        report.halted = True
        logger.warning(
            "%s halted; rows kept until vectors are removed | doc=%s failed=%s",
            operation, report.document_id, report.failed_steps,
        )
        return report

    async def purge_document(self, document_id: UUID, file_path: str | None = None) -> CleanupReport:
        report = CleanupReport(document_id=str(document_id))
        logger.info("Purge started | doc=%s", document_id)

        vector_ids = await self._step(report, "chunk_indices", lambda: self._vector_ids(document_id))
        if not await self._remove_vectors(report, document_id, vector_ids or None):
            return self._halt(report, "Purge")

        report.chunks_deleted = await self._step(
            report, "chunks", lambda: self.repository.delete_chunks(document_id),
        ) or 0
        await self._step(report, "content", lambda: self.repository.delete_content(document_id))
        await self._step(report, "status", lambda: self.repository.delete_status_entries(document_id))
        await self._step(report, "jobs", lambda: self.repository.delete_jobs(document_id))
        if file_path and self.storage is not None:
            await self._step(report, "file", lambda: self.storage.delete(file_path))
        await self._step(report, "document", lambda: self.repository.delete_document(document_id))

        log = logger.info if report.complete else logger.warning
        log(
            "Purge finished | doc=%s vectors=%d scheduled=%s chunks=%d failed=%s",
            document_id, report.vectors_deleted, report.vectors_scheduled,
            report.chunks_deleted, report.failed_steps or "-",
        )
        return report

    async def cleanup_partial_vectors(self, document_id: UUID) -> CleanupReport:
        report = CleanupReport(document_id=str(document_id))
        vector_ids = await self._step(report, "chunk_indices", lambda: self._vector_ids(document_id))
        if not await self._remove_vectors(report, document_id, vector_ids or None):
            return self._halt(report, "Partial cleanup")

        report.chunks_deleted = await self._step(
            report, "chunks", lambda: self.repository.delete_chunks(document_id),
        ) or 0
        logger.info(
            "Partial cleanup | doc=%s vectors=%d scheduled=%s chunks=%d failed=%s",
            document_id, report.vectors_deleted, report.vectors_scheduled,
            report.chunks_deleted, report.failed_steps or "-",
        )
        return report
