"""
Document lifecycle operations behind the HTTP API.

  queue_processing   uploading | queued | error → queued, publish the task
  cancel             anything but completed → cancelled, revoke, purge
  retry_embeddings   completed with skipped embeddings → publish a backfill
  processing_status  current status plus the latest progress entries
  update_metadata    merge business metadata into the row and every vector

The Celery publisher and revoker are injected so the service can run
without a broker in tests.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import UUID

from docsim.core.exceptions import (
    DocumentNotFoundError,
    DocumentStateError,
    ValidationError,
)
from docsim.db.repository import DocumentRepository
from docsim.models.documents import Document, ProcessingStatusEntry
from docsim.processing.pipeline import PIPELINE_METADATA_KEYS, SYSTEM_PAYLOAD_KEYS
from docsim.resilience.service import Dependency, ResilienceService
from docsim.services.cleanup import CleanupReport, DocumentCleanupService
from docsim.vectorstore.base import VectorStoreBase

logger = logging.getLogger(__name__)

Enqueue = Callable[[UUID], Awaitable[str | None]]
Revoke = Callable[[list[str]], Awaitable[None]]

RESERVED_METADATA_KEYS = PIPELINE_METADATA_KEYS | SYSTEM_PAYLOAD_KEYS


# ---------------------------------------------------------------------------
# Celery publishing (deferred import: no broker needed at module load)
# ---------------------------------------------------------------------------

async def publish_processing_task(document_id: UUID) -> str | None:
    from docsim.workers.tasks import process_document

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None,
        lambda: process_document.apply_async(kwargs={"document_id": str(document_id)}),
    )
    logger.info("Processing task published | doc=%s task_id=%s", document_id, result.id)
    return result.id


async def publish_backfill_task(document_id: UUID) -> str | None:
    from docsim.workers.tasks import backfill_embeddings

    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None,
        lambda: backfill_embeddings.apply_async(kwargs={"document_id": str(document_id)}),
    )
    logger.info("Backfill task published | doc=%s task_id=%s", document_id, result.id)
    return result.id


async def publish_vector_cleanup(document_id: UUID, vector_ids: list[str] | None) -> None:
    from docsim.workers.tasks import schedule_vector_cleanup

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, lambda: schedule_vector_cleanup(document_id, vector_ids))


async def revoke_tasks(task_ids: list[str]) -> None:
    from docsim.workers.celery_app import celery_app

    loop = asyncio.get_running_loop()
    for task_id in task_ids:
        await loop.run_in_executor(None, lambda t=task_id: celery_app.control.revoke(t))
        logger.info("Task revoked | task_id=%s", task_id)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ProcessingStatusView:
    document_id: str
    status:      str
    error:       str | None
    page_count:  int | None
    entries:     list[ProcessingStatusEntry] = field(default_factory=list)

    @property
    def progress(self) -> int:
        return self.entries[0].progress if self.entries else 0


def validate_metadata_patch(patch: dict[str, Any]) -> dict[str, Any]:
    if not patch:
        raise ValidationError("Metadata patch must not be empty")
    reserved = sorted(k for k in patch if k in RESERVED_METADATA_KEYS)
    if reserved:
        raise ValidationError(
            f"Reserved metadata keys cannot be set: {', '.join(reserved)}",
            details={"keys": reserved},
        )
    for key, value in patch.items():
        if not key or key.startswith("$"):
            raise ValidationError(f"Invalid metadata key '{key}'")
        if isinstance(value, list):
            if not all(isinstance(v, (str, int, float, bool)) for v in value):
                raise ValidationError(f"Metadata '{key}' must be a list of scalars")
        elif value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValidationError(f"Metadata '{key}' must be a scalar or a list of scalars")
    return patch


class DocumentService:
    def __init__(
        self,
        repository: DocumentRepository,
        vector_store: VectorStoreBase,
        resilience: ResilienceService,
        cleanup: DocumentCleanupService | None = None,
        *,
        enqueue: Enqueue = publish_processing_task,
        revoke: Revoke = revoke_tasks,
        enqueue_backfill: Enqueue = publish_backfill_task,
    ) -> None:
        self.repository = repository
        self.vector_store = vector_store
        self.resilience = resilience
        self.cleanup = cleanup or DocumentCleanupService(
            repository, vector_store, resilience=resilience,
            schedule_vector_cleanup=publish_vector_cleanup,
        )
        self._enqueue = enqueue
        self._revoke = revoke
        self._enqueue_backfill = enqueue_backfill

    async def _owned(self, document_id: UUID, user_id: UUID) -> Document:
        document = await self.repository.get_owned_document(document_id, user_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return document

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def queue_processing(self, document_id: UUID, user_id: UUID) -> str | None:
        document = await self._owned(document_id, user_id)
        if not await self.repository.claim_for_processing(document.id):
            raise DocumentStateError(
                f"Document cannot be queued while '{document.status}'",
                details={"status": document.status},
            )

        task_id = await self._enqueue(document.id)
        await self.repository.create_job(document.id, task_id)
        await self.repository.add_status_entry(document.id, "queued", 0, "Queued for processing")
        logger.info("Document queued | doc=%s task_id=%s", document.id, task_id)
        return task_id

    async def cancel(self, document_id: UUID, user_id: UUID) -> CleanupReport:
        document = await self._owned(document_id, user_id)
        if document.status == "completed":
            raise DocumentStateError(
                "Completed documents cannot be cancelled",
                details={"status": document.status},
            )

        # Status first: the worker's cancellation lookup sees it at the next checkpoint
        await self.repository.set_status(document.id, "cancelled")
        task_ids = await self.repository.active_task_ids(document.id)
        if task_ids:
            await self._revoke(task_ids)
        await self.repository.update_jobs(document.id, "cancelled", error="cancelled by user")

        report = await self.cleanup.purge_document(document.id, document.file_path)
        logger.info(
            "Document cancelled | doc=%s revoked=%d complete=%s",
            document.id, len(task_ids), report.complete,
        )
        return report

    async def retry_embeddings(self, document_id: UUID, user_id: UUID) -> str | None:
        """Queue an embedding backfill for a completed document that skipped them."""
        document = await self._owned(document_id, user_id)
        if document.status != "completed" or not (document.doc_metadata or {}).get("embeddings_skipped"):
            raise DocumentStateError(
                "Only completed documents with skipped embeddings can be backfilled",
                details={"status": document.status},
            )

        task_id = await self._enqueue_backfill(document.id)
        await self.repository.add_status_entry(
            document.id, "embedding", 35, "Queued for embedding backfill",
        )
        logger.info("Embedding backfill queued | doc=%s task_id=%s", document.id, task_id)
        return task_id

    async def processing_status(
        self, document_id: UUID, user_id: UUID, limit: int = 20,
    ) -> ProcessingStatusView:
        document = await self._owned(document_id, user_id)
        entries = await self.repository.latest_status_entries(document.id, limit)
        return ProcessingStatusView(
            document_id=str(document.id),
            status=document.status,
            error=document.processing_error,
            page_count=document.page_count,
            entries=list(entries),
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def update_metadata(
        self, document_id: UUID, user_id: UUID, patch: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge `patch` into the document row, then into every vector payload."""
        document = await self._owned(document_id, user_id)
        patch = validate_metadata_patch(patch)

        merged = await self.repository.merge_metadata(document.id, patch)
        updated = await self.resilience.call(
            Dependency.VECTOR_INDEX,
            lambda: self.vector_store.set_payload_by_document(str(document.id), patch),
        )
        logger.info(
            "Metadata updated | doc=%s keys=%s vectors=%d",
            document.id, sorted(patch), updated,
        )
        return merged
