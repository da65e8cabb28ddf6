"""
Celery Tasks

Task: process_document
  Runs DocumentPipeline for one document: extract → chunk → embed → index →
  centroid. Cancellation and fatal-error handling live in the pipeline; a
  fatal error propagates so the failure signal logs it.

Task: delete_document_vectors
  Removes a document's vectors after a failed run. Retries with exponential
  backoff on its own so the pipeline never blocks on index cleanup.

Task: requeue_stale_documents
  Beat task; re-queues documents stuck in 'queued' (lost broker messages).

Task: backfill_embeddings / backfill_skipped_embeddings
  Re-embeds a completed document whose embedding phase was skipped; the
  Beat scan queues one backfill per flagged document.

Task: health_check
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import uuid
from typing import Any

from celery import Task

from docsim.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Sync → async bridge
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None


def _worker_loop() -> asyncio.AbstractEventLoop:
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


def run_async(coro):
    """Run `coro` to completion from a synchronous task body.

    Prefork workers reuse one loop per process: the async engine pool and the
    index clients stay bound to the loop that created them. Under an
    already-running loop (eager mode in tests) the coroutine gets a private
    loop on a helper thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return _worker_loop().run_until_complete(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Worker-process singletons
# ---------------------------------------------------------------------------

_resilience = None
_vector_store = None


def get_worker_resilience():
    """One ResilienceService per worker process so breaker state is shared."""
    global _resilience
    if _resilience is None:
        from docsim.resilience.service import ResilienceService
        _resilience = ResilienceService()
    return _resilience


def get_worker_vector_store():
    global _vector_store
    if _vector_store is None:
        from docsim.vectorstore.factory import create_vector_store
        _vector_store = create_vector_store()
    return _vector_store


def schedule_vector_cleanup(document_id: uuid.UUID, vector_ids: list[str] | None = None) -> None:
    kwargs: dict[str, Any] = {"document_id": str(document_id)}
    if vector_ids:
        kwargs["vector_ids"] = list(vector_ids)
    delete_document_vectors.apply_async(kwargs=kwargs)
    logger.info("Vector cleanup scheduled | doc=%s ids=%d", document_id, len(vector_ids or ()))


def build_pipeline():
    from docsim.core.config import settings
    from docsim.db.repository import DocumentRepository
    from docsim.processing.chunking import DocumentChunker
    from docsim.processing.embeddings import OpenAIEmbeddingClient
    from docsim.processing.extraction import DocumentExtractor, create_extraction_service
    from docsim.processing.pipeline import DocumentPipeline
    from docsim.services.cleanup import DocumentCleanupService
    from docsim.storage.s3 import S3DocumentStorage

    resilience = get_worker_resilience()
    vector_store = get_worker_vector_store()
    repository = DocumentRepository()
    storage = S3DocumentStorage.from_settings(settings)

    return DocumentPipeline(
        repository=repository,
        storage=storage,
        extractor=DocumentExtractor(
            create_extraction_service(settings),
            resilience,
            sync_page_limit=settings.sync_page_limit,
        ),
        chunker=DocumentChunker(),
        embedder=OpenAIEmbeddingClient(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout=settings.embedding_timeout,
        ),
        vector_store=vector_store,
        resilience=resilience,
        cleanup=DocumentCleanupService(
            repository, vector_store, storage, resilience,
            schedule_vector_cleanup=schedule_vector_cleanup,
        ),
        schedule_vector_cleanup=schedule_vector_cleanup,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docsim.workers.tasks.process_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_document(self: Task, *, document_id: str) -> dict[str, Any]:
    return run_async(_process_document_async(uuid.UUID(document_id)))


async def _process_document_async(document_id: uuid.UUID) -> dict[str, Any]:
    pipeline = build_pipeline()
    try:
        result = await pipeline.run(document_id)
    finally:
        await pipeline.embedder.close()

    return {
        "status":             result.state.value,
        "document_id":        result.document_id,
        "chunk_count":        result.chunk_count,
        "page_count":         result.page_count,
        "embeddings_skipped": result.embeddings_skipped,
        "elapsed":            round(result.elapsed, 2),
    }


# ---------------------------------------------------------------------------
# Vector cleanup
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docsim.workers.tasks.delete_document_vectors",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=8,
    acks_late=True,
)
def delete_document_vectors(
    self: Task,
    *,
    document_id: str,
    vector_ids: list[str] | None = None,
) -> dict[str, Any]:
    return run_async(_delete_document_vectors_async(document_id, vector_ids))


async def _delete_document_vectors_async(
    document_id: str,
    vector_ids: list[str] | None,
) -> dict[str, Any]:
    from docsim.resilience.service import Dependency

    store = get_worker_vector_store()
    deleted = await get_worker_resilience().call(
        Dependency.VECTOR_INDEX, lambda: store.delete_by_document(document_id, vector_ids),
    )
    logger.info("Document vectors deleted | doc=%s count=%d", document_id, deleted)
    return {"document_id": document_id, "deleted": deleted}


# ---------------------------------------------------------------------------
# Embedding backfill
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docsim.workers.tasks.backfill_embeddings",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def backfill_embeddings(self: Task, *, document_id: str) -> dict[str, Any]:
    return run_async(_backfill_embeddings_async(uuid.UUID(document_id)))


async def _backfill_embeddings_async(document_id: uuid.UUID) -> dict[str, Any]:
    pipeline = build_pipeline()
    try:
        result = await pipeline.backfill(document_id)
    finally:
        await pipeline.embedder.close()

    if result is None:
        return {"status": "skipped", "document_id": str(document_id)}
    return {
        "status":             result.state.value,
        "document_id":        result.document_id,
        "chunk_count":        result.chunk_count,
        "embeddings_skipped": result.embeddings_skipped,
        "elapsed":            round(result.elapsed, 2),
    }


@celery_app.task(
    name="docsim.workers.tasks.backfill_skipped_embeddings",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def backfill_skipped_embeddings() -> dict[str, int]:
    return run_async(_backfill_skipped_embeddings_async())


async def _backfill_skipped_embeddings_async() -> dict[str, int]:
    from docsim.core.config import settings
    from docsim.db.repository import DocumentRepository

    repository = DocumentRepository()
    flagged = await repository.embeddings_skipped_documents(settings.backfill_scan_limit)

    for doc in flagged:
        result = backfill_embeddings.apply_async(kwargs={"document_id": str(doc.id)})
        logger.info("Embedding backfill queued | doc=%s task_id=%s", doc.id, result.id)

    return {"queued": len(flagged)}


# ---------------------------------------------------------------------------
# Stale queue scanner (Celery Beat)
# ---------------------------------------------------------------------------

@celery_app.task(
    name="docsim.workers.tasks.requeue_stale_documents",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, int]:
    return run_async(_requeue_stale_documents_async())


async def _requeue_stale_documents_async() -> dict[str, int]:
    from docsim.core.config import settings
    from docsim.db.repository import DocumentRepository

    repository = DocumentRepository()
    stale = await repository.stale_documents(settings.stale_document_minutes)

    queued = 0
    for doc in stale:
        await repository.update_jobs(doc.id, "cancelled", error="requeued")
        result = process_document.apply_async(kwargs={"document_id": str(doc.id)}, countdown=5)
        await repository.create_job(doc.id, result.id)
        await repository.touch(doc.id)
        queued += 1
        logger.info("Re-queued stale document | doc=%s task_id=%s", doc.id, result.id)

    return {"requeued": queued}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docsim.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    breakers = get_worker_resilience().health()
    return {"status": "ok", "worker": "healthy", "breakers": breakers}
