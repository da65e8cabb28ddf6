"""
Embedding & Indexing Pipeline
═════════════════════════════

Turns one stored PDF into indexed chunk vectors plus a document centroid.

States
──────
  init → extracting → extracted → embedding → indexed → centroid-computed → completed

  cancelled   reachable from every non-terminal state (ProcessingCancelled,
              or a foreign-key violation meaning the row vanished)
  error       any fatal failure; vectors are scheduled for cleanup, chunk
              rows removed, the job marked failed and the error re-raised

Each transition appends a row to processing_status.

Chunk indexing
──────────────
  Chunks are processed in batches of
      min(settings.max_concurrent_chunks_per_document, tier.batch_size)
  with at most tier.max_concurrency chunks in flight. Chunks whose dependency
  gave up after retrying (RetryExhaustedError, CircuitOpenError) are retried
  up to MAX_CHUNK_RETRIES times (2^attempt s apart) before the batch raises
  ChunkBatchError. Any other chunk error was refused by the resilience layer
  (malformed vector, 4xx response) and fails the document at once.

  The whole phase runs under the document-level embedding policy. When that
  budget is exhausted the document still completes with zero chunks and the
  metadata flags `embeddings_skipped` / `embeddings_error`. backfill() later
  re-runs the phase for such a document and clears the flags on success.

Per chunk
─────────
  1. embed                         embeddings breaker + policy
  2. validate dimensions/finiteness
  3. cancellation check
  4. upsert chunk row              database policy
  5. upsert vector                 vector-index breaker + policy
"""

from __future__ import annotations

import asyncio
import gc
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID

from docsim.core.config import Settings, get_settings
from docsim.core.exceptions import (
    ChunkBatchError,
    CircuitOpenError,
    ExtractionError,
    ProcessingCancelled,
    RetryExhaustedError,
)
from docsim.db.repository import DocumentRepository
from docsim.models.documents import Document
from docsim.processing.cancellation import CancellationToken, status_lookup
from docsim.processing.centroid import compute_and_store_centroid
from docsim.processing.chunking import DocumentChunker, TextChunk
from docsim.processing.embeddings import OpenAIEmbeddingClient, validate_vector
from docsim.processing.extraction import DocumentExtractor
from docsim.processing.sizing import (
    SizeStrategy,
    estimate_processing_minutes,
    requires_special_handling,
    select_strategy,
)
from docsim.resilience.policy import (
    document_embedding_policy,
    error_message,
    is_foreign_key_violation,
)
from docsim.resilience.retry import Sleep, execute
from docsim.resilience.service import Dependency, ResilienceService
from docsim.services.cleanup import DocumentCleanupService, VectorCleanupScheduler
from docsim.storage.s3 import S3DocumentStorage
from docsim.vectorstore.base import VectorRecord, VectorStoreBase, vector_id_for

logger = logging.getLogger(__name__)

MAX_CHUNK_RETRIES = 3

# Chunk errors worth another pass: the dependency was retried and gave up
RETRYABLE_CHUNK_ERRORS = (RetryExhaustedError, CircuitOpenError)

# Metadata keys owned by the pipeline, never copied into vector payloads
PIPELINE_METADATA_KEYS = frozenset({"embeddings_skipped", "embeddings_error"})

# Payload keys owned by the pipeline; business metadata may not overwrite them
SYSTEM_PAYLOAD_KEYS = frozenset({
    "document_id", "user_id", "filename", "chunk_index", "vector_id",
    "page_number", "start_page_number", "end_page_number", "text", "character_count",
})


class PipelineState(str, Enum):
    INIT              = "init"
    EXTRACTING        = "extracting"
    EXTRACTED         = "extracted"
    EMBEDDING         = "embedding"
    INDEXED           = "indexed"
    CENTROID_COMPUTED = "centroid-computed"
    COMPLETED         = "completed"
    CANCELLED         = "cancelled"
    ERROR             = "error"


@dataclass
class PipelineResult:
    document_id:        str
    state:              PipelineState
    chunk_count:        int = 0
    page_count:         int = 0
    embeddings_skipped: bool = False
    centroid_stored:    bool = False
    elapsed:            float = 0.0   # seconds


def build_payload(document: Document, chunk: TextChunk, vector_id: str) -> dict[str, Any]:
    business = {
        k: v for k, v in (document.doc_metadata or {}).items()
        if k not in PIPELINE_METADATA_KEYS
    }
    return {
        **business,
        "document_id":       str(document.id),
        "user_id":           str(document.user_id),
        "filename":          document.filename,
        "chunk_index":       chunk.chunk_index,
        "vector_id":         vector_id,
        "page_number":       chunk.page_number,
        "start_page_number": chunk.start_page_number,
        "end_page_number":   chunk.end_page_number,
        "text":              chunk.text,
        "character_count":   chunk.character_count,
    }


class DocumentPipeline:
    def __init__(
        self,
        repository: DocumentRepository,
        storage: S3DocumentStorage,
        extractor: DocumentExtractor,
        chunker: DocumentChunker,
        embedder: OpenAIEmbeddingClient,
        vector_store: VectorStoreBase,
        resilience: ResilienceService,
        cleanup: DocumentCleanupService,
        *,
        schedule_vector_cleanup: VectorCleanupScheduler | None = None,
        settings: Settings | None = None,
        sleep: Sleep | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.storage = storage
        self.extractor = extractor
        self.chunker = chunker
        self.embedder = embedder
        self.vector_store = vector_store
        self.resilience = resilience
        self.cleanup = cleanup
        self.schedule_vector_cleanup = schedule_vector_cleanup
        self.settings = settings or get_settings()
        self.sleep = sleep or resilience.sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        document_id: UUID,
        token: CancellationToken | None = None,
    ) -> PipelineResult:
        started = self.clock()
        token = token or CancellationToken(document_id, status_lookup(self.repository, document_id))
        context: dict[str, Any] = {}

        try:
            result = await self._run(document_id, token, context)
        except ProcessingCancelled as exc:
            return await self._handle_cancellation(document_id, context, exc.reason, started)
        except Exception as exc:
            if is_foreign_key_violation(exc):
                return await self._handle_cancellation(document_id, context, "document_deleted", started)
            await self._handle_failure(document_id, exc)
            raise

        result.elapsed = self.clock() - started
        logger.info(
            "Pipeline completed | doc=%s chunks=%d pages=%d skipped=%s elapsed=%.2fs",
            document_id, result.chunk_count, result.page_count,
            result.embeddings_skipped, result.elapsed,
        )
        return result

    async def backfill(self, document_id: UUID) -> PipelineResult | None:
        """Re-embed a completed document whose embedding phase was skipped.

        Re-extracts the stored file, indexes every chunk, stores the centroid
        and drops the skip flags. Returns None when the document is gone or
        no longer flagged. Another exhausted budget keeps the flags for the
        next sweep; a fatal error removes the partial vectors and re-raises
        with the document left completed.
        """
        started = self.clock()
        document = await self.repository.get_document(document_id)
        if (
            document is None
            or document.status != "completed"
            or not (document.doc_metadata or {}).get("embeddings_skipped")
        ):
            logger.info("Backfill skipped; document not flagged | doc=%s", document_id)
            return None

        token = CancellationToken(document_id, status_lookup(self.repository, document_id))
        context: dict[str, Any] = {"file_path": document.file_path}
        try:
            result = await self._backfill(document, token)
        except ProcessingCancelled as exc:
            return await self._handle_cancellation(document_id, context, exc.reason, started)
        except Exception as exc:
            logger.error("Backfill failed | doc=%s error=%s", document_id, exc)
            await self.cleanup.cleanup_partial_vectors(document_id)
            raise

        result.elapsed = self.clock() - started
        logger.info(
            "Backfill finished | doc=%s chunks=%d skipped=%s elapsed=%.2fs",
            document_id, result.chunk_count, result.embeddings_skipped, result.elapsed,
        )
        return result

    async def _backfill(self, document: Document, token: CancellationToken) -> PipelineResult:
        strategy = select_strategy(
            document.file_size,
            document.filename,
            document.content_type,
            sync_page_limit=self.settings.sync_page_limit,
        )
        await self._progress(document.id, PipelineState.EMBEDDING, 35, "Backfilling embeddings")

        pdf_bytes = await self.storage.get(document.file_path)
        extracted = await self.extractor.extract(pdf_bytes, strategy.extraction_strategy)
        chunks = self.chunker.chunk(extracted)
        if not chunks:
            raise ExtractionError("Extracted text produced no chunks")

        result = PipelineResult(
            document_id=str(document.id),
            state=PipelineState.COMPLETED,
            page_count=extracted.page_count,
        )
        skipped_error = await self._index_document(document, chunks, strategy, token)
        if skipped_error is not None:
            await self.repository.merge_metadata(document.id, {"embeddings_error": skipped_error})
            await self._progress(
                document.id, PipelineState.COMPLETED, 100,
                "Backfill postponed; embeddings still unavailable", error=skipped_error,
            )
            result.embeddings_skipped = True
            return result

        centroid = await compute_and_store_centroid(self.repository, document.id)
        await self.repository.remove_metadata_keys(document.id, PIPELINE_METADATA_KEYS)
        await self._progress(
            document.id, PipelineState.COMPLETED, 100, f"Backfilled {len(chunks)} chunk(s)",
        )
        result.chunk_count = len(chunks)
        result.centroid_stored = centroid is not None
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(
        self,
        document_id: UUID,
        token: CancellationToken,
        context: dict[str, Any],
    ) -> PipelineResult:
        await token.check("start")

        document = await self.repository.get_document(document_id)
        if document is None:
            raise ProcessingCancelled(document_id, "document_missing")
        context["file_path"] = document.file_path

        await self.repository.set_status(document_id, "processing")
        await self.repository.update_jobs(document_id, "running")

        strategy = select_strategy(
            document.file_size,
            document.filename,
            document.content_type,
            sync_page_limit=self.settings.sync_page_limit,
        )
        minutes = estimate_processing_minutes(strategy)
        special = requires_special_handling(strategy)
        logger.info(
            "Pipeline start | doc=%s tier=%s strategy=%s est_pages=%d est_minutes=%d special=%s",
            document_id, strategy.tier.value, strategy.extraction_strategy.value,
            strategy.estimated_pages, minutes, special,
        )
        message = f"Processing started, about {minutes} min"
        if special:
            message += " (large document: small batches, longer delays)"
        await self._progress(document_id, PipelineState.INIT, 5, message)

        # ---- Extraction ------------------------------------------------
        await token.check("before_extraction")
        await self._progress(document_id, PipelineState.EXTRACTING, 10, "Extracting text")

        pdf_bytes = await self.storage.get(document.file_path)
        extracted = await self.extractor.extract(pdf_bytes, strategy.extraction_strategy)
        await token.check("after_extraction")

        if extracted.is_empty():
            raise ExtractionError("No text could be extracted from the document")

        await self.repository.save_content(document_id, extracted)
        await self.repository.update_document(document_id, page_count=extracted.page_count)
        await self._progress(
            document_id, PipelineState.EXTRACTED, 30,
            f"Extracted {extracted.page_count} page(s)",
        )

        chunks = self.chunker.chunk(extracted)
        if not chunks:
            raise ExtractionError("Extracted text produced no chunks")

        # ---- Embedding + indexing ---------------------------------------
        await token.check("before_embedding")
        await self._progress(
            document_id, PipelineState.EMBEDDING, 35, f"Embedding {len(chunks)} chunk(s)",
        )
        skipped_error = await self._index_document(document, chunks, strategy, token)

        result = PipelineResult(
            document_id=str(document_id),
            state=PipelineState.COMPLETED,
            page_count=extracted.page_count,
        )

        if skipped_error is not None:
            await self.repository.merge_metadata(
                document_id, {"embeddings_skipped": True, "embeddings_error": skipped_error},
            )
            await self.repository.set_status(
                document_id, "completed",
                centroid=None, effective_chunk_count=0, total_characters=0,
            )
            await self._progress(
                document_id, PipelineState.COMPLETED, 100,
                "Completed without embeddings", error=skipped_error,
            )
            await self.repository.update_jobs(document_id, "completed")
            result.embeddings_skipped = True
            return result

        await self._progress(
            document_id, PipelineState.INDEXED, 90, f"Indexed {len(chunks)} chunk(s)",
        )

        # ---- Centroid --------------------------------------------------
        centroid = await compute_and_store_centroid(self.repository, document_id)
        result.centroid_stored = centroid is not None
        await self._progress(document_id, PipelineState.CENTROID_COMPUTED, 95, "Centroid computed")

        await self.repository.set_status(document_id, "completed")
        await self._progress(document_id, PipelineState.COMPLETED, 100, "Processing completed")
        await self.repository.update_jobs(document_id, "completed")

        result.chunk_count = len(chunks)
        return result

    async def _progress(
        self,
        document_id: UUID,
        state: PipelineState,
        progress: int,
        message: str,
        *,
        error: str | None = None,
    ) -> None:
        await self.repository.add_status_entry(document_id, state.value, progress, message, error)
        logger.debug("Pipeline state | doc=%s state=%s progress=%d", document_id, state.value, progress)

    # ------------------------------------------------------------------
    # Document-level retry around the chunk phase
    # ------------------------------------------------------------------

    async def _index_document(
        self,
        document: Document,
        chunks: list[TextChunk],
        strategy: SizeStrategy,
        token: CancellationToken,
    ) -> str | None:
        """Index every chunk. Returns an error message when embeddings were skipped."""
        policy = document_embedding_policy(self.settings.embedding_max_document_attempts)

        async def attempt() -> None:
            await token.check("before_embedding")
            await self.resilience.call(
                Dependency.DATABASE, lambda: self.repository.delete_chunks(document.id),
            )
            await self._embed_all(document, chunks, strategy, token)

        async def on_retry(attempt_no: int, exc: BaseException, delay: float) -> None:
            await token.check("document_retry")
            await self._progress(
                document.id, PipelineState.EMBEDDING, 35,
                f"Embedding attempt {attempt_no} failed; retrying in {delay:.1f}s",
                error=error_message(exc),
            )

        outcome = await execute(
            attempt, policy, sleep=self.sleep, clock=self.clock, on_retry=on_retry,
        )
        if outcome.success:
            return None

        error = outcome.error
        if error is not None and not policy.is_retryable(error):
            raise error

        message = str(error) if error is not None else "embedding budget exhausted"
        logger.error(
            "Embeddings skipped | doc=%s attempts=%d error=%s",
            document.id, outcome.attempts, message,
        )
        await self.cleanup.cleanup_partial_vectors(document.id)
        return message

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def _embed_all(
        self,
        document: Document,
        chunks: list[TextChunk],
        strategy: SizeStrategy,
        token: CancellationToken,
    ) -> None:
        config = strategy.processing
        batch_size = max(1, min(self.settings.max_concurrent_chunks_per_document, config.batch_size))
        semaphore = asyncio.Semaphore(max(1, config.max_concurrency))
        batches = [chunks[i:i + batch_size] for i in range(0, len(chunks), batch_size)]

        for number, batch in enumerate(batches, start=1):
            await token.check("between_batches")
            await self._process_batch(document, batch, semaphore, token)

            done = min(number * batch_size, len(chunks))
            await self._progress(
                document.id, PipelineState.EMBEDDING, 35 + int(55 * done / len(chunks)),
                f"Indexed {done}/{len(chunks)} chunk(s)",
            )
            if number < len(batches):
                await self.sleep(config.inter_batch_delay)
                if config.gc_hint:
                    gc.collect()

    async def _process_batch(
        self,
        document: Document,
        batch: list[TextChunk],
        semaphore: asyncio.Semaphore,
        token: CancellationToken,
    ) -> None:
        pending = list(batch)
        last_error: BaseException | None = None

        for attempt in range(MAX_CHUNK_RETRIES + 1):
            if attempt:
                await token.check("chunk_retry")
                await self.sleep(2 ** attempt)

            results = await asyncio.gather(
                *(self._guarded_chunk(semaphore, document, chunk, token) for chunk in pending),
                return_exceptions=True,
            )

            # In-flight chunks have all finished by now; abort before retrying
            failed: list[TextChunk] = []
            for chunk, outcome in zip(pending, results):
                if not isinstance(outcome, BaseException):
                    continue
                if isinstance(outcome, (asyncio.CancelledError, ProcessingCancelled)):
                    raise outcome
                if is_foreign_key_violation(outcome):
                    raise ProcessingCancelled(document.id, "document_deleted") from outcome
                if not isinstance(outcome, RETRYABLE_CHUNK_ERRORS):
                    logger.error(
                        "Chunk failed fatally | doc=%s chunk=%d error=%s",
                        document.id, chunk.chunk_index, outcome,
                    )
                    raise outcome
                logger.warning(
                    "Chunk failed | doc=%s chunk=%d attempt=%d error=%s",
                    document.id, chunk.chunk_index, attempt + 1, outcome,
                )
                failed.append(chunk)
                last_error = outcome

            if not failed:
                return
            pending = failed

        raise ChunkBatchError([c.chunk_index for c in pending], last_error)

    async def _guarded_chunk(
        self,
        semaphore: asyncio.Semaphore,
        document: Document,
        chunk: TextChunk,
        token: CancellationToken,
    ) -> None:
        async with semaphore:
            await self._process_chunk(document, chunk, token)

    async def _process_chunk(
        self,
        document: Document,
        chunk: TextChunk,
        token: CancellationToken,
    ) -> None:
        embedding = await self.resilience.call(
            Dependency.EMBEDDINGS, lambda: self.embedder.embed(chunk.text),
        )
        vector = validate_vector(embedding, self.settings.embedding_dimensions)
        await token.check("after_chunk_embedding")

        vector_id = vector_id_for(document.id, chunk.chunk_index)
        await self.resilience.call(
            Dependency.DATABASE,
            lambda: self.repository.upsert_chunk(document.id, chunk, vector_id, vector),
        )
        record = VectorRecord(id=vector_id, vector=vector, payload=build_payload(document, chunk, vector_id))
        await self.resilience.call(
            Dependency.VECTOR_INDEX, lambda: self.vector_store.upsert([record]),
        )

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    async def _handle_cancellation(
        self,
        document_id: UUID,
        context: dict[str, Any],
        reason: str,
        started: float,
    ) -> PipelineResult:
        logger.info("Pipeline cancelled | doc=%s reason=%s", document_id, reason)
        await self.cleanup.purge_document(document_id, context.get("file_path"))
        return PipelineResult(
            document_id=str(document_id),
            state=PipelineState.CANCELLED,
            elapsed=self.clock() - started,
        )

    async def _handle_failure(self, document_id: UUID, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        logger.error("Pipeline failed | doc=%s error=%s", document_id, message)

        steps: list[tuple[str, Callable[[], Awaitable[Any] | Any]]] = [
            ("vector_cleanup", lambda: self._schedule_cleanup(document_id)),
            ("status", lambda: self.repository.set_status(document_id, "error", error=message)),
            ("status_entry", lambda: self._progress(
                document_id, PipelineState.ERROR, 100, "Processing failed", error=message,
            )),
            ("job", lambda: self.repository.update_jobs(document_id, "failed", error=message)),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as cleanup_exc:
                logger.error(
                    "Failure handling step failed | doc=%s step=%s error=%s",
                    document_id, name, cleanup_exc,
                )

    async def _schedule_cleanup(self, document_id: UUID) -> None:
        """Vectors first: chunk rows go only once their removal is deleted or queued."""
        if self.schedule_vector_cleanup is None:
            await self.cleanup.cleanup_partial_vectors(document_id)
            return
        scheduled = self.schedule_vector_cleanup(document_id, None)
        if asyncio.iscoroutine(scheduled):
            await scheduled
        await self.repository.delete_chunks(document_id)
