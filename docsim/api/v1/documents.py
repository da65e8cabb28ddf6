"""
Document Processing API Router

  POST  /api/v1/documents/{id}/process            queue ingestion        202 | 409
  POST  /api/v1/documents/{id}/cancel             cancel + full purge    200 | 409
  POST  /api/v1/documents/{id}/retry-embeddings   backfill embeddings    202 | 409
  GET   /api/v1/documents/{id}/processing-status  latest progress        200
  PATCH /api/v1/documents/{id}/metadata           merge business metadata 200 | 400

Every route is scoped to the caller (X-User-ID); another user's document
is reported as 404.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from docsim.api.dependencies import CurrentUserId, DocumentsService
from docsim.api.schemas import (
    CancelResponse,
    ErrorResponse,
    MetadataPatch,
    MetadataResponse,
    ProcessingQueuedResponse,
    ProcessingStatusResponse,
    StatusEntry,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Processing"],
)


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/process
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/process",
    response_model=ProcessingQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a document for processing",
    responses={
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Already processing or completed"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def queue_document_processing(
    document_id: UUID,
    user_id:     CurrentUserId,
    service:     DocumentsService,
) -> JSONResponse:
    task_id = await service.queue_processing(document_id, user_id)
    body = ProcessingQueuedResponse(document_id=str(document_id), task_id=task_id)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(document_id),
            "Location":      f"/api/v1/documents/{document_id}/processing-status",
        },
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel processing and delete the document",
    description=(
        "Marks the document cancelled, revokes its queued or running tasks and "
        "deletes vectors, chunks, content, status history, jobs, the stored "
        "file and the document row. Completed documents cannot be cancelled."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Document already completed"},
    },
)
async def cancel_document_processing(
    document_id: UUID,
    user_id:     CurrentUserId,
    service:     DocumentsService,
) -> CancelResponse:
    report = await service.cancel(document_id, user_id)
    return CancelResponse(
        document_id=str(document_id),
        vectors_deleted=report.vectors_deleted,
        chunks_deleted=report.chunks_deleted,
        cleanup_complete=report.complete,
        failed_steps=report.failed_steps,
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/retry-embeddings
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/retry-embeddings",
    response_model=ProcessingQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Backfill embeddings for a document that completed without them",
    responses={
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Not completed, or embeddings not skipped"},
        503: {"model": ErrorResponse, "description": "Message broker unavailable"},
    },
)
async def retry_document_embeddings(
    document_id: UUID,
    user_id:     CurrentUserId,
    service:     DocumentsService,
) -> JSONResponse:
    task_id = await service.retry_embeddings(document_id, user_id)
    body = ProcessingQueuedResponse(document_id=str(document_id), task_id=task_id)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-Document-ID": str(document_id),
            "Location":      f"/api/v1/documents/{document_id}/processing-status",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/processing-status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/processing-status",
    response_model=ProcessingStatusResponse,
    summary="Poll processing progress",
    responses={404: {"model": ErrorResponse}},
)
async def get_processing_status(
    document_id: UUID,
    user_id:     CurrentUserId,
    service:     DocumentsService,
) -> ProcessingStatusResponse:
    view = await service.processing_status(document_id, user_id)
    return ProcessingStatusResponse(
        document_id=view.document_id,
        status=view.status,
        progress=view.progress,
        error=view.error,
        page_count=view.page_count,
        history=[
            StatusEntry(
                status=e.status,
                progress=e.progress,
                message=e.message,
                error=e.error,
                created_at=e.created_at,
            )
            for e in view.entries
        ],
    )


# ---------------------------------------------------------------------------
# PATCH /documents/{document_id}/metadata
# ---------------------------------------------------------------------------

@router.patch(
    "/{document_id}/metadata",
    response_model=MetadataResponse,
    summary="Merge business metadata",
    description="Updates the document row and the payload of every indexed chunk.",
    responses={
        400: {"model": ErrorResponse, "description": "Reserved key or non-scalar value"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        503: {"model": ErrorResponse, "description": "Vector index unavailable"},
    },
)
async def update_document_metadata(
    document_id: UUID,
    patch:       MetadataPatch,
    user_id:     CurrentUserId,
    service:     DocumentsService,
) -> MetadataResponse:
    merged = await service.update_metadata(document_id, user_id, patch.metadata)
    return MetadataResponse(document_id=str(document_id), metadata=merged)
