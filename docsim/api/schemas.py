"""
API Request/Response Schemas

Covers:
  - The uniform error envelope returned on every 4xx/5xx
  - POST /documents/{id}/similar request body
  - Processing lifecycle responses (process, cancel, processing-status)
  - PATCH /documents/{id}/metadata

Similarity request keys keep their established wire names
(`stage0_topK`, `stage1_neighborsPerChunk`, ...) through field aliases.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error; may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str                 = Field(..., description="Stable machine-readable code")
    message:    str                 = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail]   = Field(default_factory=list)
    context:    dict[str, Any]      = Field(default_factory=dict, description="Structured error data")
    request_id: str | None          = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------

class SimilarityRequest(BaseModel):
    """
    Every field is optional; omitted fields use the configured defaults.

    `filters` holds metadata conditions for the index plus four directives
    that are not index filters: `page_range`, `min_score`, `threshold` and
    `topK`.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stage0_top_k:               int | None   = Field(None, alias="stage0_topK", ge=1)
    stage1_top_k:               int | None   = Field(None, alias="stage1_topK", ge=1)
    stage1_enabled:             bool | None  = None
    stage1_neighbors_per_chunk: int | None   = Field(None, alias="stage1_neighborsPerChunk", ge=1)
    stage1_batch_size:          int | None   = Field(None, alias="stage1_batchSize", ge=1)
    stage2_parallel_workers:    float | None = Field(None, alias="stage2_parallelWorkers")
    stage2_fallback_threshold:  float | None = Field(None, alias="stage2_fallbackThreshold", ge=0.0, le=1.0)
    filters:                    dict[str, Any] = Field(default_factory=dict)
    source_min_score:           float | None = Field(None, ge=0.0, le=1.0)
    target_min_score:           float | None = Field(None, ge=0.0, le=1.0)

    @field_validator("filters", mode="before")
    @classmethod
    def _filters_object(cls, value: Any) -> Any:
        return {} if value is None else value


# ---------------------------------------------------------------------------
# Processing lifecycle
# ---------------------------------------------------------------------------

class ProcessingQueuedResponse(BaseModel):
    """HTTP 202: the ingestion task is on the queue."""
    document_id: str
    status:      str        = "queued"
    task_id:     str | None = None


class CancelResponse(BaseModel):
    document_id:      str
    status:           str = "cancelled"
    vectors_deleted:  int = 0
    chunks_deleted:   int = 0
    cleanup_complete: bool = True
    failed_steps:     list[str] = Field(default_factory=list)


class StatusEntry(BaseModel):
    status:     str
    progress:   int = Field(0, ge=0, le=100)
    message:    str | None = None
    error:      str | None = None
    created_at: datetime | None = None


class ProcessingStatusResponse(BaseModel):
    """Polled by clients to track processing progress."""
    document_id: str
    status:      str
    progress:    int = Field(0, ge=0, le=100, description="Progress of the latest entry")
    error:       str | None = None
    page_count:  int | None = None
    history:     list[StatusEntry] = Field(default_factory=list, description="Newest first")


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

class MetadataPatch(BaseModel):
    metadata: dict[str, Any] = Field(..., description="Business metadata keys to merge")


class MetadataResponse(BaseModel):
    document_id: str
    metadata:    dict[str, Any]
