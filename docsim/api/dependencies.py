"""
Composed FastAPI Dependencies

Route handlers import from here and never build repositories, stores or
services themselves. Process-wide singletons (ResilienceService, vector
store) are created in the app lifespan and read from `app.state`.

Caller identity comes from the X-User-ID header; authentication happens in
front of this service.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from docsim.api.schemas import ErrorResponse
from docsim.core.config import Settings, get_settings
from docsim.db.repository import DocumentRepository
from docsim.resilience.service import ResilienceService
from docsim.search.orchestrator import SimilaritySearchService
from docsim.services.documents import DocumentService
from docsim.vectorstore.base import VectorStoreBase


# ---------------------------------------------------------------------------
# 1. Caller identity
# ---------------------------------------------------------------------------

async def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> UUID:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=ErrorResponse(
                error_code="UNAUTHORIZED",
                message="X-User-ID header is required.",
            ).model_dump(),
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=ErrorResponse(
                error_code="UNAUTHORIZED",
                message="X-User-ID must be a UUID.",
            ).model_dump(),
        ) from None


# ---------------------------------------------------------------------------
# 2. Process-wide collaborators (created in the lifespan)
# ---------------------------------------------------------------------------

def get_resilience(request: Request) -> ResilienceService:
    return request.app.state.resilience


def get_vector_store(request: Request) -> VectorStoreBase:
    return request.app.state.vector_store


def get_repository() -> DocumentRepository:
    return DocumentRepository()


# ---------------------------------------------------------------------------
# 3. Services
# ---------------------------------------------------------------------------

def get_search_service(
    repository:   Annotated[DocumentRepository, Depends(get_repository)],
    vector_store: Annotated[VectorStoreBase, Depends(get_vector_store)],
    settings:     Annotated[Settings, Depends(get_settings)],
) -> SimilaritySearchService:
    return SimilaritySearchService(repository, vector_store, settings)


def get_document_service(
    repository:   Annotated[DocumentRepository, Depends(get_repository)],
    vector_store: Annotated[VectorStoreBase, Depends(get_vector_store)],
    resilience:   Annotated[ResilienceService, Depends(get_resilience)],
) -> DocumentService:
    return DocumentService(repository, vector_store, resilience)


# ---------------------------------------------------------------------------
# Convenience type aliases for route signatures
# ---------------------------------------------------------------------------

CurrentUserId   = Annotated[UUID, Depends(get_user_id)]
SearchService   = Annotated[SimilaritySearchService, Depends(get_search_service)]
DocumentsService = Annotated[DocumentService, Depends(get_document_service)]
AppSettings     = Annotated[Settings, Depends(get_settings)]
