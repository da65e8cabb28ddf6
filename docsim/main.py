"""
docsim API
══════════

Document processing control and multi-stage similarity search.

  /api/v1/documents/{id}/similar              three-stage similarity search
  /api/v1/documents/{id}/process|cancel       ingestion lifecycle
  /api/v1/documents/{id}/retry-embeddings     embedding backfill
  /api/v1/documents/{id}/processing-status    progress polling
  /api/v1/documents/{id}/metadata             business metadata merge
  /health, /ready                             liveness and readiness

Process-wide collaborators
──────────────────────────
The lifespan builds one ResilienceService (breaker state) and one vector
store client and parks them on app.state; dependencies read them from
there. Caller identity is the X-User-ID header, set by the gateway.

Errors
──────
Every DocSimError becomes an ErrorResponse body. ERROR_STATUS is checked in
order, so subclasses must precede their bases:

  ValidationError (PageRangeError, FilterError)   400
  DocumentNotFoundError                           404
  DocumentNotReadyError, DocumentStateError       409
  SearchError                                     502
  CircuitOpenError, RetryExhaustedError           503
  any other DocSimError / unhandled exception     500
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docsim.api.schemas import ErrorDetail, ErrorResponse
from docsim.api.v1.documents import router as documents_router
from docsim.api.v1.search import router as search_router
from docsim.core.config import settings
from docsim.core.exceptions import (
    CircuitOpenError,
    DocSimError,
    DocumentNotFoundError,
    DocumentNotReadyError,
    DocumentStateError,
    RetryExhaustedError,
    SearchError,
    ValidationError,
)
from docsim.core.logging import configure_logging
from docsim.db.session import check_db_health, dispose_engine

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

ERROR_STATUS: tuple[tuple[type[DocSimError], int], ...] = (
    (ValidationError,       status.HTTP_400_BAD_REQUEST),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND),
    (DocumentNotReadyError, status.HTTP_409_CONFLICT),
    (DocumentStateError,    status.HTTP_409_CONFLICT),
    (SearchError,           status.HTTP_502_BAD_GATEWAY),
    (CircuitOpenError,      status.HTTP_503_SERVICE_UNAVAILABLE),
    (RetryExhaustedError,   status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: DocSimError) -> int:
    return next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER) or "-"


def error_json(request: Request, status_code: int, body: ErrorResponse) -> JSONResponse:
    body.request_id = body.request_id or _request_id(request)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={REQUEST_ID_HEADER: body.request_id},
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    from docsim.resilience.service import ResilienceService
    from docsim.vectorstore.factory import create_vector_store

    configure_logging()
    logger.info(
        "API starting | env=%s vector_store=%s embedding_model=%s",
        settings.app_env, settings.vector_store_backend, settings.embedding_model,
    )

    database = await check_db_health()
    if database["status"] != "ok":
        logger.critical("API cannot start | database=%s", database)
        raise RuntimeError(f"Database unavailable: {database.get('detail')}")

    app.state.resilience = ResilienceService()
    app.state.vector_store = create_vector_store(settings)
    await app.state.vector_store.ensure_collection()
    logger.info("API ready | database_ms=%s", database.get("latency_ms"))

    try:
        yield
    finally:
        logger.info("API stopping")
        await app.state.vector_store.close()
        await dispose_engine()


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(DocSimError)
    async def on_docsim_error(request: Request, exc: DocSimError):
        code = status_for(exc)
        log = logger.error if code >= 500 else logger.info
        log("Request rejected | path=%s status=%d error_code=%s", request.url.path, code, exc.error_code)
        return error_json(request, code, ErrorResponse(
            error_code=exc.error_code, message=exc.message, context=exc.details,
        ))

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        # Dependencies raise HTTPException with a ready ErrorResponse dict as detail
        if isinstance(exc.detail, dict) and "error_code" in exc.detail:
            body = ErrorResponse.model_validate(exc.detail)
        else:
            body = ErrorResponse(error_code="HTTP_ERROR", message=str(exc.detail))
        return error_json(request, exc.status_code, body)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(part) for part in err["loc"] if part != "body") or None,
                message=err["msg"],
                code=err.get("type", "invalid").upper(),
            )
            for err in exc.errors()
        ]
        return error_json(request, status.HTTP_400_BAD_REQUEST, ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request body or parameters are invalid.",
            details=details,
        ))

    @app.exception_handler(Exception)
    async def on_unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, _request_id(request))
        return error_json(request, status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorResponse(
            error_code="INTERNAL_ERROR", message="An unexpected error occurred.",
        ))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="docsim",
        summary="PDF ingestion and document-to-document similarity search",
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    # Last added runs first: request id → CORS → gzip → routes
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER, "X-User-ID"],
        expose_headers=[REQUEST_ID_HEADER, "X-Document-ID", "Location"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        started = time.perf_counter()
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request.state.request_id)
        logger.info(
            "HTTP %s %s | status=%d ms=%.1f user=%s request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
            request.headers.get("X-User-ID", "-"), request.state.request_id,
        )
        return response

    register_exception_handlers(app)

    for router in (documents_router, search_router):
        app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["Operations"], summary="Liveness check")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "docsim-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness: database plus breaker state")
    async def ready(request: Request) -> JSONResponse:
        database = await check_db_health()
        resilience = getattr(request.app.state, "resilience", None)
        body: dict[str, Any] = {
            "status":   "ready" if database["status"] == "ok" else "not_ready",
            "database": database,
            "breakers": resilience.health() if resilience is not None else {},
        }
        code = status.HTTP_200_OK if body["status"] == "ready" else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=body)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "docsim.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
