"""
Integration Tests — /api/v1/documents/* and operations endpoints
════════════════════════════════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - X-User-ID identity resolution
  - Dependency injection chain (repository, index and services overridden)
  - Request body parsing and normalisation of similarity filters
  - DocSimError → ErrorResponse mapping and status codes
  - Header assertions (X-Document-ID, Location, X-Request-ID)

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, Pydantic schemas, SimilaritySearchService,
           DocumentService, cleanup ordering, error handlers
  🔲 Mock: PostgreSQL        (mock_repository fixture)
  🔲 Mock: Vector index      (InMemoryVectorStore)
  🔲 Mock: Celery broker     (enqueue / revoke AsyncMocks)

How to run
──────────
  pytest -m integration tests/integration/test_api.py -v
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from docsim.models.documents import ProcessingStatusEntry
from docsim.services.documents import DocumentService
from tests.conftest import TEST_USER_ID


# ─────────────────────────────────────────────────────────────────────────────
# Helpers / fixtures
# ─────────────────────────────────────────────────────────────────────────────

AXES = [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0]]


@pytest.fixture
def broker():
    return {
        "enqueue":  AsyncMock(return_value="task-123"),
        "revoke":   AsyncMock(),
        "backfill": AsyncMock(return_value="task-789"),
    }


@pytest.fixture(autouse=True)
def document_service_override(app_with_overrides, mock_repository, vector_store, resilience, broker):
    from docsim.api.dependencies import get_document_service

    app_with_overrides.dependency_overrides[get_document_service] = lambda: DocumentService(
        mock_repository, vector_store, resilience,
        enqueue=broker["enqueue"], revoke=broker["revoke"], enqueue_backfill=broker["backfill"],
    )


@pytest.fixture
def indexed_corpus(make_document, mock_repository, vector_store):
    source = make_document()
    similar = make_document(title="Amended MSA", total_characters=300)
    owner = str(TEST_USER_ID)
    vector_store.add_document(str(source.id), AXES, user_id=owner, category="legal")
    vector_store.add_document(str(similar.id), AXES, user_id=owner, category="legal")
    vector_store.add_document("unrelated", AXES, user_id=owner, category="finance")
    mock_repository.get_owned_document.return_value = source
    mock_repository.get_documents.return_value = [similar]
    return source, similar


def _similar_url(document_id) -> str:
    return f"/api/v1/documents/{document_id}/similar"


# ─────────────────────────────────────────────────────────────────────────────
# POST /documents/{id}/similar
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestSimilarEndpoint:

    async def test_filtered_search(self, async_client, user_headers, indexed_corpus):
        source, similar = indexed_corpus

        response = await async_client.post(
            _similar_url(source.id),
            json={"filters": {"category": ["legal"], "topK": "5", "user_id": "ignored"}},
            headers=user_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["document_id"] == str(source.id)
        assert body["total_results"] == 1
        result = body["results"][0]
        assert result["document"]["id"] == str(similar.id)
        assert result["document"]["title"] == "Amended MSA"
        assert result["scores"]["sourceScore"] == 1.0
        assert result["scores"]["targetScore"] == 1.0
        assert result["scores"]["lengthRatio"] == 100.0
        assert result["matchedChunkCount"] == 3
        assert result["sections"][0]["docA_pageRange"] == "1-3"
        assert body["config"]["filters"] == {"category": "legal", "topK": 5}
        assert body["config"]["page_range"] == {"use_entire_document": True}
        assert set(body["timing"]) == {"stage0_ms", "stage1_ms", "stage2_ms", "total_ms"}

    async def test_empty_body_uses_defaults(self, async_client, user_headers, indexed_corpus):
        source, _ = indexed_corpus
        response = await async_client.post(_similar_url(source.id), headers=user_headers)
        assert response.status_code == 200
        assert response.json()["config"]["stage0_topK"] == 600

    async def test_missing_identity(self, async_client, indexed_corpus):
        source, _ = indexed_corpus
        response = await async_client.post(_similar_url(source.id), json={})
        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    async def test_malformed_identity(self, async_client, indexed_corpus):
        source, _ = indexed_corpus
        response = await async_client.post(
            _similar_url(source.id), json={}, headers={"X-User-ID": "not-a-uuid"},
        )
        assert response.status_code == 401

    async def test_unknown_document(self, async_client, user_headers):
        response = await async_client.post(_similar_url(uuid.uuid4()), json={}, headers=user_headers)
        assert response.status_code == 404
        assert response.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_document_not_ready(self, async_client, user_headers, mock_repository, make_document):
        mock_repository.get_owned_document.return_value = make_document(status="processing")
        response = await async_client.post(_similar_url(uuid.uuid4()), json={}, headers=user_headers)
        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "DOCUMENT_NOT_READY"
        assert body["context"]["status"] == "processing"

    async def test_page_range_outside_document(self, async_client, user_headers, indexed_corpus, vector_store):
        source, _ = indexed_corpus
        response = await async_client.post(
            _similar_url(source.id),
            json={"filters": {"page_range": {"use_entire_document": False, "start_page": 2, "end_page": 9}}},
            headers=user_headers,
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAGE_RANGE"
        assert vector_store.search_calls == []

    async def test_invalid_body(self, async_client, user_headers, indexed_corpus):
        source, _ = indexed_corpus
        response = await async_client.post(
            _similar_url(source.id), json={"stage0_topK": 0}, headers=user_headers,
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    async def test_unsupported_filter_operator(self, async_client, user_headers, indexed_corpus):
        source, _ = indexed_corpus
        response = await async_client.post(
            _similar_url(source.id),
            json={"filters": {"year": {"$regex": "20.*"}}},
            headers=user_headers,
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_FILTER"

    async def test_index_failure(self, async_client, user_headers, indexed_corpus, vector_store):
        source, _ = indexed_corpus
        vector_store.fail_search = RuntimeError("index down")

        response = await async_client.post(_similar_url(source.id), json={}, headers=user_headers)

        assert response.status_code == 502
        body = response.json()
        assert body["error_code"] == "SEARCH_FAILED"
        assert body["context"] == {"stage": "stage0"}


# ─────────────────────────────────────────────────────────────────────────────
# Processing lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestProcessingEndpoints:

    async def test_queue_returns_202_with_headers(
        self, async_client, user_headers, mock_repository, make_document, broker,
    ):
        document = make_document(status="uploading")
        mock_repository.get_owned_document.return_value = document

        response = await async_client.post(
            f"/api/v1/documents/{document.id}/process", headers=user_headers,
        )

        assert response.status_code == 202
        assert response.json() == {
            "document_id": str(document.id), "status": "queued", "task_id": "task-123",
        }
        assert response.headers["X-Document-ID"] == str(document.id)
        assert response.headers["Location"] == f"/api/v1/documents/{document.id}/processing-status"
        assert "X-Request-ID" in response.headers
        broker["enqueue"].assert_awaited_once_with(document.id)

    async def test_queue_conflict(self, async_client, user_headers, mock_repository, make_document):
        document = make_document(status="processing")
        mock_repository.get_owned_document.return_value = document
        mock_repository.claim_for_processing.return_value = False

        response = await async_client.post(
            f"/api/v1/documents/{document.id}/process", headers=user_headers,
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_DOCUMENT_STATE"

    async def test_retry_embeddings_returns_202(
        self, async_client, user_headers, mock_repository, make_document, broker,
    ):
        document = make_document(doc_metadata={"embeddings_skipped": True})
        mock_repository.get_owned_document.return_value = document

        response = await async_client.post(
            f"/api/v1/documents/{document.id}/retry-embeddings", headers=user_headers,
        )

        assert response.status_code == 202
        assert response.json()["task_id"] == "task-789"
        broker["backfill"].assert_awaited_once_with(document.id)

    async def test_retry_embeddings_without_skip_is_conflict(
        self, async_client, user_headers, mock_repository, make_document, broker,
    ):
        document = make_document()
        mock_repository.get_owned_document.return_value = document

        response = await async_client.post(
            f"/api/v1/documents/{document.id}/retry-embeddings", headers=user_headers,
        )

        assert response.status_code == 409
        broker["backfill"].assert_not_awaited()

    async def test_cancel(self, async_client, user_headers, mock_repository, make_document, broker):
        document = make_document(status="processing")
        mock_repository.get_owned_document.return_value = document
        mock_repository.active_task_ids.return_value = ["task-1"]
        mock_repository.delete_chunks.return_value = 4

        response = await async_client.post(
            f"/api/v1/documents/{document.id}/cancel", headers=user_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["chunks_deleted"] == 4
        assert body["cleanup_complete"] is True
        broker["revoke"].assert_awaited_once_with(["task-1"])
        mock_repository.delete_document.assert_awaited_once_with(document.id)

    async def test_cancel_completed_is_conflict(self, async_client, user_headers, mock_repository, make_document):
        document = make_document(status="completed")
        mock_repository.get_owned_document.return_value = document

        response = await async_client.post(
            f"/api/v1/documents/{document.id}/cancel", headers=user_headers,
        )

        assert response.status_code == 409

    async def test_processing_status(self, async_client, user_headers, mock_repository, make_document):
        document = make_document(status="processing", page_count=12)
        mock_repository.get_owned_document.return_value = document
        mock_repository.latest_status_entries.return_value = [
            ProcessingStatusEntry(status="embedding", progress=45, message="Indexed 9/20 chunk(s)"),
        ]

        response = await async_client.get(
            f"/api/v1/documents/{document.id}/processing-status", headers=user_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        assert body["progress"] == 45
        assert body["page_count"] == 12
        assert body["history"][0]["message"] == "Indexed 9/20 chunk(s)"

    async def test_processing_status_unknown(self, async_client, user_headers):
        response = await async_client.get(
            f"/api/v1/documents/{uuid.uuid4()}/processing-status", headers=user_headers,
        )
        assert response.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# PATCH /documents/{id}/metadata
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestMetadataEndpoint:

    async def test_merges_into_vectors(
        self, async_client, user_headers, mock_repository, make_document, vector_store,
    ):
        document = make_document()
        mock_repository.get_owned_document.return_value = document
        vector_store.add_document(str(document.id), AXES[:2], category="legal")

        response = await async_client.patch(
            f"/api/v1/documents/{document.id}/metadata",
            json={"metadata": {"category": "finance", "tags": ["q3"]}},
            headers=user_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "document_id": str(document.id),
            "metadata":    {"category": "finance", "tags": ["q3"]},
        }
        assert all(r.payload["category"] == "finance" for r in vector_store.records.values())

    async def test_reserved_key_rejected(self, async_client, user_headers, mock_repository, make_document):
        document = make_document()
        mock_repository.get_owned_document.return_value = document

        response = await async_client.patch(
            f"/api/v1/documents/{document.id}/metadata",
            json={"metadata": {"user_id": "someone-else"}},
            headers=user_headers,
        )

        assert response.status_code == 400
        assert response.json()["context"] == {"keys": ["user_id"]}
        mock_repository.merge_metadata.assert_not_awaited()


# ─────────────────────────────────────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestOperationsEndpoints:

    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "docsim-api"}

    async def test_ready(self, async_client):
        with patch("docsim.main.check_db_health", AsyncMock(return_value={"status": "ok"})):
            response = await async_client.get("/ready")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert set(body["breakers"]) == {"extraction", "embeddings", "vector_index"}

    async def test_not_ready_when_database_down(self, async_client):
        with patch(
            "docsim.main.check_db_health",
            AsyncMock(return_value={"status": "error", "error": "connection refused"}),
        ):
            response = await async_client.get("/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
