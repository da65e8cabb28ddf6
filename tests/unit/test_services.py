"""
Unit Tests — DocumentService, request normalisation & SimilaritySearchService
═══════════════════════════════════════════════════════════════════════════════

DocumentService runs with injected enqueue/revoke AsyncMocks (no broker).
The search orchestrator runs all three stages against InMemoryVectorStore;
the repository mock supplies the source and target document rows.

Coverage targets:
  ✅ queue / cancel / retry-embeddings / processing-status / metadata lifecycle rules
  ✅ Metadata patch validation (reserved keys, operators, nested values)
  ✅ topK, filter-value and directive normalisation for the search route
  ✅ Ownership and readiness checks before any index query
  ✅ Three-stage search: owner scoping, ordering, thresholds, page ranges
  ✅ Stage 1 disabled: source and duplicates still excluded
  ✅ Stage failures surface as SearchError(stage)
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from docsim.api.schemas import SimilarityRequest
from docsim.api.v1.search import (
    build_search_options,
    normalize_filter_value,
    normalize_top_k,
    split_filters,
)
from docsim.core.exceptions import (
    DocumentNotFoundError,
    DocumentNotReadyError,
    DocumentStateError,
    PageRangeError,
    SearchError,
    ValidationError,
)
from docsim.models.documents import ProcessingStatusEntry
from docsim.search.orchestrator import SimilaritySearchService
from docsim.search.types import SearchOptions
from docsim.services.documents import DocumentService, validate_metadata_patch
from docsim.vectorstore.filters import Eq, In
from tests.conftest import TEST_USER_ID

OTHER_USER_ID = uuid.UUID("22222222-2222-4222-8222-222222222222")


# ─────────────────────────────────────────────────────────────────────────────
# DocumentService
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def enqueue():
    return AsyncMock(return_value="task-123")


@pytest.fixture
def revoke():
    return AsyncMock(return_value=None)


@pytest.fixture
def enqueue_backfill():
    return AsyncMock(return_value="task-456")


@pytest.fixture
def document_service(mock_repository, vector_store, resilience, enqueue, revoke, enqueue_backfill):
    return DocumentService(
        mock_repository, vector_store, resilience,
        enqueue=enqueue, revoke=revoke, enqueue_backfill=enqueue_backfill,
    )


@pytest.mark.unit
class TestQueueProcessing:

    async def test_queues_and_records_job(self, document_service, mock_repository, make_document, enqueue):
        document = make_document(status="uploading")
        mock_repository.get_owned_document.return_value = document

        task_id = await document_service.queue_processing(document.id, TEST_USER_ID)

        assert task_id == "task-123"
        enqueue.assert_awaited_once_with(document.id)
        mock_repository.create_job.assert_awaited_once_with(document.id, "task-123")
        mock_repository.add_status_entry.assert_awaited_once_with(
            document.id, "queued", 0, "Queued for processing",
        )

    async def test_claim_refused_is_state_error(self, document_service, mock_repository, make_document, enqueue):
        document = make_document(status="processing")
        mock_repository.get_owned_document.return_value = document
        mock_repository.claim_for_processing.return_value = False

        with pytest.raises(DocumentStateError) as exc_info:
            await document_service.queue_processing(document.id, TEST_USER_ID)

        assert exc_info.value.details == {"status": "processing"}
        enqueue.assert_not_awaited()

    async def test_other_users_document_is_not_found(self, document_service):
        with pytest.raises(DocumentNotFoundError):
            await document_service.queue_processing(uuid.uuid4(), OTHER_USER_ID)


@pytest.mark.unit
class TestCancel:

    async def test_completed_document_cannot_be_cancelled(self, document_service, mock_repository, make_document):
        document = make_document(status="completed")
        mock_repository.get_owned_document.return_value = document

        with pytest.raises(DocumentStateError):
            await document_service.cancel(document.id, TEST_USER_ID)
        mock_repository.set_status.assert_not_awaited()

    async def test_cancel_revokes_and_purges(
        self, document_service, mock_repository, make_document, vector_store, revoke,
    ):
        document = make_document(status="processing")
        mock_repository.get_owned_document.return_value = document
        mock_repository.active_task_ids.return_value = ["task-1", "task-2"]
        mock_repository.delete_chunks.return_value = 2
        vector_store.add_document(str(document.id), [[1.0, 0.0], [0.0, 1.0]])

        report = await document_service.cancel(document.id, TEST_USER_ID)

        mock_repository.set_status.assert_awaited_once_with(document.id, "cancelled")
        revoke.assert_awaited_once_with(["task-1", "task-2"])
        mock_repository.update_jobs.assert_awaited_once_with(
            document.id, "cancelled", error="cancelled by user",
        )
        mock_repository.delete_document.assert_awaited_once_with(document.id)
        assert vector_store.records == {}
        assert report.chunks_deleted == 2
        assert report.complete is True

    async def test_cancel_without_tasks_skips_revoke(
        self, document_service, mock_repository, make_document, revoke,
    ):
        document = make_document(status="queued")
        mock_repository.get_owned_document.return_value = document

        await document_service.cancel(document.id, TEST_USER_ID)

        revoke.assert_not_awaited()


@pytest.mark.unit
class TestRetryEmbeddings:

    async def test_flagged_document_is_queued(
        self, document_service, mock_repository, make_document, enqueue_backfill,
    ):
        document = make_document(doc_metadata={"embeddings_skipped": True})
        mock_repository.get_owned_document.return_value = document

        task_id = await document_service.retry_embeddings(document.id, TEST_USER_ID)

        assert task_id == "task-456"
        enqueue_backfill.assert_awaited_once_with(document.id)
        mock_repository.add_status_entry.assert_awaited_once_with(
            document.id, "embedding", 35, "Queued for embedding backfill",
        )

    @pytest.mark.parametrize("status, metadata", [
        ("completed", {"category": "legal"}),
        ("error", {"embeddings_skipped": True}),
    ])
    async def test_only_skipped_completed_documents(
        self, document_service, mock_repository, make_document, enqueue_backfill, status, metadata,
    ):
        document = make_document(status=status, doc_metadata=metadata)
        mock_repository.get_owned_document.return_value = document

        with pytest.raises(DocumentStateError) as exc_info:
            await document_service.retry_embeddings(document.id, TEST_USER_ID)

        assert exc_info.value.details == {"status": status}
        enqueue_backfill.assert_not_awaited()


@pytest.mark.unit
class TestProcessingStatus:

    async def test_latest_entry_drives_progress(self, document_service, mock_repository, make_document):
        document = make_document(status="processing", page_count=None)
        mock_repository.get_owned_document.return_value = document
        mock_repository.latest_status_entries.return_value = [
            ProcessingStatusEntry(status="embedding", progress=62, message="Indexed 5/8 chunk(s)"),
            ProcessingStatusEntry(status="extracted", progress=30, message="Extracted 3 page(s)"),
        ]

        view = await document_service.processing_status(document.id, TEST_USER_ID)

        assert view.status == "processing"
        assert view.progress == 62
        assert [e.status for e in view.entries] == ["embedding", "extracted"]
        mock_repository.latest_status_entries.assert_awaited_once_with(document.id, 20)

    async def test_no_entries_means_zero_progress(self, document_service, mock_repository, make_document):
        mock_repository.get_owned_document.return_value = make_document(status="uploading")
        view = await document_service.processing_status(uuid.uuid4(), TEST_USER_ID)
        assert view.progress == 0


@pytest.mark.unit
class TestMetadata:

    @pytest.mark.parametrize("patch", [
        {},
        {"document_id": "x"},
        {"embeddings_skipped": False},
        {"$set": 1},
        {"owner": {"name": "a"}},
        {"tags": ["a", {"b": 1}]},
    ])
    def test_invalid_patches(self, patch):
        with pytest.raises(ValidationError):
            validate_metadata_patch(patch)

    def test_reserved_keys_listed_in_details(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_metadata_patch({"text": "x", "chunk_index": 1, "category": "ok"})
        assert exc_info.value.details == {"keys": ["chunk_index", "text"]}

    def test_valid_patch(self):
        patch = {"category": "legal", "tags": ["a", "b"], "year": 2024, "archived": None}
        assert validate_metadata_patch(patch) == patch

    async def test_updates_row_and_every_vector(
        self, document_service, mock_repository, make_document, vector_store,
    ):
        document = make_document()
        mock_repository.get_owned_document.return_value = document
        mock_repository.merge_metadata.side_effect = None
        mock_repository.merge_metadata.return_value = {"category": "finance", "region": "eu"}
        vector_store.add_document(str(document.id), [[1.0, 0.0], [0.0, 1.0]], category="legal")
        vector_store.add_document("other", [[1.0, 0.0]], category="legal")

        merged = await document_service.update_metadata(
            document.id, TEST_USER_ID, {"category": "finance"},
        )

        assert merged == {"category": "finance", "region": "eu"}
        categories = {
            r.payload["document_id"]: r.payload["category"] for r in vector_store.records.values()
        }
        assert categories == {str(document.id): "finance", "other": "legal"}


# ─────────────────────────────────────────────────────────────────────────────
# Search request normalisation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSearchRequestNormalisation:

    @pytest.mark.parametrize("value,expected", [
        (5, 5), (5.9, 5), ("7", 7), (" 8 ", 8), (500, 100), ("500", 100),
        (0, None), (-1, None), ("abc", None), (True, None), (None, None),
        (float("inf"), None),
    ])
    def test_top_k(self, value, expected):
        assert normalize_top_k(value) == expected

    @pytest.mark.parametrize("value,expected", [
        ("  legal ", "legal"), ("   ", None), ([" a ", ""], "a"),
        (["a", "b"], ["a", "b"]), ([], None), (2024, 2024), (None, None),
    ])
    def test_filter_values(self, value, expected):
        assert normalize_filter_value(value) == expected

    def test_split_filters(self):
        metadata, directives = split_filters({
            "category":   " legal ",
            "user_id":    "someone-else",
            "empty":      "",
            "topK":       3,
            "page_range": {"use_entire_document": True},
        })
        assert metadata == {"category": "legal"}
        assert directives == {"topK": 3, "page_range": {"use_entire_document": True}}

    def test_build_options(self, test_settings):
        request = SimilarityRequest.model_validate({
            "stage0_topK": 50,
            "stage1_enabled": False,
            "stage2_parallelWorkers": 2.7,
            "filters": {
                "region":     ["eu", "us"],
                "category":   ["legal"],
                "topK":       "3",
                "min_score":  0.5,
                "page_range": {"use_entire_document": False, "start_page": "2", "end_page": 3},
            },
        })

        options, applied = build_search_options(request, test_settings)

        assert options.stage0_top_k == 50
        assert options.stage1_enabled is False
        assert options.stage1_top_k == test_settings.similarity_stage1_top_k
        assert options.stage2_parallel_workers == 2
        assert options.top_k == 3
        assert options.source_page_range == (2, 3)
        assert options.filters == [In("region", ("eu", "us")), Eq("category", "legal")]
        assert applied == {
            "region":     ["eu", "us"],
            "category":   "legal",
            "page_range": {"use_entire_document": False, "start_page": 2, "end_page": 3},
            "min_score":  0.5,
            "topK":       3,
        }

    def test_workers_never_below_one(self, test_settings):
        request = SimilarityRequest.model_validate({"stage2_parallelWorkers": 0.2})
        options, _ = build_search_options(request, test_settings)
        assert options.stage2_parallel_workers == 1

    def test_page_range_ignored_for_whole_document(self, test_settings):
        request = SimilarityRequest.model_validate({
            "filters": {"page_range": {"use_entire_document": True, "start_page": 2, "end_page": 3}},
        })
        options, _ = build_search_options(request, test_settings)
        assert options.source_page_range is None


# ─────────────────────────────────────────────────────────────────────────────
# SimilaritySearchService
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def corpus(make_document, mock_repository, vector_store):
    """
    source  3 chunks on pages 1-3 (axes x, y, z)
    doc_b   covers x, y          → sourceScore 2/3, targetScore 1
    doc_c   covers x, y, z       → sourceScore 1,   targetScore 1
    foreign identical to source but owned by another user
    """
    source = make_document(status="completed", page_count=3, total_characters=300)
    doc_b = make_document(title="B", total_characters=200)
    doc_c = make_document(title="C", total_characters=600)
    owner = str(TEST_USER_ID)

    axes = [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0]]
    vector_store.add_document(str(source.id), axes, user_id=owner)
    vector_store.add_document(str(doc_b.id), axes[:2], user_id=owner)
    vector_store.add_document(str(doc_c.id), axes, user_id=owner)
    vector_store.add_document("foreign", axes, user_id=str(OTHER_USER_ID))

    mock_repository.get_owned_document.return_value = source
    mock_repository.get_documents.return_value = [doc_b, doc_c]
    return {"source": source, "doc_b": doc_b, "doc_c": doc_c}


@pytest.fixture
def search_service(mock_repository, vector_store, test_settings):
    return SimilaritySearchService(mock_repository, vector_store, test_settings)


def _options(test_settings, **overrides) -> SearchOptions:
    return SearchOptions.from_settings(test_settings, **overrides)


@pytest.mark.unit
class TestSearchValidation:

    async def test_unknown_document(self, search_service, vector_store):
        with pytest.raises(DocumentNotFoundError):
            await search_service.search(uuid.uuid4(), TEST_USER_ID)
        assert vector_store.search_calls == []

    async def test_document_still_processing(self, search_service, mock_repository, make_document):
        mock_repository.get_owned_document.return_value = make_document(status="processing")
        with pytest.raises(DocumentNotReadyError) as exc_info:
            await search_service.search(uuid.uuid4(), TEST_USER_ID)
        assert exc_info.value.details["status"] == "processing"

    async def test_completed_without_centroid(self, search_service, mock_repository, make_document):
        mock_repository.get_owned_document.return_value = make_document(
            centroid=None, effective_chunk_count=0,
        )
        with pytest.raises(DocumentNotReadyError) as exc_info:
            await search_service.search(uuid.uuid4(), TEST_USER_ID)
        assert exc_info.value.details["errors"] == [
            "missing centroid", "missing effective_chunk_count",
        ]

    async def test_page_range_beyond_document(self, search_service, corpus, vector_store, test_settings):
        options = _options(test_settings, source_page_range=(2, 9))
        with pytest.raises(PageRangeError):
            await search_service.search(corpus["source"].id, TEST_USER_ID, options)
        assert vector_store.search_calls == []


@pytest.mark.unit
class TestSearchExecution:

    async def test_ranked_results_with_scores(self, search_service, corpus, test_settings):
        response = await search_service.search(
            corpus["source"].id, TEST_USER_ID, _options(test_settings),
        )

        ids = [r.document.id for r in response.results]
        assert ids == [str(corpus["doc_c"].id), str(corpus["doc_b"].id)]
        top, second = response.results
        assert top.scores.source_score == 1.0
        assert second.scores.source_score == pytest.approx(2 / 3)
        assert second.scores.target_score == 1.0
        assert top.scores.length_ratio == pytest.approx(50.0)
        assert second.document.title == "B"
        assert response.stages == {
            "stage0_candidates": 2, "stage1_candidates": 2, "final_results": 2,
        }
        assert response.config["page_range"] == {"use_entire_document": True}

    async def test_owner_filter_cannot_be_overridden(self, search_service, corpus, vector_store, test_settings):
        options = _options(test_settings, filters=[Eq("user_id", str(OTHER_USER_ID))])

        response = await search_service.search(corpus["source"].id, TEST_USER_ID, options)

        assert "foreign" not in [r.document.id for r in response.results]
        first_must = vector_store.search_calls[0]["clauses"].must
        assert Eq("user_id", str(TEST_USER_ID)) in first_must
        assert Eq("user_id", str(OTHER_USER_ID)) not in first_must

    async def test_min_scores_and_top_k(self, search_service, corpus, test_settings):
        strict = await search_service.search(
            corpus["source"].id, TEST_USER_ID, _options(test_settings, source_min_score=0.9),
        )
        assert [r.document.id for r in strict.results] == [str(corpus["doc_c"].id)]

        limited = await search_service.search(
            corpus["source"].id, TEST_USER_ID, _options(test_settings, top_k=1),
        )
        assert len(limited.results) == 1
        assert limited.stages["final_results"] == 2

    async def test_page_range_restricts_source_chunks(self, search_service, corpus, test_settings):
        options = _options(test_settings, source_page_range=(1, 2), stage1_enabled=False)

        response = await search_service.search(corpus["source"].id, TEST_USER_ID, options)

        assert [r.scores.source_score for r in response.results] == [1.0, 1.0]
        assert response.config["page_range"] == {
            "use_entire_document": False, "start_page": 1, "end_page": 2,
        }
        assert response.timing["stage1_ms"] == 0

    async def test_without_stage1_source_and_duplicates_are_excluded(
        self, search_service, corpus, test_settings,
    ):
        options = _options(test_settings, stage1_enabled=False)

        response = await search_service.search(corpus["source"].id, TEST_USER_ID, options)

        ids = [r.document.id for r in response.results]
        assert str(corpus["source"].id) not in ids
        assert "foreign" not in ids
        assert len(ids) == len(set(ids))
        assert ids == [str(corpus["doc_c"].id), str(corpus["doc_b"].id)]
        assert response.timing["stage1_ms"] == 0

    async def test_no_candidates_returns_empty(self, search_service, corpus, test_settings, mock_repository):
        options = _options(test_settings, filters=[Eq("category", "does-not-exist")])

        response = await search_service.search(corpus["source"].id, TEST_USER_ID, options)

        assert response.results == []
        assert response.stages["stage0_candidates"] == 0
        mock_repository.get_documents.assert_not_awaited()

    async def test_index_failure_is_search_error(self, search_service, corpus, vector_store, test_settings):
        vector_store.fail_search = RuntimeError("index unavailable")

        with pytest.raises(SearchError) as exc_info:
            await search_service.search(corpus["source"].id, TEST_USER_ID, _options(test_settings))

        assert exc_info.value.stage == "stage0"
