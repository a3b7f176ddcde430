"""Tests for the indexing (upload) stage."""

from unittest.mock import AsyncMock

import pytest

from rag_pipeline.pipelines.cache import fingerprint
from rag_pipeline.pipelines.models import StageOptions
from rag_pipeline.pipelines.stages.indexing import IndexingStage
from tests.fakes import VECTOR_DIM, FakeAIProvider, ids, make_document


@pytest.fixture
def stage(test_settings, ai_provider, search_index, document_cache):
    return IndexingStage(
        test_settings, ai_client=ai_provider, search_index=search_index, cache=document_cache
    )


def options(documents, **overrides):
    values = {"documents": documents, "batch_size": 2, "max_concurrency": 2}
    values.update(overrides)
    return StageOptions(**values)


def enriched(doc_id, content):
    return make_document(
        doc_id,
        content,
        ai_title=f"AI Title {doc_id}",
        summary="A summary.",
        keywords=["alpha"],
        category="Other",
    )


def corpus(count=5, failing=()):
    documents = []
    for number in range(1, count + 1):
        doc_id = f"d{number}"
        marker = f" {FakeAIProvider.FAIL_EMBED}" if doc_id in failing else ""
        documents.append(enriched(doc_id, f"Document {number} body.{marker}"))
    return documents


def assert_conserved(stats):
    assert (
        stats.failed_documents
        + stats.cached_documents
        + stats.new_documents
        + stats.updated_documents
        == stats.total_documents
    )


class TestIndexingStage:
    @pytest.mark.asyncio
    async def test_requires_input_documents(self, stage):
        await stage.initialize()
        with pytest.raises(ValueError):
            await stage.execute(options(None))

    @pytest.mark.asyncio
    async def test_indexes_every_document(self, stage, search_index):
        await stage.initialize()
        result = await stage.execute(options(corpus()))

        assert result.success
        assert sorted(search_index.documents) == ["d1", "d2", "d3", "d4", "d5"]
        assert search_index.batches == [["d1", "d2"], ["d3", "d4"], ["d5"]]
        assert result.stats.new_documents == 5
        assert result.stats.embedded_documents == 5
        assert result.stats.indexing_success_rate == 1.0
        assert result.index_stats.document_count == 5
        assert result.stats.index_integrity_ok is True
        assert all(len(doc.embedding) == VECTOR_DIM for doc in result.documents)

    @pytest.mark.asyncio
    async def test_failed_embeddings_use_placeholder_vectors(self, stage, search_index):
        await stage.initialize()
        result = await stage.execute(options(corpus(failing={"d2", "d4"})))

        stats = result.stats
        assert stats.total_documents == 5
        assert stats.embedded_documents == 3
        assert stats.embedding_generation_rate == pytest.approx(0.6)
        assert stats.failed_documents == 2
        assert stats.indexed_documents == 5
        assert_conserved(stats)
        assert search_index.documents["d2"].embedding == [0.0] * VECTOR_DIM
        assert "embedding service down" in search_index.documents["d4"].error
        assert sorted(e.document_id for e in result.errors) == ["d2", "d4"]

    @pytest.mark.asyncio
    async def test_degraded_documents_are_not_cached(self, stage, document_cache):
        await stage.initialize()
        await stage.execute(options(corpus(failing={"d2"})))

        assert await document_cache.get("d2") is None
        entry = await document_cache.get("d1")
        assert entry.fingerprint == fingerprint("Document 1 body.")
        assert len(entry.embedding) == VECTOR_DIM
        assert entry.ai_results.ai_title == "AI Title d1"
        assert entry.ai_results.source_fingerprint == entry.fingerprint

    @pytest.mark.asyncio
    async def test_cached_embeddings_are_reused(self, stage, ai_provider):
        await stage.initialize()
        first = await stage.execute(options(corpus()))
        calls = len(ai_provider.embed_calls)

        second = await stage.execute(options(corpus()))

        assert len(ai_provider.embed_calls) == calls
        assert second.stats.cached_documents == second.stats.total_documents == 5
        assert second.stats.embedded_documents == 0
        assert [d.embedding for d in second.documents] == [d.embedding for d in first.documents]

    @pytest.mark.asyncio
    async def test_changed_content_is_reembedded(self, stage, ai_provider):
        await stage.initialize()
        await stage.execute(options(corpus()))
        changed = corpus()
        changed[0] = enriched("d1", "Document 1 body, revised.")

        result = await stage.execute(options(changed))

        assert ai_provider.embed_calls[-1] == "Document 1 body, revised."
        assert result.stats.updated_documents == 1
        assert result.stats.cached_documents == 4

    @pytest.mark.asyncio
    async def test_force_reembeds_everything(self, stage, ai_provider):
        await stage.initialize()
        await stage.execute(options(corpus()))

        result = await stage.execute(options(corpus(), force=True))

        assert len(ai_provider.embed_calls) == 10
        assert result.stats.updated_documents == 5

    @pytest.mark.asyncio
    async def test_failed_index_batch_does_not_stop_the_run(self, stage, search_index):
        search_index.fail_batches_containing.add("d3")
        await stage.initialize()

        result = await stage.execute(options(corpus()))

        assert len(search_index.batches) == 3
        assert ids(result.documents) == ["d1", "d2", "d5"]
        assert result.stats.failed_documents == 2
        assert result.stats.indexed_documents == 3
        assert result.stats.indexing_success_rate == pytest.approx(0.6)
        assert all("Index batch failed" in e.error for e in result.errors)
        assert_conserved(result.stats)

    @pytest.mark.asyncio
    async def test_rejected_items_are_failed(self, stage, search_index, document_cache):
        search_index.reject_ids.add("d2")
        await stage.initialize()

        result = await stage.execute(options(corpus(count=3)))

        assert ids(result.documents) == ["d1", "d3"]
        assert result.stats.failed_documents == 1
        assert result.errors[0].error == "rejected"
        assert await document_cache.get("d2") is None
        assert_conserved(result.stats)

    @pytest.mark.asyncio
    async def test_empty_documents_are_skipped(self, stage, search_index):
        await stage.initialize()

        result = await stage.execute(options(corpus(count=2) + [enriched("blank", " ")]))

        assert "blank" not in search_index.documents
        assert result.stats.total_documents == 3
        assert result.stats.failed_documents == 1

    @pytest.mark.asyncio
    async def test_health_check_reports_every_collaborator(self, stage):
        report = await stage.health_check()
        assert report["status"] == "healthy"
        assert set(report["services"]) == {"ai", "index", "cache"}


class TestIndexIntegrity:
    @pytest.mark.asyncio
    async def test_stale_index_fails_integrity_check(self, stage, search_index):
        for number in range(10):
            search_index.documents[f"old{number}"] = make_document(f"old{number}")
        await stage.initialize()

        result = await stage.execute(options(corpus(count=3)))

        assert result.success
        assert result.index_stats.document_count == 13
        assert result.stats.index_integrity_ok is False

    @pytest.mark.asyncio
    async def test_small_drift_is_tolerated(self, stage, search_index):
        search_index.documents["old"] = make_document("old")
        await stage.initialize()

        result = await stage.execute(options(corpus(count=10)))

        assert result.index_stats.document_count == 11
        assert result.stats.index_integrity_ok is True

    @pytest.mark.asyncio
    async def test_unreadable_index_stats_skip_the_check(self, stage, search_index):
        search_index.get_stats = AsyncMock(side_effect=ConnectionError("redis refused"))
        await stage.initialize()

        result = await stage.execute(options(corpus(count=2)))

        assert result.success
        assert result.index_stats is None
        assert result.stats.index_integrity_ok is None
