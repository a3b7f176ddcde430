"""Tests for the collection (clone) stage."""

import pytest

from rag_pipeline.core.errors import StageInitializationError, StageNotInitializedError
from rag_pipeline.pipelines.cache import fingerprint
from rag_pipeline.pipelines.models import StageOptions
from rag_pipeline.pipelines.stages.collection import CollectionStage
from tests.fakes import ids


@pytest.fixture
def stage(test_settings, drive_source, document_cache):
    return CollectionStage(test_settings, source=drive_source, cache=document_cache)


def options(**overrides):
    values = {"folder_tokens": ["fldRoot"], "batch_size": 2, "max_concurrency": 2}
    values.update(overrides)
    return StageOptions(**values)


def assert_conserved(stats):
    assert (
        stats.failed_documents
        + stats.cached_documents
        + stats.new_documents
        + stats.updated_documents
        == stats.total_documents
    )


class TestCollectionStage:
    @pytest.mark.asyncio
    async def test_requires_initialization(self, stage):
        with pytest.raises(StageNotInitializedError):
            await stage.execute(options())

    @pytest.mark.asyncio
    async def test_requires_folder_tokens(self, stage):
        await stage.initialize()
        with pytest.raises(ValueError):
            await stage.execute(options(folder_tokens=[]))

    @pytest.mark.asyncio
    async def test_first_run_collects_everything_as_new(self, stage, document_cache):
        await stage.initialize()
        result = await stage.execute(options())

        assert result.success
        assert ids(result.documents) == ["docA", "docB", "docC"]
        assert result.stats.new_documents == 3
        assert result.stats.folders_scanned == 1
        assert_conserved(result.stats)

        entry = await document_cache.get("docA")
        assert entry.fingerprint == fingerprint(result.documents[0].content)
        assert entry.processed_content == result.documents[0].content
        assert entry.source_modified_time == "1700000000"

    @pytest.mark.asyncio
    async def test_unchanged_documents_come_from_cache(self, stage, drive_source):
        await stage.initialize()
        first = await stage.execute(options())
        drive_source.content_calls.clear()

        second = await stage.execute(options())

        assert drive_source.content_calls == []
        assert second.stats.cached_documents == 3
        assert second.stats.cache_hit_rate == 1.0
        assert all(doc.cached for doc in second.documents)
        assert [d.content for d in second.documents] == [d.content for d in first.documents]
        assert_conserved(second.stats)

    @pytest.mark.asyncio
    async def test_modified_document_is_refetched(self, stage, drive_source):
        await stage.initialize()
        await stage.execute(options())
        drive_source.set_document("fldRoot", "docB", "Beta, revised.", "1700009999")
        drive_source.content_calls.clear()

        result = await stage.execute(options())

        assert drive_source.content_calls == ["docB"]
        assert result.stats.updated_documents == 1
        assert result.stats.cached_documents == 2
        docs = {doc.id: doc for doc in result.documents}
        assert docs["docB"].content == "Beta, revised."
        assert docs["docB"].cached is False

    @pytest.mark.asyncio
    async def test_force_refetches_everything(self, stage, drive_source):
        await stage.initialize()
        await stage.execute(options())
        drive_source.content_calls.clear()

        result = await stage.execute(options(force=True))

        assert sorted(drive_source.content_calls) == ["docA", "docB", "docC"]
        assert result.stats.updated_documents == 3
        assert result.stats.cached_documents == 0

    @pytest.mark.asyncio
    async def test_fetch_failure_is_isolated(self, stage, drive_source):
        drive_source.failing_documents.add("docB")
        await stage.initialize()

        result = await stage.execute(options())

        assert ids(result.documents) == ["docA", "docC"]
        assert result.stats.failed_documents == 1
        assert result.stats.new_documents == 2
        assert [e.document_id for e in result.errors] == ["docB"]
        assert_conserved(result.stats)

    @pytest.mark.asyncio
    async def test_failing_folder_is_recorded_and_skipped(self, stage, drive_source):
        drive_source.failing_folders.add("fldMissing")
        await stage.initialize()

        result = await stage.execute(options(folder_tokens=["fldMissing", "fldRoot"]))

        assert len(result.documents) == 3
        assert result.stats.folders_failed == 1
        assert result.stats.folders_scanned == 1
        assert result.errors[0].document_id == "folder:fldMissing"

    @pytest.mark.asyncio
    async def test_documents_listed_twice_are_collected_once(self, stage, drive_source):
        drive_source.folders["fldCopy"] = list(drive_source.folders["fldRoot"][:1])
        await stage.initialize()

        result = await stage.execute(options(folder_tokens=["fldRoot", "fldCopy"]))

        assert ids(result.documents) == ["docA", "docB", "docC"]
        assert result.stats.total_documents == 3

    @pytest.mark.asyncio
    async def test_unsupported_document_type_fails_only_that_document(
        self, stage, drive_source
    ):
        drive_source.set_document("fldRoot", "docX", "x", "1700000000")
        drive_source.folders["fldRoot"][-1] = drive_source.folders["fldRoot"][-1].model_copy(
            update={"type": "mindnote"}
        )
        await stage.initialize()

        result = await stage.execute(options())

        assert "docX" not in ids(result.documents)
        assert result.stats.failed_documents == 1
        assert "Unsupported document type" in result.errors[-1].error

    @pytest.mark.asyncio
    async def test_initialization_failure(self, test_settings, drive_source, document_cache):
        async def refuse():
            raise ConnectionError("no route")

        drive_source.initialize = refuse
        stage = CollectionStage(test_settings, source=drive_source, cache=document_cache)
        with pytest.raises(StageInitializationError):
            await stage.initialize()
        with pytest.raises(StageNotInitializedError):
            await stage.execute(options())

    @pytest.mark.asyncio
    async def test_health_check(self, stage):
        report = await stage.health_check()
        assert report["status"] == "healthy"
        assert set(report["services"]) == {"source", "cache"}
