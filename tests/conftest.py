"""
Test configuration and fixtures for the RAG pipeline.

Stage and orchestrator tests run against in-memory collaborators and a
DocumentCache backed by fakeredis, so no network or Redis server is needed.
"""

import fakeredis
import pytest

from rag_pipeline.core.config import Settings
from rag_pipeline.pipelines.cache import DocumentCache
from rag_pipeline.pipelines.models import DocumentRef
from tests.fakes import FakeAIProvider, FakeDriveSource, FakeSearchIndex, make_settings


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


@pytest.fixture
def document_cache(fake_redis, test_settings) -> DocumentCache:
    return DocumentCache(redis_client=fake_redis, config=test_settings)


@pytest.fixture
def drive_source() -> FakeDriveSource:
    folders = {
        "fldRoot": [
            DocumentRef(token="docA", name="Doc A", type="docx", modified_time="1700000000"),
            DocumentRef(token="docB", name="Doc B", type="docx", modified_time="1700000000"),
            DocumentRef(token="docC", name="Doc C", type="docx", modified_time="1700000000"),
        ]
    }
    contents = {
        "docA": {"content": "Alpha document. It explains the first topic."},
        "docB": {"content": "Beta document. It explains the second topic."},
        "docC": {"content": "Gamma document. It explains the third topic."},
    }
    return FakeDriveSource(folders, contents)


@pytest.fixture
def ai_provider() -> FakeAIProvider:
    return FakeAIProvider()


@pytest.fixture
def search_index() -> FakeSearchIndex:
    return FakeSearchIndex()
