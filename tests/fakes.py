"""In-memory collaborators and factories shared by the unit tests."""

from typing import Any, Dict, Iterable, List, Optional

from rag_pipeline.core.config import Settings
from rag_pipeline.core.errors import SearchIndexError, SourceAPIError
from rag_pipeline.pipelines.models import (
    AIResults,
    BulkUpsertResult,
    Document,
    DocumentRef,
    IndexStats,
)

VECTOR_DIM = 4


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "source_app_id": "cli_test",
        "source_app_secret": "secret",
        "folder_tokens": ["fldRoot"],
        "openai_api_key": "sk-test",
        "redis_url": "redis://localhost:6379/15",
        "vector_dim": VECTOR_DIM,
        "batch_size": 2,
        "max_concurrent_ai_requests": 2,
        "inter_batch_delay": 0.0,
        "cache_check_delay": 0.0,
        "llm_max_retries": 2,
        "llm_initial_delay": 0.0,
        "document_split_size": 1000,
        "log_file": None,
    }
    values.update(overrides)
    return Settings(**values)


def make_document(doc_id: str, content: str = "Some content.", **fields: Any) -> Document:
    title = fields.pop("title", f"Title {doc_id}")
    return Document(id=doc_id, title=title, content=content, **fields)


class FakeDriveSource:
    """In-memory drive: folder token -> refs, document token -> raw payload."""

    def __init__(self, folders: Dict[str, List[DocumentRef]], contents: Dict[str, Dict[str, Any]]):
        self.folders = folders
        self.contents = contents
        self.failing_folders: set[str] = set()
        self.failing_documents: set[str] = set()
        self.content_calls: List[str] = []
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.closed = True

    async def list_documents_recursive(self, folder_token: str) -> List[DocumentRef]:
        if folder_token in self.failing_folders or folder_token not in self.folders:
            raise SourceAPIError(f"Folder {folder_token} not found", code=1061002)
        return list(self.folders[folder_token])

    async def get_content(self, doc_id: str, doc_type: str) -> Dict[str, Any]:
        self.content_calls.append(doc_id)
        if doc_id in self.failing_documents:
            raise SourceAPIError(f"Content for {doc_id} unavailable", code=1770002)
        return self.contents[doc_id]

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}

    def set_document(self, folder: str, token: str, text: str, modified_time: str) -> None:
        refs = [ref for ref in self.folders.setdefault(folder, []) if ref.token != token]
        refs.append(
            DocumentRef(token=token, name=f"Doc {token}", type="docx", modified_time=modified_time)
        )
        self.folders[folder] = refs
        self.contents[token] = {"content": text}


class FakeAIProvider:
    """Deterministic enrichment; content containing a marker makes a call fail."""

    FAIL_ENRICH = "[fail-enrich]"
    FAIL_EMBED = "[fail-embed]"

    def __init__(self, dim: int = VECTOR_DIM):
        self.dim = dim
        self.enrich_calls: List[str] = []
        self.embed_calls: List[str] = []

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def enrich(self, content: str, title: str = "") -> AIResults:
        self.enrich_calls.append(content)
        if self.FAIL_ENRICH in content:
            raise RuntimeError("model unavailable")
        return AIResults(
            ai_title=f"AI {title}",
            summary=f"Summary of {title}",
            keywords=["alpha", "beta"],
            category="Technical Documentation",
        )

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        if self.FAIL_EMBED in text:
            raise RuntimeError("embedding service down")
        return [float(len(text) % 7), 0.5, 0.25, 1.0][: self.dim]

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}


class FakeSearchIndex:
    """Keeps indexed documents in a dict; whole batches can be made to fail."""

    def __init__(self):
        self.documents: Dict[str, Document] = {}
        self.fail_batches_containing: set[str] = set()
        self.reject_ids: set[str] = set()
        self.batches: List[List[str]] = []

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def bulk_upsert(self, documents: Iterable[Document]) -> BulkUpsertResult:
        documents = list(documents)
        ids = [doc.id for doc in documents]
        self.batches.append(ids)
        if self.fail_batches_containing & set(ids):
            raise SearchIndexError("index unavailable")
        failed = [
            {"id": doc.id, "error": "rejected"} for doc in documents if doc.id in self.reject_ids
        ]
        for doc in documents:
            if doc.id not in self.reject_ids:
                self.documents[doc.id] = doc
        return BulkUpsertResult(success_count=len(documents) - len(failed), failed_items=failed)

    async def get_stats(self) -> IndexStats:
        return IndexStats(document_count=len(self.documents), index_name="test_index")

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}


def ids(documents: Optional[Iterable[Document]]) -> List[str]:
    return [doc.id for doc in documents or []]
