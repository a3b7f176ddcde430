"""Protocols describing the collaborators the stages program against.

Concrete implementations live in ``source``, ``enrichment``, ``index`` and
``cache``; tests substitute in-memory fakes that satisfy the same contracts.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union, runtime_checkable

from rag_pipeline.pipelines.models import (
    AIResults,
    BatchCacheResult,
    BulkUpsertResult,
    CacheEntry,
    Document,
    DocumentRef,
    IndexStats,
)


@runtime_checkable
class Collaborator(Protocol):
    async def initialize(self) -> None: ...

    async def close(self) -> None: ...


class DocumentSource(Collaborator, Protocol):
    async def list_documents_recursive(self, folder_token: str) -> List[DocumentRef]: ...

    async def get_content(self, doc_id: str, doc_type: str) -> Dict[str, Any]: ...


class EnrichmentProvider(Collaborator, Protocol):
    async def enrich(self, content: str, title: str = "") -> AIResults: ...

    async def embed(self, text: str) -> List[float]: ...


class SearchIndexBackend(Collaborator, Protocol):
    async def bulk_upsert(self, documents: List[Document]) -> BulkUpsertResult: ...

    async def get_stats(self) -> IndexStats: ...


class DocumentStore(Collaborator, Protocol):
    async def is_cached(self, document_id: str, content: str) -> bool: ...

    async def get(self, document_id: str) -> Optional[CacheEntry]: ...

    async def put(
        self,
        document: Document,
        processed_content: Optional[str] = None,
        ai_results: Optional[AIResults] = None,
        embedding: Optional[List[float]] = None,
    ) -> CacheEntry: ...

    async def update_derived(self, document_id: str, ai_results: AIResults) -> None: ...

    async def put_batch(
        self, entries: Iterable[Union[CacheEntry, Mapping[str, Any]]]
    ) -> BatchCacheResult: ...
