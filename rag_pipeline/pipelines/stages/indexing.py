"""Indexing stage (upload): embed documents and bulk-write them to the search index."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rag_pipeline.core.concurrency import chunked, gather_bounded
from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.errors import StageNotInitializedError
from rag_pipeline.core.logging import component_logger
from rag_pipeline.pipelines.cache import DocumentCache, build_cache_entry, fingerprint
from rag_pipeline.pipelines.enrichment.ai_client import AIClient
from rag_pipeline.pipelines.index.search_index import SearchIndexClient
from rag_pipeline.pipelines.models import (
    AIResults,
    Document,
    IndexingStats,
    IndexStats,
    StageOptions,
    StageResult,
)
from rag_pipeline.pipelines.protocols import DocumentStore, EnrichmentProvider, SearchIndexBackend
from rag_pipeline.pipelines.stages.base import (
    Outcome,
    OutcomeLedger,
    close_quietly,
    collaborator_health,
    elapsed_since,
    initialize_all,
    inter_batch_pause,
    unique_by_id,
)


# Allowed relative gap between the index document count and the indexed set
INTEGRITY_TOLERANCE = 0.1


@dataclass
class _Embedded:
    document: Document
    outcome: Outcome
    error: Optional[str] = None


class IndexingStage:
    """Resolves an embedding for every document and writes the batch to the index.

    Cached embeddings are reused when they were computed from the current
    content. A failed embedding is replaced by a zero vector so the document is
    still searchable by text, and the document is counted as failed.
    """

    name = "upload"

    def __init__(
        self,
        config: Optional[Settings] = None,
        ai_client: Optional[EnrichmentProvider] = None,
        search_index: Optional[SearchIndexBackend] = None,
        cache: Optional[DocumentStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._logger = logger or component_logger(None, self.name)
        self.ai_client = ai_client or AIClient(self._settings, logger=self._logger.getChild("ai"))
        self.search_index = search_index or SearchIndexClient(
            self._settings, logger=self._logger.getChild("index")
        )
        self.cache = cache or DocumentCache(
            config=self._settings, logger=self._logger.getChild("cache")
        )
        self._initialized = False

    @property
    def _collaborators(self) -> List[Any]:
        return [self.ai_client, self.search_index, self.cache]

    async def initialize(self) -> None:
        await initialize_all(self.name, self._collaborators, self._logger)
        self._initialized = True

    async def cleanup(self) -> None:
        await close_quietly(self._collaborators, self._logger)
        self._initialized = False

    async def health_check(self) -> Dict[str, Any]:
        return await collaborator_health(
            {"ai": self.ai_client, "index": self.search_index, "cache": self.cache}
        )

    def placeholder_vector(self) -> List[float]:
        return [0.0] * self._settings.vector_dim

    async def _embed(self, document: Document, force: bool) -> _Embedded:
        entry = await self.cache.get(document.id)
        if (
            not force
            and entry is not None
            and entry.embedding
            and len(entry.embedding) == self._settings.vector_dim
            and entry.fingerprint == fingerprint(document.content)
        ):
            return _Embedded(
                document.model_copy(update={"embedding": list(entry.embedding), "cached": True}),
                Outcome.CACHED,
            )

        outcome = Outcome.UPDATED if entry is not None and entry.embedding else Outcome.NEW
        try:
            vector = await self.ai_client.embed(document.content)
        except Exception as e:
            self._logger.warning(f"Embedding failed for {document.id}, using placeholder: {e}")
            return self._degraded(document, str(e))
        return _Embedded(
            document.model_copy(update={"embedding": vector, "cached": False}), outcome
        )

    def _degraded(self, document: Document, error: str) -> _Embedded:
        return _Embedded(
            document.model_copy(
                update={"embedding": self.placeholder_vector(), "cached": False, "error": error}
            ),
            Outcome.FAILED,
            error,
        )

    async def _write_back(self, fresh: List[Document], stats: IndexingStats) -> None:
        if not fresh:
            return
        entries = []
        for document in fresh:
            content_fingerprint = fingerprint(document.content)
            ai_results = None
            if document.ai_title or document.summary or document.keywords:
                ai_results = AIResults.from_document(document, content_fingerprint)
            entries.append(
                build_cache_entry(document, ai_results=ai_results, embedding=document.embedding)
            )
        try:
            result = await self.cache.put_batch(entries)
        except Exception as e:
            self._logger.warning(f"Failed to cache {len(entries)} embeddings: {e}")
            stats.cache_write_failures += len(entries)
            return
        stats.cache_write_failures += len(result.failed)

    def _check_index_integrity(self, index_stats: IndexStats, expected: int) -> bool:
        """Compare the index document count with what this run indexed."""
        actual = index_stats.document_count
        if abs(actual - expected) > expected * INTEGRITY_TOLERANCE:
            self._logger.warning(
                f"Index integrity check failed: expected {expected} documents, "
                f"index holds {actual} (difference {abs(actual - expected)})"
            )
            return False
        self._logger.info(f"Index integrity check passed: {actual} documents")
        return True

    async def execute(self, options: StageOptions) -> StageResult:
        if not self._initialized:
            raise StageNotInitializedError(self.name)
        if options.documents is None:
            raise ValueError("The upload stage requires an input document set")

        start = time.perf_counter()
        stats = IndexingStats()
        ledger = OutcomeLedger()
        indexed: List[Document] = []

        candidates = []
        for document in unique_by_id(options.documents):
            if document.content.strip():
                candidates.append(document)
            else:
                ledger.fail(document.id, "Document has empty content")
        if len(ledger):
            self._logger.warning(f"Skipping {len(ledger)} documents with empty content")

        batches = list(chunked(candidates, options.batch_size))
        for index, batch in enumerate(batches):
            outcomes = await gather_bounded(
                batch,
                lambda doc: self._embed(doc, options.force),
                key=lambda doc: doc.id,
                limit=options.max_concurrency,
            )
            resolved: List[_Embedded] = []
            for document, outcome in zip(batch, outcomes):
                if outcome.ok:
                    resolved.append(outcome.value)
                else:
                    resolved.append(self._degraded(document, outcome.error_message))

            for item in resolved:
                if item.outcome is Outcome.FAILED:
                    ledger.fail(item.document.id, item.error or "embedding failed")
                elif item.outcome is not Outcome.CACHED:
                    stats.embedded_documents += 1

            to_index = [item.document for item in resolved]
            try:
                result = await self.search_index.bulk_upsert(to_index)
            except Exception as e:
                self._logger.error(f"Index batch {index + 1}/{len(batches)} failed: {e}")
                for document in to_index:
                    ledger.fail(document.id, f"Index batch failed: {e}")
                await inter_batch_pause(index, len(batches), self._settings.inter_batch_delay)
                continue

            failed_ids = set()
            for item in result.failed_items:
                failed_ids.add(item["id"])
                ledger.fail(item["id"], item.get("error", "index write failed"))

            fresh = []
            for item in resolved:
                if item.document.id in failed_ids:
                    continue
                indexed.append(item.document)
                stats.indexed_documents += 1
                if item.outcome is not Outcome.FAILED:
                    ledger.record(item.document.id, item.outcome)
                if item.outcome in (Outcome.NEW, Outcome.UPDATED) and item.document.error is None:
                    fresh.append(item.document)

            await self._write_back(fresh, stats)
            self._logger.info(
                f"Indexed batch {index + 1}/{len(batches)}: "
                f"{len(to_index) - len(failed_ids)}/{len(to_index)} documents"
            )
            await inter_batch_pause(index, len(batches), self._settings.inter_batch_delay)

        ledger.fill(stats)

        index_stats = None
        try:
            index_stats = await self.search_index.get_stats()
        except Exception as e:
            self._logger.warning(f"Could not read index stats: {e}")
        else:
            stats.index_integrity_ok = self._check_index_integrity(
                index_stats, stats.indexed_documents
            )

        duration = elapsed_since(start)
        self._logger.info(
            f"Indexing finished in {duration:.2f}s: {stats.indexed_documents} indexed, "
            f"{stats.embedded_documents} embedded, {stats.cached_documents} cached, "
            f"{stats.failed_documents} failed"
        )
        return StageResult(
            stage=self.name,
            success=True,
            duration=duration,
            stats=stats,
            documents=indexed,
            errors=ledger.errors,
            index_stats=index_stats,
        )
