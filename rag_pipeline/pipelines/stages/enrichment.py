"""Enrichment stage (clean): AI-derived fields, size-driven splitting and validation."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rag_pipeline.core.concurrency import chunked, gather_bounded
from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.errors import StageNotInitializedError
from rag_pipeline.core.logging import component_logger
from rag_pipeline.pipelines.cache import DocumentCache, fingerprint
from rag_pipeline.pipelines.enrichment.ai_client import AIClient
from rag_pipeline.pipelines.enrichment.splitter import ContentSplitter
from rag_pipeline.pipelines.models import (
    AIResults,
    Document,
    EnrichmentStats,
    StageOptions,
    StageResult,
    normalize_keywords,
    utc_now,
)
from rag_pipeline.pipelines.protocols import DocumentStore, EnrichmentProvider
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

UNTITLED = "Untitled Document"


@dataclass
class _Enriched:
    document: Document
    outcome: Outcome
    error: Optional[str] = None
    cache_write_failed: bool = False


class EnrichmentStage:
    """Adds AI titles, summaries, keywords and categories to documents.

    A document whose cached AI results were derived from its current content is
    not sent to the AI provider again. When enrichment fails the document is kept
    with its original title and a default category, and counted as failed.
    """

    name = "clean"

    def __init__(
        self,
        config: Optional[Settings] = None,
        ai_client: Optional[EnrichmentProvider] = None,
        cache: Optional[DocumentStore] = None,
        splitter: Optional[ContentSplitter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._logger = logger or component_logger(None, self.name)
        self.ai_client = ai_client or AIClient(self._settings, logger=self._logger.getChild("ai"))
        self.cache = cache or DocumentCache(
            config=self._settings, logger=self._logger.getChild("cache")
        )
        self.splitter = splitter or ContentSplitter(
            max_tokens=self._settings.document_split_size,
            token_ratio=self._settings.token_ratio,
        )
        self._initialized = False

    async def initialize(self) -> None:
        await initialize_all(self.name, [self.ai_client, self.cache], self._logger)
        self._initialized = True

    async def cleanup(self) -> None:
        await close_quietly([self.ai_client, self.cache], self._logger)
        self._initialized = False

    async def health_check(self) -> Dict[str, Any]:
        return await collaborator_health({"ai": self.ai_client, "cache": self.cache})

    @staticmethod
    def apply_results(document: Document, results: AIResults, cached: bool = False) -> Document:
        return document.model_copy(
            update={
                "ai_title": results.ai_title,
                "summary": results.summary,
                "keywords": list(results.keywords),
                "category": results.category,
                "cached": cached,
                "error": None,
            }
        )

    def degrade(self, document: Document, error: str) -> Document:
        """Keep a document whose enrichment failed, with neutral AI fields."""
        return document.model_copy(
            update={
                "ai_title": document.title,
                "summary": "",
                "keywords": [],
                "category": self._settings.default_category,
                "cached": False,
                "error": error,
            }
        )

    async def _enrich(self, document: Document, force: bool) -> _Enriched:
        if not document.content.strip():
            return _Enriched(document, Outcome.FAILED, "Document has no content")

        content_fingerprint = fingerprint(document.content)
        entry = await self.cache.get(document.id)
        cached_results = entry.ai_results if entry is not None else None

        if (
            not force
            and cached_results is not None
            and cached_results.source_fingerprint == content_fingerprint
        ):
            return _Enriched(
                self.apply_results(document, cached_results, cached=True), Outcome.CACHED
            )

        try:
            results = await self.ai_client.enrich(document.content, document.title)
        except Exception as e:
            self._logger.warning(f"AI enrichment failed for {document.id}: {e}")
            return _Enriched(self.degrade(document, str(e)), Outcome.FAILED, str(e))

        results = results.model_copy(update={"source_fingerprint": content_fingerprint})
        cache_write_failed = False
        try:
            await self.cache.update_derived(document.id, results)
        except Exception as e:
            self._logger.warning(f"Failed to cache AI results for {document.id}: {e}")
            cache_write_failed = True

        outcome = Outcome.UPDATED if cached_results is not None else Outcome.NEW
        return _Enriched(
            self.apply_results(document, results), outcome, cache_write_failed=cache_write_failed
        )

    def split(self, document: Document) -> List[Document]:
        """Replace an oversized document with ordered, independently indexed parts."""
        if not self.splitter.needs_split(document.content):
            return [document]

        chunks = self.splitter.split(document.content)
        total = len(chunks)
        base_title = document.ai_title or document.title
        return [
            document.model_copy(
                update={
                    "id": f"{document.id}_part{number}",
                    "title": f"{base_title} (Part {number})",
                    "content": chunk,
                    "split_part": f"{number}/{total}",
                    "original_id": document.id,
                    "metadata": document.metadata.model_copy(update={"word_count": len(chunk)}),
                }
            )
            for number, chunk in enumerate(chunks, start=1)
        ]

    @staticmethod
    def finalize(document: Document) -> Document:
        """Normalize missing fields before the document leaves the stage."""
        metadata = document.metadata.model_copy(
            update={"word_count": len(document.content), "processed_at": utc_now()}
        )
        return document.model_copy(
            update={
                "ai_title": document.ai_title or document.title or UNTITLED,
                "title": document.title or UNTITLED,
                "keywords": normalize_keywords(document.keywords),
                "metadata": metadata,
            }
        )

    async def execute(self, options: StageOptions) -> StageResult:
        if not self._initialized:
            raise StageNotInitializedError(self.name)
        if options.documents is None:
            raise ValueError("The clean stage requires an input document set")

        start = time.perf_counter()
        stats = EnrichmentStats()
        ledger = OutcomeLedger()
        enriched: Dict[str, Document] = {}

        documents = unique_by_id(options.documents)
        if len(documents) < len(options.documents):
            self._logger.warning(
                f"Ignoring {len(options.documents) - len(documents)} duplicate document IDs"
            )

        batches = list(chunked(documents, options.batch_size))
        for index, batch in enumerate(batches):
            outcomes = await gather_bounded(
                batch,
                lambda doc: self._enrich(doc, options.force),
                key=lambda doc: doc.id,
                limit=options.max_concurrency,
            )
            for document, outcome in zip(batch, outcomes):
                if outcome.ok:
                    item: _Enriched = outcome.value
                else:
                    error = outcome.error_message
                    item = _Enriched(self.degrade(document, error), Outcome.FAILED, error)

                enriched[document.id] = item.document
                if item.outcome is Outcome.FAILED:
                    ledger.fail(document.id, item.error or "enrichment failed")
                else:
                    ledger.record(document.id, item.outcome)
                if item.cache_write_failed:
                    stats.cache_write_failures += 1

            self._logger.info(
                f"Enriched batch {index + 1}/{len(batches)} ({len(batch)} documents)"
            )
            await inter_batch_pause(index, len(batches), self._settings.inter_batch_delay)

        stats.ai_processed_documents = ledger.count(Outcome.NEW) + ledger.count(Outcome.UPDATED)

        # Splitting pass
        split_documents: List[Document] = []
        for doc_id in enriched:
            parts = self.split(enriched[doc_id])
            if len(parts) > 1:
                stats.split_documents += 1
                self._logger.debug(f"Split {doc_id} into {len(parts)} parts")
            split_documents.extend(parts)

        # Validation pass
        results: List[Document] = []
        for document in split_documents:
            if not document.content.strip():
                ledger.fail(document.source_id, "Document has no content")
                continue
            results.append(self.finalize(document))

        ledger.fill(stats)
        stats.final_document_count = len(results)
        duration = elapsed_since(start)
        self._logger.info(
            f"Enrichment finished in {duration:.2f}s: {stats.ai_processed_documents} AI processed, "
            f"{stats.cached_documents} cached, {stats.failed_documents} failed, "
            f"{stats.split_documents} split, {len(results)} documents out"
        )
        return StageResult(
            stage=self.name,
            success=True,
            duration=duration,
            stats=stats,
            documents=results,
            errors=ledger.errors,
        )
