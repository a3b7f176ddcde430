"""Collection stage (clone): enumerate drive folders and fetch changed documents."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rag_pipeline.core.concurrency import chunked, gather_bounded
from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.errors import StageNotInitializedError
from rag_pipeline.core.logging import component_logger
from rag_pipeline.pipelines.cache import DocumentCache, build_cache_entry, is_modified
from rag_pipeline.pipelines.models import (
    CollectionStats,
    Document,
    DocumentRef,
    StageErrorRecord,
    StageOptions,
    StageResult,
)
from rag_pipeline.pipelines.protocols import DocumentSource, DocumentStore
from rag_pipeline.pipelines.source.extractors import extract_document
from rag_pipeline.pipelines.source.feishu import FeishuDriveClient
from rag_pipeline.pipelines.stages.base import (
    Outcome,
    OutcomeLedger,
    close_quietly,
    collaborator_health,
    elapsed_since,
    initialize_all,
    inter_batch_pause,
)


@dataclass
class _Decision:
    ref: DocumentRef
    outcome: Outcome
    document: Optional[Document] = None

    @property
    def needs_fetch(self) -> bool:
        return self.outcome is not Outcome.CACHED


class CollectionStage:
    """Turns folder tokens into Documents, fetching only what changed.

    | cached? | force | modified since cache? | action             |
    |---------|-------|-----------------------|--------------------|
    | no      | any   | -                     | fetch, new         |
    | yes     | true  | any                   | fetch, updated     |
    | yes     | false | yes                   | fetch, updated     |
    | yes     | false | no                    | reuse, cached      |
    """

    name = "clone"

    def __init__(
        self,
        config: Optional[Settings] = None,
        source: Optional[DocumentSource] = None,
        cache: Optional[DocumentStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._logger = logger or component_logger(None, self.name)
        self.source = source or FeishuDriveClient(
            self._settings, logger=self._logger.getChild("source")
        )
        self.cache = cache or DocumentCache(
            config=self._settings, logger=self._logger.getChild("cache")
        )
        self._initialized = False

    async def initialize(self) -> None:
        await initialize_all(self.name, [self.source, self.cache], self._logger)
        self._initialized = True

    async def cleanup(self) -> None:
        await close_quietly([self.source, self.cache], self._logger)
        self._initialized = False

    async def health_check(self) -> Dict[str, Any]:
        return await collaborator_health({"source": self.source, "cache": self.cache})

    async def _enumerate(
        self, folder_tokens: List[str], stats: CollectionStats, errors: List[StageErrorRecord]
    ) -> List[DocumentRef]:
        refs: Dict[str, DocumentRef] = {}
        for folder_token in folder_tokens:
            try:
                found = await self.source.list_documents_recursive(folder_token)
            except Exception as e:
                self._logger.error(f"Failed to enumerate folder {folder_token}: {e}")
                stats.folders_failed += 1
                errors.append(StageErrorRecord(document_id=f"folder:{folder_token}", error=str(e)))
                continue
            stats.folders_scanned += 1
            for ref in found:
                refs.setdefault(ref.token, ref)
        return list(refs.values())

    async def _decide(self, ref: DocumentRef, force: bool) -> _Decision:
        entry = await self.cache.get(ref.token)
        if entry is None:
            return _Decision(ref, Outcome.NEW)
        if force or is_modified(ref.modified_time, entry):
            return _Decision(ref, Outcome.UPDATED)

        snapshot = entry.to_document()
        if snapshot is None:
            self._logger.debug(f"Cache entry for {ref.token} has no usable snapshot, refetching")
            return _Decision(ref, Outcome.UPDATED)
        return _Decision(
            ref, Outcome.CACHED, snapshot.model_copy(update={"cached": True, "error": None})
        )

    async def _fetch(self, ref: DocumentRef) -> Document:
        raw = await self.source.get_content(ref.token, ref.type)
        return extract_document(ref, raw)

    async def _write_back(self, documents: List[Document], stats: CollectionStats) -> None:
        if not documents:
            return
        entries = [build_cache_entry(doc, processed_content=doc.content) for doc in documents]
        try:
            result = await self.cache.put_batch(entries)
        except Exception as e:
            self._logger.warning(f"Failed to cache {len(entries)} collected documents: {e}")
            stats.cache_write_failures += len(entries)
            return
        stats.cache_write_failures += len(result.failed)

    async def execute(self, options: StageOptions) -> StageResult:
        if not self._initialized:
            raise StageNotInitializedError(self.name)
        if not options.folder_tokens:
            raise ValueError("The clone stage requires at least one folder token")

        start = time.perf_counter()
        stats = CollectionStats()
        folder_errors: List[StageErrorRecord] = []
        ledger = OutcomeLedger()

        refs = await self._enumerate(options.folder_tokens, stats, folder_errors)
        self._logger.info(
            f"Found {len(refs)} documents in {stats.folders_scanned} folders "
            f"({stats.folders_failed} folders failed)"
        )

        # Incremental check
        decisions: Dict[str, _Decision] = {}
        batches = list(chunked(refs, options.batch_size))
        for index, batch in enumerate(batches):
            outcomes = await gather_bounded(
                batch,
                lambda ref: self._decide(ref, options.force),
                key=lambda ref: ref.token,
                limit=options.max_concurrency,
            )
            for ref, outcome in zip(batch, outcomes):
                if outcome.ok:
                    decisions[ref.token] = outcome.value
                else:
                    self._logger.warning(f"Cache check failed for {ref.token}: {outcome.error}")
                    decisions[ref.token] = _Decision(ref, Outcome.NEW)
            await inter_batch_pause(index, len(batches), self._settings.cache_check_delay)

        documents: Dict[str, Document] = {}
        for token, decision in decisions.items():
            if not decision.needs_fetch:
                documents[token] = decision.document
                ledger.record(token, Outcome.CACHED)

        to_fetch = [decision for decision in decisions.values() if decision.needs_fetch]
        self._logger.info(
            f"{len(to_fetch)} documents to fetch, {len(documents)} unchanged and cached"
        )

        # Fetch and extract
        batches = list(chunked(to_fetch, options.batch_size))
        for index, batch in enumerate(batches):
            outcomes = await gather_bounded(
                batch,
                lambda decision: self._fetch(decision.ref),
                key=lambda decision: decision.ref.token,
                limit=options.max_concurrency,
            )
            fetched = []
            for decision, outcome in zip(batch, outcomes):
                token = outcome.key
                if outcome.ok:
                    documents[token] = outcome.value
                    ledger.record(token, decision.outcome)
                    fetched.append(outcome.value)
                else:
                    self._logger.warning(f"Failed to collect document {token}: {outcome.error}")
                    ledger.fail(token, outcome.error_message)
            await self._write_back(fetched, stats)
            await inter_batch_pause(index, len(batches), self._settings.inter_batch_delay)

        ledger.fill(stats)
        result_documents = [documents[ref.token] for ref in refs if ref.token in documents]
        duration = elapsed_since(start)
        self._logger.info(
            f"Collection finished in {duration:.2f}s: {stats.new_documents} new, "
            f"{stats.updated_documents} updated, {stats.cached_documents} cached, "
            f"{stats.failed_documents} failed"
        )
        return StageResult(
            stage=self.name,
            success=True,
            duration=duration,
            stats=stats,
            documents=result_documents,
            errors=folder_errors + ledger.errors,
        )
