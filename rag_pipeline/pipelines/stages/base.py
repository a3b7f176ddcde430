"""Contract shared by the collection, enrichment and indexing stages.

Stages implement the ``Stage`` protocol rather than extending a base class; the
helpers here are composed into each stage.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from rag_pipeline.core.errors import StageInitializationError
from rag_pipeline.pipelines.models import (
    Document,
    StageErrorRecord,
    StageOptions,
    StageResult,
    StageStats,
)
from rag_pipeline.pipelines.protocols import Collaborator


@runtime_checkable
class Stage(Protocol):
    name: str

    async def initialize(self) -> None: ...

    async def execute(self, options: StageOptions) -> StageResult: ...

    async def cleanup(self) -> None: ...


@runtime_checkable
class SupportsHealthCheck(Protocol):
    async def health_check(self) -> Dict[str, Any]: ...


class Outcome(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    CACHED = "cached"
    FAILED = "failed"


class OutcomeLedger:
    """Per-document outcome of a stage run, keyed by document ID.

    A failure is final: later successes for the same ID do not clear it. Counting
    from the ledger keeps ``failed + cached + new + updated == total``.
    """

    def __init__(self):
        self._outcomes: Dict[str, Outcome] = {}
        self._errors: Dict[str, str] = {}

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._outcomes

    def __len__(self) -> int:
        return len(self._outcomes)

    def record(self, document_id: str, outcome: Outcome) -> None:
        if outcome is Outcome.FAILED:
            raise ValueError("use fail() to record failures")
        if self._outcomes.get(document_id) is Outcome.FAILED:
            return
        self._outcomes[document_id] = outcome

    def fail(self, document_id: str, error: str) -> None:
        self._outcomes[document_id] = Outcome.FAILED
        self._errors.setdefault(document_id, error)

    def outcome(self, document_id: str) -> Optional[Outcome]:
        return self._outcomes.get(document_id)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for value in self._outcomes.values() if value is outcome)

    @property
    def errors(self) -> List[StageErrorRecord]:
        return [StageErrorRecord(document_id=k, error=v) for k, v in self._errors.items()]

    def fill(self, stats: StageStats) -> StageStats:
        """Copy the ledger's counts onto ``stats``."""
        stats.total_documents = len(self._outcomes)
        stats.new_documents = self.count(Outcome.NEW)
        stats.updated_documents = self.count(Outcome.UPDATED)
        stats.cached_documents = self.count(Outcome.CACHED)
        stats.failed_documents = self.count(Outcome.FAILED)
        return stats


async def initialize_all(
    stage: str, collaborators: Iterable[Collaborator], logger: logging.Logger
) -> None:
    """Initialize collaborators in parallel; all of them or none.

    On any failure the ones that came up are closed again and the first error is
    raised as StageInitializationError.
    """
    collaborators = list(collaborators)
    results = await asyncio.gather(
        *(collaborator.initialize() for collaborator in collaborators), return_exceptions=True
    )
    errors = [result for result in results if isinstance(result, BaseException)]
    if errors:
        logger.error(f"Failed to initialize stage {stage}: {errors[0]}")
        await close_quietly(collaborators, logger)
        raise StageInitializationError(stage, errors[0]) from errors[0]
    logger.info(f"Stage {stage} initialized")


async def close_quietly(collaborators: Iterable[Collaborator], logger: logging.Logger) -> None:
    """Close collaborators in parallel, logging failures instead of raising them."""
    collaborators = list(collaborators)
    results = await asyncio.gather(
        *(collaborator.close() for collaborator in collaborators), return_exceptions=True
    )
    for collaborator, result in zip(collaborators, results):
        if isinstance(result, BaseException):
            logger.warning(f"Failed to close {type(collaborator).__name__}: {result}")


async def collaborator_health(collaborators: Dict[str, Any]) -> Dict[str, Any]:
    """Health of every collaborator that reports one, plus the worst status."""
    checks = {
        name: collaborator
        for name, collaborator in collaborators.items()
        if isinstance(collaborator, SupportsHealthCheck)
    }
    results = await asyncio.gather(
        *(collaborator.health_check() for collaborator in checks.values()), return_exceptions=True
    )

    report: Dict[str, Any] = {}
    for name, result in zip(checks, results):
        if isinstance(result, BaseException):
            report[name] = {"status": "unhealthy", "error": str(result)}
        else:
            report[name] = result
    return {"status": worst_status(r.get("status") for r in report.values()), "services": report}


def worst_status(statuses: Iterable[Optional[str]]) -> str:
    statuses = list(statuses)
    if any(status == "unhealthy" for status in statuses):
        return "unhealthy"
    if any(status != "healthy" for status in statuses):
        return "degraded"
    return "healthy"


async def inter_batch_pause(batch_index: int, batch_count: int, delay: float) -> None:
    """Sleep between batches, but not after the last one."""
    if delay > 0 and batch_index < batch_count - 1:
        await asyncio.sleep(delay)


def elapsed_since(start: float) -> float:
    return time.perf_counter() - start


def unique_by_id(documents: Iterable[Document]) -> List[Document]:
    """Drop repeated document IDs, keeping the first occurrence and input order."""
    seen: Dict[str, Document] = {}
    for document in documents:
        seen.setdefault(document.id, document)
    return list(seen.values())
