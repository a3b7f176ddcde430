"""Pipeline orchestrator sequencing the collection, enrichment and indexing stages."""

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

from rag_pipeline.core.config import STAGE_NAMES, Settings, settings
from rag_pipeline.core.errors import PipelineError, PipelineStageError
from rag_pipeline.core.logging import component_logger
from rag_pipeline.core.redis import mask_url
from rag_pipeline.pipelines.models import (
    Document,
    ExecutionState,
    OverallStats,
    PipelineOptions,
    PipelineResult,
    StageOptions,
    StageResult,
    utc_now,
)
from rag_pipeline.pipelines.stages.base import Stage, SupportsHealthCheck, worst_status

# Stage-reported rates folded into the overall statistics
OVERALL_RATES = ("cache_hit_rate", "ai_processing_rate", "indexing_success_rate")


def weighted_rate(results: Iterable[StageResult], attribute: str) -> float:
    """Average of a rate over the stages reporting it, weighted by stage size."""
    numerator = 0.0
    weight = 0
    for result in results:
        rate = getattr(result.stats, attribute, None)
        if rate is None or result.stats.total_documents <= 0:
            continue
        numerator += rate * result.stats.total_documents
        weight += result.stats.total_documents
    return numerator / weight if weight else 0.0


class PipelineOrchestrator:
    """Runs clone -> clean -> upload, feeding each stage the previous stage's documents.

    The orchestrator exclusively owns the execution state. It is reset at the
    start of every run and zeroed again by ``cleanup``.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        stages: Optional[Dict[str, Stage]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._logger = logger or component_logger(None, "orchestrator")
        self.stages: Dict[str, Stage] = stages if stages is not None else self._default_stages()
        self.state = ExecutionState()
        self._initialized: set[str] = set()

    def _default_stages(self) -> Dict[str, Stage]:
        from rag_pipeline.pipelines.stages import CollectionStage, EnrichmentStage, IndexingStage

        return {
            "clone": CollectionStage(self._settings, logger=self._logger.getChild("clone")),
            "clean": EnrichmentStage(self._settings, logger=self._logger.getChild("clean")),
            "upload": IndexingStage(self._settings, logger=self._logger.getChild("upload")),
        }

    def _stage(self, name: str) -> Stage:
        if name not in self.stages:
            raise ValueError(f"Unknown stage: {name}. Expected one of {', '.join(self.stages)}")
        return self.stages[name]

    async def initialize(self, stage_names: Optional[List[str]] = None) -> None:
        """Initialize the named stages (default: all) in parallel.

        Every stage runs to completion. Stages that succeeded stay initialized
        and the first failure is raised afterwards.
        """
        names = [n for n in (stage_names or list(self.stages)) if n not in self._initialized]
        for name in names:
            self._stage(name)
        if not names:
            return

        self._logger.info(f"Initializing stages: {', '.join(names)}")
        results = await asyncio.gather(
            *(self.stages[name].initialize() for name in names), return_exceptions=True
        )
        errors = []
        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                self._logger.error(f"Stage {name} failed to initialize: {outcome}")
                errors.append(outcome)
            else:
                self._initialized.add(name)
        if errors:
            raise errors[0]
        self._logger.info("Pipeline initialized")

    def _stage_options(
        self, name: str, options: PipelineOptions, documents: List[Document]
    ) -> StageOptions:
        force_full = options.force_full_update or not self._settings.enable_incremental
        force = {
            "clone": force_full,
            "clean": force_full or options.force_reprocess,
            "upload": force_full or options.force_reindex,
        }[name]
        return StageOptions(
            documents=None if name == "clone" else documents,
            folder_tokens=options.folder_tokens or self._settings.folder_tokens,
            force=force,
            batch_size=options.batch_size or self._settings.batch_size,
            max_concurrency=(
                options.max_concurrent_ai_requests or self._settings.max_concurrent_ai_requests
            ),
        )

    async def execute_pipeline(self, options: Optional[PipelineOptions] = None) -> PipelineResult:
        """Run every stage not skipped, in order.

        Raises:
            PipelineStageError: a stage raised and ``options.fail_fast`` is set
            ValueError: the clone stage runs without any folder token
        """
        options = options or PipelineOptions()
        if self.state.is_running:
            raise PipelineError("A pipeline run is already in progress")

        stage_names = [name for name in STAGE_NAMES if name not in options.skip_stages]
        if "clone" in stage_names and not (options.folder_tokens or self._settings.folder_tokens):
            raise ValueError("At least one folder token is required to run the clone stage")

        await self.initialize(stage_names)

        self.state.reset()
        self.state.is_running = True
        self.state.start_time = utc_now()
        start = time.perf_counter()
        current_documents: List[Document] = list(options.documents or [])

        self._logger.info(
            f"Starting pipeline: stages={stage_names}, "
            f"skipped={options.skip_stages}, fail_fast={options.fail_fast}"
        )

        try:
            for name in stage_names:
                self.state.current_stage = name
                stage_options = self._stage_options(name, options, current_documents)
                self._logger.info(f"Running stage {name}")
                stage_start = time.perf_counter()

                try:
                    result = await self.stages[name].execute(stage_options)
                except Exception as e:
                    self._logger.error(f"Stage {name} failed: {e}")
                    if options.fail_fast:
                        raise PipelineStageError(name, e) from e
                    result = StageResult(
                        stage=name,
                        success=False,
                        error=str(e),
                        duration=time.perf_counter() - stage_start,
                    )

                result.stage_duration = time.perf_counter() - stage_start
                self.state.stage_results[name] = result

                if result.success and result.documents is not None:
                    current_documents = result.documents
                self._logger.info(
                    f"Stage {name} {'completed' if result.success else 'failed'} "
                    f"in {result.stage_duration:.2f}s"
                )

            duration = time.perf_counter() - start
            self.state.overall_stats = self.calculate_overall_stats(duration)
            success = all(result.success for result in self.state.stage_results.values())
            self._logger.info(
                f"Pipeline {'completed' if success else 'finished with failures'} "
                f"in {duration:.2f}s"
            )
            return PipelineResult(
                success=success,
                duration=duration,
                stages=dict(self.state.stage_results),
                overall_stats=self.state.overall_stats,
                execution_time=self.state.start_time,
                config=self.run_summary(options),
            )
        finally:
            self.state.is_running = False
            self.state.current_stage = None

    async def execute_stage(self, name: str, options: StageOptions) -> StageResult:
        """Run one stage on its own, outside of a pipeline run."""
        stage = self._stage(name)
        await self.initialize([name])

        self.state.current_stage = name
        start = time.perf_counter()
        try:
            result = await stage.execute(options)
        finally:
            self.state.current_stage = None
        result.stage_duration = time.perf_counter() - start
        self.state.stage_results[name] = result
        return result

    def calculate_overall_stats(self, total_duration: Optional[float] = None) -> OverallStats:
        results = list(self.state.stage_results.values())
        rates = {attribute: weighted_rate(results, attribute) for attribute in OVERALL_RATES}
        return OverallStats(
            total_documents=max((r.stats.total_documents for r in results), default=0),
            processed_documents=sum(len(r.documents) for r in results if r.documents is not None),
            failed_documents=sum(r.stats.failed_documents for r in results),
            total_duration=(
                total_duration
                if total_duration is not None
                else sum(r.stage_duration or r.duration for r in results)
            ),
            stage_durations={
                name: r.stage_duration or r.duration
                for name, r in self.state.stage_results.items()
            },
            stage_stats={
                name: r.stats.model_dump() for name, r in self.state.stage_results.items()
            },
            **rates,
        )

    def get_execution_status(self) -> Dict[str, Any]:
        start_time = self.state.start_time
        uptime = (utc_now() - start_time).total_seconds() if start_time else None
        return {
            "is_running": self.state.is_running,
            "current_stage": self.state.current_stage,
            "start_time": start_time.isoformat() if start_time else None,
            "uptime": uptime,
            "completed_stages": list(self.state.stage_results),
            "overall_stats": self.state.overall_stats.model_dump(),
        }

    def run_summary(self, options: PipelineOptions) -> Dict[str, Any]:
        return {
            "folder_tokens": options.folder_tokens or self._settings.folder_tokens,
            "skip_stages": options.skip_stages,
            "force_full_update": options.force_full_update,
            "force_reprocess": options.force_reprocess,
            "force_reindex": options.force_reindex,
            "batch_size": options.batch_size or self._settings.batch_size,
            "max_concurrent_ai_requests": (
                options.max_concurrent_ai_requests or self._settings.max_concurrent_ai_requests
            ),
            "fail_fast": options.fail_fast,
        }

    def get_configuration(self) -> Dict[str, Any]:
        """Which services are configured, without exposing any secret."""
        config = self._settings
        return {
            "docs_name": config.docs_name,
            "stages": list(self.stages),
            "initialized_stages": sorted(self._initialized),
            "services": {
                "source": bool(
                    config.source_app_id
                    and config.source_app_secret
                    and config.source_app_secret.get_secret_value()
                ),
                "source_base_url": config.source_base_url,
                "openai": bool(config.openai_api_key),
                "openai_model": config.openai_model,
                "embedding_model": config.embedding_model,
                "redis_url": mask_url(config.redis_url.get_secret_value()),
                "index_name": config.index_name,
            },
            "performance": {
                "batch_size": config.batch_size,
                "max_concurrent_ai_requests": config.max_concurrent_ai_requests,
                "document_split_size": config.document_split_size,
            },
            "incremental": config.enable_incremental,
        }

    async def health_check(self) -> Dict[str, Any]:
        checks = {
            name: stage for name, stage in self.stages.items()
            if isinstance(stage, SupportsHealthCheck)
        }
        results = await asyncio.gather(
            *(stage.health_check() for stage in checks.values()), return_exceptions=True
        )
        report: Dict[str, Any] = {}
        for name, result in zip(checks, results):
            if isinstance(result, BaseException):
                report[name] = {"status": "unhealthy", "error": str(result)}
            else:
                report[name] = result
        return {
            "status": worst_status(r.get("status") for r in report.values()),
            "stages": report,
            "timestamp": utc_now().isoformat(),
        }

    async def cleanup(self) -> None:
        """Release every stage's collaborators and zero the execution state."""
        results = await asyncio.gather(
            *(stage.cleanup() for stage in self.stages.values()), return_exceptions=True
        )
        for name, result in zip(self.stages, results):
            if isinstance(result, BaseException):
                self._logger.error(f"Cleanup of stage {name} failed: {result}")
        self._initialized.clear()
        self.state.reset()
        self._logger.info("Pipeline cleaned up")


def build_orchestrator(
    config: Optional[Settings] = None, logger: Optional[logging.Logger] = None
) -> PipelineOrchestrator:
    """Orchestrator wired with the default drive, OpenAI, Redis cache and index collaborators."""
    return PipelineOrchestrator(config=config, logger=logger)
