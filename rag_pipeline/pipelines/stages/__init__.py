"""Pipeline stages sharing the initialize/execute/cleanup contract."""

from rag_pipeline.pipelines.stages.base import Stage, SupportsHealthCheck
from rag_pipeline.pipelines.stages.collection import CollectionStage
from rag_pipeline.pipelines.stages.enrichment import EnrichmentStage
from rag_pipeline.pipelines.stages.indexing import IndexingStage

__all__ = [
    "Stage",
    "SupportsHealthCheck",
    "CollectionStage",
    "EnrichmentStage",
    "IndexingStage",
]
