"""Data model shared by the cache, the stages and the orchestrator."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, computed_field, field_validator

from rag_pipeline.core.config import STAGE_NAMES


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ratio(count: int, total: int) -> float:
    return count / total if total > 0 else 0.0


def normalize_keywords(value: Any) -> List[str]:
    """Coerce anything that is not a list of keywords to an empty list."""
    if not isinstance(value, list):
        return []
    return [str(k).strip() for k in value if k is not None and str(k).strip()]


class DocumentRef(BaseModel):
    """A file entry as listed by the document source."""

    model_config = ConfigDict(extra="allow")

    token: str
    name: str = ""
    type: str
    created_time: Optional[str] = None
    modified_time: Optional[str] = None
    owner_id: Optional[str] = None
    url: Optional[str] = None
    parent_token: Optional[str] = None

    @field_validator("created_time", "modified_time", mode="before")
    @classmethod
    def stringify_timestamp(cls, value):
        if value is None or isinstance(value, str):
            return value
        return str(value)


class DocumentMetadata(BaseModel):
    """Content-derived metadata; extractors may add type-specific extras."""

    model_config = ConfigDict(extra="allow")

    doc_type: str = "doc"
    source: str = "feishu"
    url: Optional[str] = None
    author: Optional[str] = None
    owner_id: Optional[str] = None
    parent_token: Optional[str] = None
    created_time: Optional[str] = None
    modified_time: Optional[str] = None
    word_count: int = 0
    tags: List[str] = Field(default_factory=list)
    processed_at: Optional[datetime] = None


class Document(BaseModel):
    """A unit of content flowing through the pipeline.

    Stages never mutate a Document in place; they derive new values with
    ``model_copy(update=...)``.
    """

    id: str
    title: str = ""
    content: str = ""
    doc_type: str = "doc"
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    # AI-derived fields
    ai_title: Optional[str] = None
    summary: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    category: Optional[str] = None

    embedding: Optional[List[float]] = None
    cached: bool = False
    error: Optional[str] = None

    # Set on chunks produced by the splitter
    split_part: Optional[str] = None
    original_id: Optional[str] = None

    @field_validator("keywords", mode="before")
    @classmethod
    def coerce_keywords(cls, value):
        return normalize_keywords(value)

    @property
    def modified_time(self) -> Optional[str]:
        return self.metadata.modified_time

    @property
    def source_id(self) -> str:
        """ID of the collected document this one was derived from."""
        return self.original_id or self.id


class AIResults(BaseModel):
    """AI-derived fields for one document, as stored in the cache."""

    ai_title: str = ""
    summary: str = ""
    keywords: List[str] = Field(default_factory=list)
    category: str = ""
    processed_at: datetime = Field(default_factory=utc_now)
    source_fingerprint: Optional[str] = Field(
        default=None, description="Fingerprint of the content these results were derived from"
    )

    @field_validator("keywords", mode="before")
    @classmethod
    def coerce_keywords(cls, value):
        return normalize_keywords(value)

    @classmethod
    def from_document(cls, document: Document, source_fingerprint: Optional[str]) -> "AIResults":
        return cls(
            ai_title=document.ai_title or "",
            summary=document.summary or "",
            keywords=document.keywords,
            category=document.category or "",
            processed_at=document.metadata.processed_at or utc_now(),
            source_fingerprint=source_fingerprint,
        )


class CacheEntry(BaseModel):
    """Persisted artifacts for one document ID."""

    document_id: str
    fingerprint: str
    doc_type: str = ""
    document: Optional[Dict[str, Any]] = None
    processed_content: Optional[str] = None
    ai_results: Optional[AIResults] = None
    embedding: Optional[List[float]] = None
    source_modified_time: Optional[str] = Field(
        default=None, description="Modification time reported by the source when cached"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_modified: Optional[datetime] = None

    def to_document(self) -> Optional[Document]:
        """Rebuild the cached Document snapshot, or None when it is unusable."""
        if not self.document:
            return None
        try:
            return Document.model_validate(self.document)
        except ValueError:
            return None


class BatchCacheResult(BaseModel):
    inserted: int = 0
    modified: int = 0
    unchanged: int = 0
    failed: List[str] = Field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.modified + self.unchanged


class BulkUpsertResult(BaseModel):
    success_count: int = 0
    failed_items: List[Dict[str, str]] = Field(default_factory=list)


class IndexStats(BaseModel):
    document_count: int = 0
    size_bytes: int = 0
    index_name: Optional[str] = None


class SearchHit(BaseModel):
    """A single match returned by a knowledge base query."""

    id: str
    title: str = ""
    ai_title: str = ""
    summary: str = ""
    content: str = ""
    category: str = ""
    source: str = ""
    doc_type: str = ""
    url: str = ""
    split_part: str = ""
    original_id: str = ""
    score: float = 0.0


class StageOptions(BaseModel):
    """In-memory options for a single stage execution."""

    documents: Optional[List[Document]] = None
    folder_tokens: List[str] = Field(default_factory=list)
    force: bool = False
    batch_size: int = Field(default=10, ge=1)
    max_concurrency: int = Field(default=5, ge=1)


class StageStats(BaseModel):
    """Per-stage counters. ``failed + cached + new + updated == total``."""

    total_documents: int = 0
    new_documents: int = 0
    updated_documents: int = 0
    cached_documents: int = 0
    failed_documents: int = 0
    cache_write_failures: int = 0

    @computed_field
    @property
    def processed_documents(self) -> int:
        return self.new_documents + self.updated_documents

    @computed_field
    @property
    def success_count(self) -> int:
        return self.total_documents - self.failed_documents

    @computed_field
    @property
    def cache_hit_rate(self) -> float:
        return _ratio(self.cached_documents, self.total_documents)


class CollectionStats(StageStats):
    folders_scanned: int = 0
    folders_failed: int = 0


class EnrichmentStats(StageStats):
    ai_processed_documents: int = 0
    split_documents: int = 0
    final_document_count: int = 0

    @computed_field
    @property
    def ai_processing_rate(self) -> float:
        return _ratio(self.ai_processed_documents, self.total_documents)


class IndexingStats(StageStats):
    embedded_documents: int = 0
    indexed_documents: int = 0
    # None when the index could not be inspected
    index_integrity_ok: Optional[bool] = None

    @computed_field
    @property
    def embedding_generation_rate(self) -> float:
        return _ratio(self.embedded_documents, self.total_documents)

    @computed_field
    @property
    def indexing_success_rate(self) -> float:
        return _ratio(self.indexed_documents, self.total_documents)


class StageErrorRecord(BaseModel):
    document_id: str
    error: str


class StageResult(BaseModel):
    stage: str
    success: bool
    duration: float = 0.0
    stats: SerializeAsAny[StageStats] = Field(default_factory=StageStats)
    documents: Optional[List[Document]] = None
    errors: List[StageErrorRecord] = Field(default_factory=list)
    error: Optional[str] = None
    index_stats: Optional[IndexStats] = None
    stage_duration: Optional[float] = None


class OverallStats(BaseModel):
    total_documents: int = 0
    processed_documents: int = 0
    failed_documents: int = 0
    cache_hit_rate: float = 0.0
    ai_processing_rate: float = 0.0
    indexing_success_rate: float = 0.0
    total_duration: float = 0.0
    stage_durations: Dict[str, float] = Field(default_factory=dict)
    stage_stats: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ExecutionState(BaseModel):
    """Orchestrator-owned record of the current run."""

    is_running: bool = False
    current_stage: Optional[str] = None
    start_time: Optional[datetime] = None
    stage_results: Dict[str, StageResult] = Field(default_factory=dict)
    overall_stats: OverallStats = Field(default_factory=OverallStats)

    def reset(self) -> None:
        self.is_running = False
        self.current_stage = None
        self.start_time = None
        self.stage_results = {}
        self.overall_stats = OverallStats()


class PipelineOptions(BaseModel):
    """In-memory equivalent of the pipeline command-line flags."""

    folder_tokens: List[str] = Field(default_factory=list)
    force_full_update: bool = False
    force_reprocess: bool = False
    force_reindex: bool = False
    skip_stages: List[str] = Field(default_factory=list)
    batch_size: Optional[int] = Field(default=None, ge=1)
    max_concurrent_ai_requests: Optional[int] = Field(default=None, ge=1)
    fail_fast: bool = True
    documents: Optional[List[Document]] = Field(
        default=None, description="Seed document set used when the clone stage is skipped"
    )

    @field_validator("skip_stages")
    @classmethod
    def validate_skip_stages(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in STAGE_NAMES]
        if unknown:
            raise ValueError(
                f"Unknown stage(s) {', '.join(unknown)}; expected one of {', '.join(STAGE_NAMES)}"
            )
        return value


class PipelineResult(BaseModel):
    success: bool
    duration: float
    stages: Dict[str, StageResult] = Field(default_factory=dict)
    overall_stats: OverallStats = Field(default_factory=OverallStats)
    execution_time: datetime = Field(default_factory=utc_now)
    config: Dict[str, Any] = Field(default_factory=dict)
