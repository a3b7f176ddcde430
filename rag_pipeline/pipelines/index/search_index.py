"""Vector search index writes and queries through RedisVL."""

import logging
from typing import Any, Dict, List, Optional

from redis.asyncio import Redis
from redisvl.index import AsyncSearchIndex
from redisvl.query import AggregateHybridQuery, TextQuery, VectorQuery
from redisvl.query.filter import FilterExpression, Tag
from redisvl.redis.utils import array_to_buffer

from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.errors import SearchIndexError
from rag_pipeline.core.redis import get_knowledge_index, get_redis_client
from rag_pipeline.pipelines.cache import parse_timestamp
from rag_pipeline.pipelines.models import BulkUpsertResult, Document, IndexStats, SearchHit

# FT.INFO fields that together make up the on-disk footprint (megabytes)
SIZE_FIELDS_MB = (
    "inverted_sz_mb",
    "vector_index_sz_mb",
    "doc_table_size_mb",
    "offset_vectors_sz_mb",
    "key_table_size_mb",
    "sortable_values_size_mb",
)

RETURN_FIELDS = [
    "document_id",
    "title",
    "ai_title",
    "summary",
    "content",
    "category",
    "source",
    "doc_type",
    "url",
    "split_part",
    "original_id",
]

# Tag fields a query may be narrowed by
FILTER_FIELDS = ("category", "source", "doc_type")

# Title matches outrank body matches in text search
TEXT_FIELD_WEIGHTS = {"title": 3.0, "ai_title": 2.5, "summary": 1.5, "content": 1.0}

DEFAULT_MIN_SCORE = 0.7
DEFAULT_VECTOR_WEIGHT = 0.7


def _epoch(value: Any) -> float:
    if not value:
        return 0.0
    try:
        return parse_timestamp(value).timestamp()
    except (ValueError, TypeError, OverflowError):
        return 0.0


def _as_float(value: Any) -> float:
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def build_filter(filters: Optional[Dict[str, str]]) -> Optional[FilterExpression]:
    """AND together tag equality filters, ignoring empty values."""
    expression = None
    for field, value in (filters or {}).items():
        if field not in FILTER_FIELDS:
            raise ValueError(f"Unsupported filter field: {field}")
        if not value:
            continue
        condition = Tag(field) == value
        expression = condition if expression is None else expression & condition
    return expression


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value) if value is not None else ""


def _to_hit(result: Dict[str, Any], score: float) -> SearchHit:
    fields = {name: _as_text(result.get(name)) for name in RETURN_FIELDS}
    document_id = fields.pop("document_id") or _as_text(result.get("id"))
    return SearchHit(id=document_id, score=score, **fields)


class SearchIndexClient:
    """Stores documents with text fields, metadata and an embedding vector, and queries them."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        index: Optional[AsyncSearchIndex] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._index = index
        self._redis: Optional[Redis] = None
        self._logger = logger or logging.getLogger(__name__)

    @property
    def index(self) -> AsyncSearchIndex:
        if self._index is None:
            self._redis = get_redis_client(config=self._settings)
            self._index = get_knowledge_index(self._settings, redis_client=self._redis)
        return self._index

    async def initialize(self) -> None:
        """Create the index if it does not exist yet."""
        if not await self.index.exists():
            await self.index.create()
            self._logger.info(f"Created vector index: {self._settings.index_name}")
        else:
            self._logger.debug(f"Vector index already exists: {self._settings.index_name}")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._index = None

    def to_record(self, document: Document) -> Dict[str, Any]:
        """Flatten a document into a hash record for the index."""
        if document.embedding is None:
            raise ValueError(f"Document {document.id} has no embedding")
        if len(document.embedding) != self._settings.vector_dim:
            raise ValueError(
                f"Document {document.id} embedding has {len(document.embedding)} dimensions, "
                f"expected {self._settings.vector_dim}"
            )

        metadata = document.metadata
        return {
            "document_id": document.id,
            "title": document.title,
            "ai_title": document.ai_title or "",
            "content": document.content,
            "summary": document.summary or "",
            "keywords": ",".join(document.keywords),
            "category": document.category or "",
            "source": metadata.source,
            "doc_type": document.doc_type,
            "author": metadata.author or "",
            "url": metadata.url or "",
            "split_part": document.split_part or "",
            "original_id": document.source_id,
            "word_count": metadata.word_count,
            "created_at": _epoch(metadata.created_time),
            "updated_at": _epoch(metadata.modified_time),
            "processed_at": metadata.processed_at.timestamp() if metadata.processed_at else 0.0,
            "vector": array_to_buffer(document.embedding, dtype="float32"),
        }

    async def bulk_upsert(self, documents: List[Document]) -> BulkUpsertResult:
        """Write documents to the index, replacing any with the same ID.

        Documents that cannot be serialised are reported as failed items. A failed
        write of the whole batch raises SearchIndexError.
        """
        records = []
        failed_items = []
        for document in documents:
            try:
                records.append(self.to_record(document))
            except (ValueError, TypeError) as e:
                failed_items.append({"id": document.id, "error": str(e)})

        if records:
            try:
                await self.index.load(data=records, id_field="document_id")
            except Exception as e:
                raise SearchIndexError(f"Bulk load of {len(records)} documents failed: {e}") from e
            self._logger.debug(f"Indexed {len(records)} documents")

        return BulkUpsertResult(success_count=len(records), failed_items=failed_items)

    async def get_stats(self) -> IndexStats:
        info = await self.index.info()
        size_mb = sum(_as_float(info.get(field, 0)) for field in SIZE_FIELDS_MB)
        return IndexStats(
            document_count=int(_as_float(info.get("num_docs", 0))),
            size_bytes=int(size_mb * 1024 * 1024),
            index_name=self._settings.index_name,
        )

    def _check_vector(self, vector: List[float]) -> None:
        if len(vector) != self._settings.vector_dim:
            raise ValueError(
                f"Query vector has {len(vector)} dimensions, expected {self._settings.vector_dim}"
            )

    async def search_by_vector(
        self,
        vector: List[float],
        k: int = 10,
        filters: Optional[Dict[str, str]] = None,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> List[SearchHit]:
        """Nearest neighbours of ``vector`` by cosine similarity.

        Hits scoring below ``min_score`` (similarity in [-1, 1]) are dropped.
        """
        self._check_vector(vector)
        query = VectorQuery(
            vector=list(vector),
            vector_field_name="vector",
            return_fields=RETURN_FIELDS,
            num_results=k,
            filter_expression=build_filter(filters),
            dtype="float32",
        )
        results = await self.index.query(query)
        hits = [_to_hit(r, 1.0 - _as_float(r.get("vector_distance", 1.0))) for r in results]
        return [hit for hit in hits if hit.score >= min_score]

    async def search_by_text(
        self, query: str, k: int = 10, filters: Optional[Dict[str, str]] = None
    ) -> List[SearchHit]:
        """Full-text search over titles, summary and content, best match first."""
        if not query.strip():
            raise ValueError("Search query must not be empty")
        text_query = TextQuery(
            text=query,
            text_field_name=TEXT_FIELD_WEIGHTS,
            filter_expression=build_filter(filters),
            return_fields=RETURN_FIELDS,
            num_results=k,
            stopwords=None,
        )
        results = await self.index.query(text_query)
        return [_to_hit(r, _as_float(r.get("score", 0.0))) for r in results]

    async def hybrid_search(
        self,
        query: str,
        vector: List[float],
        k: int = 10,
        filters: Optional[Dict[str, str]] = None,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    ) -> List[SearchHit]:
        """Rank by ``vector_weight`` * vector similarity plus the rest from text relevance."""
        if not query.strip():
            raise ValueError("Search query must not be empty")
        if not 0.0 <= vector_weight <= 1.0:
            raise ValueError("vector_weight must be between 0 and 1")
        self._check_vector(vector)
        hybrid_query = AggregateHybridQuery(
            text=query,
            text_field_name="content",
            vector=list(vector),
            vector_field_name="vector",
            filter_expression=build_filter(filters),
            alpha=vector_weight,
            dtype="float32",
            num_results=k,
            return_fields=RETURN_FIELDS,
            stopwords=None,
        )
        results = await self.index.query(hybrid_query)
        return [_to_hit(r, _as_float(r.get("hybrid_score", 0.0))) for r in results]

    async def delete_document(self, document_id: str) -> bool:
        deleted = await self.index.drop_keys(self.index.key(document_id))
        return bool(deleted)

    async def clear(self) -> int:
        """Delete every document in the index, keeping the index itself."""
        return await self.index.clear()

    async def health_check(self) -> Dict[str, Any]:
        try:
            exists = await self.index.exists()
            return {
                "status": "healthy" if exists else "degraded",
                "index": self._settings.index_name,
                "exists": exists,
            }
        except Exception as e:
            self._logger.error(f"Search index health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}
