"""Fingerprinted document cache with Redis backend.

One Redis hash per document ID holds everything earlier runs computed for that
document: the collected document snapshot, AI-derived fields and the embedding.
Stages consult it before doing expensive work and write fresh results back.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from dateutil import parser as date_parser
from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.keys import RedisKeys
from rag_pipeline.core.redis import get_redis_client
from rag_pipeline.pipelines.models import (
    AIResults,
    BatchCacheResult,
    CacheEntry,
    Document,
    utc_now,
)

# Errors after which reads fail open instead of blocking the pipeline
TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)

THIRTY_DAYS_IN_SECONDS = 30 * 24 * 3600

# Values above this are epoch milliseconds rather than seconds
_EPOCH_MILLIS_THRESHOLD = 1e11


def fingerprint(value: Any) -> str:
    """Deterministic SHA-256 over the canonical JSON form of ``value``."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    canonical = json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """Parse epoch seconds, epoch milliseconds or ISO-8601 into an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = _from_epoch(float(value))
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = _from_epoch(float(text))
        except ValueError:
            parsed = date_parser.isoparse(text)
    else:
        raise TypeError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _from_epoch(number: float) -> datetime:
    if number > _EPOCH_MILLIS_THRESHOLD:
        number /= 1000
    return datetime.fromtimestamp(number, tz=timezone.utc)


def is_modified(source_modified_time: Any, entry: CacheEntry) -> bool:
    """Whether the source document changed since it was cached.

    The source's reported modification time is compared with the source revision
    recorded in the entry. Anything that cannot be compared counts as modified.
    """
    reference: Any = entry.source_modified_time or entry.last_modified or entry.updated_at
    if source_modified_time in (None, "") or reference in (None, ""):
        return True
    try:
        return parse_timestamp(source_modified_time) > parse_timestamp(reference)
    except (ValueError, TypeError, OverflowError):
        return True


def build_cache_entry(
    document: Document,
    processed_content: Optional[str] = None,
    ai_results: Optional[AIResults] = None,
    embedding: Optional[List[float]] = None,
) -> CacheEntry:
    """Build the cache entry recording fresh work on ``document``."""
    now = utc_now()
    try:
        last_modified = parse_timestamp(document.modified_time) if document.modified_time else now
    except (ValueError, TypeError, OverflowError):
        last_modified = now
    return CacheEntry(
        document_id=document.id,
        fingerprint=fingerprint(document.content),
        doc_type=document.doc_type,
        document=document.model_dump(mode="json", exclude={"embedding", "cached", "error"}),
        processed_content=processed_content,
        ai_results=ai_results,
        embedding=embedding,
        source_modified_time=document.modified_time,
        created_at=now,
        updated_at=now,
        last_modified=last_modified,
    )


class CacheStats(BaseModel):
    total_documents: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return "" if value is None else str(value)


def _serialize_entry(entry: CacheEntry) -> Dict[str, str]:
    return {
        "document_id": entry.document_id,
        "fingerprint": entry.fingerprint,
        "doc_type": entry.doc_type,
        "document": (
            json.dumps(entry.document, ensure_ascii=False, default=str)
            if entry.document is not None
            else ""
        ),
        "processed_content": entry.processed_content or "",
        "ai_results": entry.ai_results.model_dump_json() if entry.ai_results else "",
        "embedding": json.dumps(entry.embedding) if entry.embedding is not None else "",
        "source_modified_time": entry.source_modified_time or "",
        "created_at": entry.created_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
        "last_modified": entry.last_modified.isoformat() if entry.last_modified else "",
    }


def _deserialize_entry(raw: Mapping[Any, Any]) -> CacheEntry:
    data = {_decode(k): _decode(v) for k, v in raw.items()}
    return CacheEntry(
        document_id=data["document_id"],
        fingerprint=data.get("fingerprint", ""),
        doc_type=data.get("doc_type", ""),
        document=json.loads(data["document"]) if data.get("document") else None,
        processed_content=data.get("processed_content") or None,
        ai_results=(
            AIResults.model_validate_json(data["ai_results"]) if data.get("ai_results") else None
        ),
        embedding=json.loads(data["embedding"]) if data.get("embedding") else None,
        source_modified_time=data.get("source_modified_time") or None,
        created_at=data.get("created_at") or utc_now(),
        updated_at=data.get("updated_at") or utc_now(),
        last_modified=data.get("last_modified") or None,
    )


class DocumentCache:
    """Redis-backed cache of per-document processing results.

    Example:
        cache = DocumentCache()
        await cache.initialize()

        entry = await cache.get("doccnAbc")
        if entry is None or is_modified(ref.modified_time, entry):
            document = await fetch(ref)
            await cache.put(document)
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        config: Optional[Settings] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the cache.

        Args:
            redis_client: Async Redis client; one is created from settings when omitted
            config: Settings providing the Redis URL and key prefix
            logger: Component logger
        """
        self._settings = config or settings
        self._redis = redis_client
        self._owns_client = redis_client is None
        self._prefix = self._settings.cache_prefix
        self._logger = logger or logging.getLogger(__name__)

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_client(config=self._settings)
        return self._redis

    def key(self, document_id: str) -> str:
        return RedisKeys.cache_entry(document_id, prefix=self._prefix)

    async def initialize(self) -> None:
        """Verify the cache store is reachable."""
        await self.redis.ping()
        self._logger.debug("Document cache connected")

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    async def is_cached(self, document_id: str, content: str) -> bool:
        """Whether an entry for ``document_id`` matches the fingerprint of ``content``.

        Returns False on connectivity errors so the pipeline recomputes instead of
        blocking.
        """
        try:
            stored = await self.redis.hget(self.key(document_id), "fingerprint")
        except TRANSIENT_ERRORS as e:
            self._logger.warning(f"Cache check failed for {document_id}: {e}")
            return False
        return stored is not None and _decode(stored) == fingerprint(content)

    async def get(self, document_id: str) -> Optional[CacheEntry]:
        """Get the cache entry for a document, or None on a miss or read failure."""
        try:
            raw = await self.redis.hgetall(self.key(document_id))
        except TRANSIENT_ERRORS as e:
            self._logger.warning(f"Cache get failed for {document_id}: {e}")
            return None
        if not raw:
            self._logger.debug(f"Cache MISS for {document_id}")
            return None
        try:
            return _deserialize_entry(raw)
        except (KeyError, ValueError, ValidationError) as e:
            self._logger.warning(f"Ignoring malformed cache entry for {document_id}: {e}")
            return None

    async def put(
        self,
        document: Document,
        processed_content: Optional[str] = None,
        ai_results: Optional[AIResults] = None,
        embedding: Optional[List[float]] = None,
    ) -> CacheEntry:
        """Replace the entry for ``document`` atomically.

        The previous entry is deleted in the same transaction, so derived fields
        from an older revision never survive. Only ``created_at`` is carried over.
        """
        entry = build_cache_entry(document, processed_content, ai_results, embedding)
        key = self.key(document.id)

        previous_created = await self.redis.hget(key, "created_at")
        if previous_created:
            entry.created_at = parse_timestamp(_decode(previous_created))

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=_serialize_entry(entry))
            await pipe.execute()

        self._logger.debug(f"Cached document {document.id}")
        return entry

    async def update_derived(self, document_id: str, ai_results: AIResults) -> None:
        """Update only the AI-derived fields of an entry, preserving the rest.

        Creates a minimal entry when none exists.
        """
        key = self.key(document_id)
        now = utc_now().isoformat()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, "document_id", document_id)
            pipe.hsetnx(key, "fingerprint", ai_results.source_fingerprint or "")
            pipe.hsetnx(key, "created_at", now)
            pipe.hset(key, mapping={"ai_results": ai_results.model_dump_json(), "updated_at": now})
            await pipe.execute()
        self._logger.debug(f"Updated AI results for {document_id}")

    async def put_batch(
        self, entries: Iterable[Union[CacheEntry, Mapping[str, Any]]]
    ) -> BatchCacheResult:
        """Replace many entries in one transaction.

        Malformed entries are skipped and reported in ``failed``; they never fail
        the rest of the batch.
        """
        result = BatchCacheResult()
        prepared: List[tuple[CacheEntry, Dict[str, str]]] = []

        for raw in entries:
            try:
                entry = raw if isinstance(raw, CacheEntry) else CacheEntry.model_validate(raw)
                prepared.append((entry, _serialize_entry(entry)))
            except (TypeError, ValueError, ValidationError) as e:
                document_id = (
                    str(raw.get("document_id", "<unknown>"))
                    if isinstance(raw, Mapping)
                    else getattr(raw, "document_id", "<unknown>")
                )
                self._logger.warning(f"Skipping malformed cache entry {document_id}: {e}")
                result.failed.append(document_id)

        if not prepared:
            return result

        async with self.redis.pipeline(transaction=False) as pipe:
            for entry, _ in prepared:
                pipe.hmget(self.key(entry.document_id), ["fingerprint", "created_at"])
            existing = await pipe.execute()

        async with self.redis.pipeline(transaction=True) as pipe:
            for (entry, mapping), (old_fingerprint, old_created) in zip(prepared, existing):
                if old_fingerprint is None:
                    result.inserted += 1
                elif _decode(old_fingerprint) == entry.fingerprint:
                    result.unchanged += 1
                else:
                    result.modified += 1
                if old_created:
                    mapping["created_at"] = _decode(old_created)
                key = self.key(entry.document_id)
                pipe.delete(key)
                pipe.hset(key, mapping=mapping)
            await pipe.execute()

        self._logger.info(
            f"Batch cached {len(prepared)} documents: {result.inserted} inserted, "
            f"{result.modified} modified, {result.unchanged} unchanged, "
            f"{len(result.failed)} failed"
        )
        return result

    async def _scan_keys(self) -> List[bytes]:
        """Scan for cache keys using SCAN (production-safe)."""
        keys = []
        async for key in self.redis.scan_iter(
            match=RedisKeys.cache_entry_pattern(self._prefix), count=100
        ):
            keys.append(key)
        return keys

    async def get_all(self) -> List[CacheEntry]:
        """Every readable cache entry."""
        entries = []
        for key in await self._scan_keys():
            document_id = RedisKeys.document_id_from_cache_key(key, prefix=self._prefix)
            entry = await self.get(document_id)
            if entry is not None:
                entries.append(entry)
        return entries

    async def remove(self, document_id: str) -> bool:
        """Delete the entry for one document. Returns True if it existed."""
        deleted = await self.redis.delete(self.key(document_id))
        if deleted:
            self._logger.info(f"Removed cache entry for {document_id}")
        return bool(deleted)

    async def clear_all(self) -> int:
        """Delete every cache entry. Returns the number of keys deleted."""
        keys = await self._scan_keys()
        if not keys:
            return 0
        deleted = await self.redis.delete(*keys)
        self._logger.info(f"Cleared {deleted} cache entries")
        return deleted

    async def cleanup_expired(self, max_age_seconds: int = THIRTY_DAYS_IN_SECONDS) -> int:
        """Delete entries not updated within ``max_age_seconds``."""
        cutoff = utc_now() - timedelta(seconds=max_age_seconds)
        keys = await self._scan_keys()
        if not keys:
            return 0

        async with self.redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.hget(key, "updated_at")
            updated = await pipe.execute()

        expired = []
        for key, value in zip(keys, updated):
            try:
                if value is None or parse_timestamp(_decode(value)) < cutoff:
                    expired.append(key)
            except (ValueError, TypeError, OverflowError):
                expired.append(key)

        if not expired:
            return 0
        deleted = await self.redis.delete(*expired)
        self._logger.info(f"Removed {deleted} cache entries older than {cutoff.isoformat()}")
        return deleted

    async def stats(self) -> CacheStats:
        """Entry counts by document type and the most recent update."""
        stats = CacheStats()
        keys = await self._scan_keys()
        if not keys:
            return stats

        async with self.redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.hmget(key, ["doc_type", "updated_at"])
            rows = await pipe.execute()

        for doc_type, updated_at in rows:
            stats.total_documents += 1
            type_name = _decode(doc_type) or "unknown"
            stats.by_type[type_name] = stats.by_type.get(type_name, 0) + 1
            if updated_at:
                try:
                    parsed = parse_timestamp(_decode(updated_at))
                except (ValueError, TypeError, OverflowError):
                    continue
                if stats.last_updated is None or parsed > stats.last_updated:
                    stats.last_updated = parsed
        return stats

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.redis.ping()
            return {"status": "healthy", "prefix": self._prefix}
        except Exception as e:
            self._logger.error(f"Cache health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}
