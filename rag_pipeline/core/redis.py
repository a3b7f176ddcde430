"""Redis connection management - no caching to avoid event loop issues."""

import logging
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from redisvl.index import AsyncSearchIndex
from redisvl.schema import IndexSchema

from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.keys import RedisKeys

logger = logging.getLogger(__name__)


def build_knowledge_schema(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Schema of the knowledge index documents are uploaded to."""
    config = config or settings
    return {
        "index": {
            "name": config.index_name,
            "prefix": RedisKeys.index_prefix(config.index_name),
            "storage_type": "hash",
        },
        "fields": [
            {"name": "document_id", "type": "tag"},
            {"name": "title", "type": "text"},
            {"name": "ai_title", "type": "text"},
            {"name": "content", "type": "text"},
            {"name": "summary", "type": "text"},
            {"name": "keywords", "type": "tag", "attrs": {"separator": ","}},
            {"name": "category", "type": "tag"},
            {"name": "source", "type": "tag"},
            {"name": "doc_type", "type": "tag"},
            {"name": "author", "type": "tag"},
            {"name": "url", "type": "tag"},
            {"name": "split_part", "type": "tag"},
            {"name": "original_id", "type": "tag"},
            {"name": "word_count", "type": "numeric"},
            {"name": "created_at", "type": "numeric"},
            {"name": "updated_at", "type": "numeric"},
            {"name": "processed_at", "type": "numeric"},
            {
                "name": "vector",
                "type": "vector",
                "attrs": {
                    "dims": config.vector_dim,
                    "distance_metric": "cosine",
                    "algorithm": "flat",
                    "datatype": "float32",
                },
            },
        ],
    }


def _redis_url(config: Settings) -> str:
    redis_url = config.redis_url.get_secret_value()
    redis_password = config.redis_password.get_secret_value() if config.redis_password else None
    if redis_password and "@" not in redis_url:
        # Insert password into URL: redis://localhost -> redis://:password@localhost
        redis_url = redis_url.replace("redis://", f"redis://:{redis_password}@", 1)
    return redis_url


def get_redis_client(url: Optional[str] = None, config: Optional[Settings] = None) -> Redis:
    """Get Redis client (creates fresh client to avoid event loop issues)."""
    config = config or settings
    return Redis.from_url(
        url=url or _redis_url(config),
        decode_responses=False,  # Keep as bytes for RedisVL compatibility
        socket_timeout=config.redis_timeout,
        socket_connect_timeout=config.redis_connect_timeout,
    )


def get_knowledge_index(
    config: Optional[Settings] = None, redis_client: Optional[Redis] = None
) -> AsyncSearchIndex:
    """Get the knowledge index (creates fresh to avoid event loop issues)."""
    config = config or settings
    schema = IndexSchema.from_dict(build_knowledge_schema(config))
    client = redis_client or get_redis_client(config=config)
    return AsyncSearchIndex(schema=schema, redis_client=client)


async def check_redis_connection(url: Optional[str] = None) -> bool:
    """Check Redis connection health.

    Args:
        url: Optional Redis URL to check. If not provided, uses default from settings.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        client = get_redis_client(url=url)
        await client.ping()
        await client.aclose()
        return True
    except Exception as e:
        logger.error(f"Redis connection test failed: {e}")
        return False


def mask_url(url: str) -> str:
    """Hide credentials embedded in a connection URL."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    user = credentials.split(":", 1)[0] if ":" in credentials else ""
    return f"{scheme}://{user}:***@{host}"
