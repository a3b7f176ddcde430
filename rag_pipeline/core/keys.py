"""
Redis key construction utilities.

Centralizes all Redis key construction so the cache and index never disagree on
naming.
"""

DEFAULT_CACHE_PREFIX = "rag_cache"


class RedisKeys:
    """Utility class for constructing Redis keys with consistent naming conventions."""

    # ============================================================================
    # Document cache keys
    # ============================================================================

    @staticmethod
    def cache_entry(document_id: str, prefix: str = DEFAULT_CACHE_PREFIX) -> str:
        """Key for the cache hash of one document."""
        return f"{prefix}:doc:{document_id}"

    @staticmethod
    def cache_entry_pattern(prefix: str = DEFAULT_CACHE_PREFIX) -> str:
        """Match pattern for every cache entry."""
        return f"{prefix}:doc:*"

    @staticmethod
    def document_id_from_cache_key(key: str | bytes, prefix: str = DEFAULT_CACHE_PREFIX) -> str:
        """Inverse of ``cache_entry``."""
        if isinstance(key, bytes):
            key = key.decode("utf-8")
        return key[len(f"{prefix}:doc:") :]

    # ============================================================================
    # Search index keys
    # ============================================================================

    @staticmethod
    def index_prefix(index_name: str) -> str:
        """Key prefix of every document stored in the search index."""
        return f"{index_name}:"
