"""Category-scoped Redis cache."""

from caseprep.cache.store import CacheConfig, CacheStats, CacheStore

__all__ = ["CacheConfig", "CacheStats", "CacheStore"]
