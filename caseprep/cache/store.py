"""
Redis-backed, category-scoped cache for the feedback pipeline.

Every value is stored as JSON under ``{key_prefix}:{key}`` with an
absolute expiry taken from the TTL registered for its category.  A sorted
set at ``{key_prefix}#index`` tracks live keys scored by expiry time, so
the size bound is checked without scanning the namespace.

The store is created once at process startup and handed to its
consumers; the underlying connection is reused for the lifetime of the
process.

Write-side encode failures are raised to the caller.  Read-side decode
failures are logged and reported as a miss.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from caseprep.exceptions import (
    CacheConnectionError,
    CacheNotConnectedError,
    ConfigurationError,
    SerializationError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    """Connection and TTL configuration for :class:`CacheStore`.

    Attributes:
        url: Redis connection URL (e.g. ``redis://localhost:6379/0``).
        ttl_by_category: Category name to TTL in whole seconds.
        max_size: Upper bound on entries held in this namespace.
        key_prefix: Namespace prepended to every key.
    """

    url: str
    ttl_by_category: Dict[str, int] = field(default_factory=dict)
    max_size: int = 10000
    key_prefix: str = "caseprep"


class CacheStats(BaseModel):
    """Hit/miss counters for this process.

    Attributes:
        hits: Lookups that returned a value.
        misses: Lookups that returned nothing (absent, expired or undecodable).
        hit_rate: Ratio of hits to total lookups (0.0 if no lookups).
        skipped_writes: Writes dropped because the namespace was full.
    """

    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    skipped_writes: int = 0


def _encode_default(value: Any) -> Any:
    """``json.dumps`` fallback for the types the pipeline caches."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _serialize(value: Any) -> str:
    try:
        return json.dumps(value, default=_encode_default)
    except (TypeError, ValueError, RecursionError) as exc:
        raise SerializationError(
            f"Cache value cannot be serialized: {exc}",
            details={"value_type": type(value).__name__},
        ) from exc


def _validate_config(config: CacheConfig) -> None:
    if not config.url or not config.url.strip():
        raise ConfigurationError("Cache URL is required")
    if not config.ttl_by_category:
        raise ConfigurationError("Cache TTL configuration is required")
    for category, ttl in config.ttl_by_category.items():
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ConfigurationError(
                f"TTL for cache category '{category}' must be a positive integer",
                details={"category": category, "ttl": ttl},
            )
    if isinstance(config.max_size, bool) or not isinstance(config.max_size, int) or config.max_size <= 0:
        raise ConfigurationError(
            "Invalid cache max size configuration",
            details={"max_size": config.max_size},
        )


class CacheStore:
    """Typed, TTL-scoped key/value cache over Redis.

    Configuration is validated at construction.  :meth:`connect` must
    succeed before any read or write is accepted.

    Args:
        config: URL, per-category TTLs and size bound.
        _redis_client: Pre-built async client (tests inject fakeredis).

    Raises:
        ConfigurationError: If the URL or TTL map is empty, a TTL is not
            a positive integer, or ``max_size`` is not positive.
    """

    def __init__(
        self,
        config: CacheConfig,
        _redis_client: Optional[Any] = None,
    ) -> None:
        _validate_config(config)
        self._config = config
        self._ttl = dict(config.ttl_by_category)
        self._key_prefix = config.key_prefix.rstrip(":")
        self._index_key = f"{self._key_prefix}#index"
        self._client = _redis_client
        self._connected = False
        self._hits = 0
        self._misses = 0
        self._skipped_writes = 0

    @property
    def connected(self) -> bool:
        """Whether :meth:`connect` has completed successfully."""
        return self._connected

    @property
    def categories(self) -> Dict[str, int]:
        """Registered categories and their TTLs in seconds."""
        return dict(self._ttl)

    def _key(self, key: str) -> str:
        """Return the namespaced Redis key."""
        return f"{self._key_prefix}:{key}"

    def _require_connection(self) -> Any:
        if not self._connected or self._client is None:
            raise CacheNotConnectedError("Cache not connected; call connect() first")
        return self._client

    async def connect(self) -> None:
        """Validate the connection with a PING round trip.

        Safe to call repeatedly; the client is created once and reused.

        Raises:
            CacheConnectionError: If the store is unreachable.
        """
        if self._connected:
            return
        if self._client is None:
            self._client = aioredis.from_url(self._config.url, decode_responses=True)
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            logger.error(
                "Cache connection failed",
                extra={"error": str(exc)},
            )
            raise CacheConnectionError(
                "Cache connection failed", details={"error": str(exc)}
            ) from exc
        self._connected = True
        logger.info("Cache connected", extra={"key_prefix": self._key_prefix})

    async def close(self) -> None:
        """Release the underlying connection."""
        if self._client is not None:
            await self._client.aclose()
        self._connected = False

    async def set(self, key: str, value: Any, category: str) -> None:
        """Store *value* under *key* with the TTL registered for *category*.

        The value is encoded before anything is written, so a failed
        encode leaves any previous value for the key untouched.

        Args:
            key: Cache key (must not be empty).
            value: JSON-encodable value or pydantic model.
            category: Registered TTL category.

        Raises:
            ValidationError: If the key is empty or the value is ``None``.
            ConfigurationError: If the category has no registered TTL.
            SerializationError: If the value cannot be encoded.
            CacheConnectionError: If the store is unreachable.
        """
        client = self._require_connection()
        if not key or not isinstance(key, str) or not key.strip():
            raise ValidationError("Cache key must not be empty")
        if value is None:
            raise ValidationError("Cache value must not be None", details={"key": key})
        ttl = self._ttl.get(category)
        if ttl is None:
            raise ConfigurationError(
                f"Cache category '{category}' has no registered TTL",
                details={"category": category},
            )
        payload = _serialize(value)
        rkey = self._key(key)
        now = time.time()
        try:
            async with client.pipeline(transaction=False) as pipe:
                pipe.zremrangebyscore(self._index_key, "-inf", now)
                pipe.zscore(self._index_key, rkey)
                pipe.zcard(self._index_key)
                _, existing, size = await pipe.execute()
            if existing is None and size >= self._config.max_size:
                self._skipped_writes += 1
                logger.warning(
                    "Cache full, write skipped",
                    extra={"cache_key": key, "max_size": self._config.max_size},
                )
                return
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(rkey, payload, ex=ttl)
                pipe.zadd(self._index_key, {rkey: now + ttl})
                await pipe.execute()
        except RedisError as exc:
            logger.error("Cache set failed", extra={"cache_key": key, "error": str(exc)})
            raise CacheConnectionError(
                "Cache set failed", details={"key": key, "error": str(exc)}
            ) from exc
        logger.debug("Cache set", extra={"cache_key": key, "category": category, "ttl": ttl})

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value for *key*, or ``None`` on a miss.

        Args:
            key: Cache key.

        Returns:
            The stored value, or ``None`` if absent, expired or undecodable.

        Raises:
            ValidationError: If the key is empty.
            CacheConnectionError: If the store is unreachable.
        """
        client = self._require_connection()
        if not key or not isinstance(key, str) or not key.strip():
            raise ValidationError("Cache key must not be empty")
        rkey = self._key(key)
        try:
            data = await client.get(rkey)
        except RedisError as exc:
            logger.error("Cache get failed", extra={"cache_key": key, "error": str(exc)})
            raise CacheConnectionError(
                "Cache get failed", details={"key": key, "error": str(exc)}
            ) from exc

        if data is None:
            self._misses += 1
            return None

        try:
            value = json.loads(data)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "Cache entry deserialize failed",
                extra={"cache_key": key, "error": str(exc)},
            )
            self._misses += 1
            try:
                await self._remove(client, rkey)
            except RedisError:
                logger.warning("Cache cleanup of bad entry failed", extra={"cache_key": key})
            return None

        self._hits += 1
        logger.debug("Cache hit", extra={"cache_key": key})
        return value

    async def delete(self, key: str) -> None:
        """Remove *key*; a missing key is not an error."""
        client = self._require_connection()
        if not key:
            return
        try:
            deleted = await self._remove(client, self._key(key))
        except RedisError as exc:
            logger.error("Cache delete failed", extra={"cache_key": key, "error": str(exc)})
            raise CacheConnectionError(
                "Cache delete failed", details={"key": key, "error": str(exc)}
            ) from exc
        if deleted:
            logger.info("Cache entry invalidated", extra={"cache_key": key})

    async def clear(self) -> int:
        """Remove every entry in this store's namespace.

        Returns:
            Number of entries removed.
        """
        client = self._require_connection()
        try:
            keys = [k async for k in client.scan_iter(match=f"{self._key_prefix}:*")]
            await client.delete(*keys, self._index_key)
        except RedisError as exc:
            logger.error("Cache clear failed", extra={"error": str(exc)})
            raise CacheConnectionError(
                "Cache clear failed", details={"error": str(exc)}
            ) from exc
        logger.info("Cache cleared", extra={"entries_removed": len(keys)})
        return len(keys)

    async def _remove(self, client: Any, rkey: str) -> int:
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(rkey)
            pipe.zrem(self._index_key, rkey)
            deleted, _ = await pipe.execute()
        return deleted

    def stats(self) -> CacheStats:
        """Return hit/miss counters for this process."""
        total = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total > 0 else 0.0,
            skipped_writes=self._skipped_writes,
        )
