"""
Process-level wiring: build the cache, client, repository and
orchestrator from :class:`~caseprep.config.Settings`.

Shared by the API lifespan and the CLI so both run the same stack.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine

from caseprep.ai.client import AIClientSettings, ResilientClient, RetryPolicy
from caseprep.cache.store import CacheConfig, CacheStore
from caseprep.config import Settings
from caseprep.db.engine import get_engine, get_session_factory, init_db
from caseprep.db.repositories import SqlFeedbackRepository
from caseprep.feedback.orchestrator import FeedbackOrchestrator
from caseprep.feedback.repository import FeedbackRepository, InMemoryFeedbackRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Long-lived components owned by one process."""

    cache: CacheStore
    orchestrator: FeedbackOrchestrator
    engine: Optional[AsyncEngine] = None

    async def aclose(self) -> None:
        await self.cache.close()
        if self.engine is not None:
            await self.engine.dispose()


async def build_repository(settings: Settings) -> Tuple[FeedbackRepository, Optional[AsyncEngine]]:
    """SQL repository when ``database.url`` is set, in-memory otherwise."""
    if not settings.database.url:
        logger.warning("No database URL configured, feedback is kept in memory")
        return InMemoryFeedbackRepository(), None

    engine = get_engine(settings.database.url, echo=settings.database.echo)
    try:
        await init_db(engine)
    except Exception:
        await engine.dispose()
        raise
    return SqlFeedbackRepository(get_session_factory(engine)), engine


async def build_services(settings: Settings) -> Services:
    """Connect the cache and assemble the orchestrator.

    Raises:
        ConfigurationError: If the cache, AI or retry settings are invalid.
        CacheConnectionError: If Redis is unreachable.
    """
    cache = CacheStore(
        CacheConfig(
            url=settings.cache.url,
            ttl_by_category=settings.cache.ttl_by_category,
            max_size=settings.cache.max_size,
            key_prefix=settings.cache.key_prefix,
        )
    )
    client = ResilientClient(
        AIClientSettings(
            api_key=settings.ai.api_key,
            model=settings.ai.model,
            max_tokens=settings.ai.max_tokens,
            temperature=settings.ai.temperature,
        ),
        RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            inter_attempt_delay=settings.retry.inter_attempt_delay_seconds,
            per_attempt_timeout=settings.retry.per_attempt_timeout_seconds,
        ),
    )
    await cache.connect()

    engine: Optional[AsyncEngine] = None
    try:
        repository, engine = await build_repository(settings)
        orchestrator = FeedbackOrchestrator(
            cache,
            client,
            repository,
            freshness_seconds=settings.feedback.freshness_seconds,
            cache_category=settings.feedback.cache_category,
        )
    except Exception:
        await cache.close()
        if engine is not None:
            await engine.dispose()
        raise
    logger.info(
        "Feedback services ready",
        extra={
            "model": settings.ai.model,
            "repository": type(repository).__name__,
        },
    )
    return Services(cache=cache, orchestrator=orchestrator, engine=engine)
