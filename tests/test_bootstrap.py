"""Tests for process wiring."""

import pytest

import caseprep.bootstrap as bootstrap
from caseprep.bootstrap import build_repository, build_services
from caseprep.cache.store import CacheStore
from caseprep.config import Settings
from caseprep.db.repositories import SqlFeedbackRepository
from caseprep.exceptions import ConfigurationError
from caseprep.feedback.repository import InMemoryFeedbackRepository


@pytest.fixture
def cache_lifecycle(monkeypatch):
    """Stub out the Redis round trips and record connect/close calls."""
    calls = []

    async def connect(self) -> None:
        calls.append("connect")

    async def close(self) -> None:
        calls.append("close")

    monkeypatch.setattr(CacheStore, "connect", connect)
    monkeypatch.setattr(CacheStore, "close", close)
    return calls


def _settings() -> Settings:
    settings = Settings()
    settings.ai.api_key = "sk-test"
    return settings


async def test_in_memory_repository_without_database_url() -> None:
    repository, engine = await build_repository(Settings())
    assert isinstance(repository, InMemoryFeedbackRepository)
    assert engine is None


async def test_sql_repository_with_database_url(tmp_path) -> None:
    settings = Settings()
    settings.database.url = f"sqlite+aiosqlite:///{tmp_path / 'feedback.db'}"
    repository, engine = await build_repository(settings)
    try:
        assert isinstance(repository, SqlFeedbackRepository)
        assert await repository.find_by_attempt("a1") == []
    finally:
        await engine.dispose()


async def test_engine_disposed_when_schema_setup_fails(monkeypatch) -> None:
    disposed = []

    class _Engine:
        async def dispose(self) -> None:
            disposed.append(True)

    async def failing_init_db(engine) -> None:
        raise OSError("database unreachable")

    monkeypatch.setattr(bootstrap, "get_engine", lambda url, echo=False: _Engine())
    monkeypatch.setattr(bootstrap, "init_db", failing_init_db)
    settings = Settings()
    settings.database.url = "postgresql://u:p@db/app"
    with pytest.raises(OSError, match="database unreachable"):
        await build_repository(settings)
    assert disposed == [True]


async def test_build_services_in_memory(cache_lifecycle) -> None:
    services = await build_services(_settings())
    assert isinstance(services.cache, CacheStore)
    assert services.engine is None
    await services.aclose()
    assert cache_lifecycle == ["connect", "close"]


async def test_cache_closed_when_repository_setup_fails(cache_lifecycle, monkeypatch) -> None:
    async def failing_build_repository(settings):
        raise OSError("database unreachable")

    monkeypatch.setattr(bootstrap, "build_repository", failing_build_repository)
    with pytest.raises(OSError, match="database unreachable"):
        await build_services(_settings())
    assert cache_lifecycle == ["connect", "close"]


async def test_cache_closed_when_category_unregistered(cache_lifecycle) -> None:
    settings = _settings()
    settings.feedback.cache_category = "nope"
    with pytest.raises(ConfigurationError, match="no registered TTL"):
        await build_services(settings)
    assert cache_lifecycle == ["connect", "close"]
