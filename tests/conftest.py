import httpx
import pytest

from cinemarco import database, json_import, tmdb, trakt, trakt_import
from cinemarco.ratelimit import limiter
from cinemarco.throttle import MinIntervalLimiter

from payloads import FakeTmdb


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("TMDB_API_KEY", "test-tmdb-key")
    monkeypatch.setenv("TRAKT_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("TRAKT_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setattr(tmdb, "_limiter", MinIntervalLimiter(0))
    monkeypatch.setattr(trakt, "_limiter", MinIntervalLimiter(0))
    monkeypatch.setattr(tmdb, "RATE_LIMIT_RETRY_SECONDS", 0)
    monkeypatch.setattr(trakt, "RATE_LIMIT_RETRY_SECONDS", 0)
    monkeypatch.setattr(trakt_import, "_progress", trakt_import.ImportProgress())
    monkeypatch.setattr(json_import, "_progress", json_import.JsonImportProgress())
    monkeypatch.setattr(json_import, "_last_result", None)
    limiter.reset()


@pytest.fixture
async def db(tmp_path):
    database.configure(f"sqlite+aiosqlite:///{tmp_path / 'cinemarco-test.db'}")
    await database.init_db()
    async with database.async_session() as session:
        yield session
    await database.close_db()


@pytest.fixture
def fake_tmdb(monkeypatch):
    fake = FakeTmdb()
    monkeypatch.setattr(tmdb, "get_movie_details", fake.get_movie_details)
    monkeypatch.setattr(tmdb, "get_series_details", fake.get_series_details)
    monkeypatch.setattr(tmdb, "get_season_details", fake.get_season_details)
    monkeypatch.setattr(tmdb, "search_movies", fake.search_movies)
    monkeypatch.setattr(tmdb, "search_series", fake.search_series)
    return fake


@pytest.fixture
async def mock_http():
    """Route gateway traffic through an httpx.MockTransport handler."""
    clients = []

    def install(module, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        module._client = client
        clients.append((module, client))
        return client

    yield install
    for module, client in clients:
        module._client = None
        await client.aclose()

