from datetime import date, timedelta

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from cinemarco import database, tmdb
from cinemarco.models import TmdbCache, utcnow


def _movie_payload(movie_id=603):
    return {
        "id": movie_id,
        "title": "The Matrix",
        "release_date": "1999-03-31",
        "runtime": 136,
        "genres": [{"id": 878, "name": "Science Fiction"}],
        "belongs_to_collection": {"id": 2344, "name": "The Matrix Collection"},
        "credits": {
            "cast": [{"id": 6384, "name": "Keanu Reeves", "character": "Neo", "order": 0}],
            "crew": [{"id": 9340, "name": "Lana Wachowski", "department": "Directing", "job": "Director"}],
        },
    }


async def test_movie_details_are_parsed_and_cached(db, mock_http):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_movie_payload())

    mock_http(tmdb, handler)
    details = await tmdb.get_movie_details(603)
    again = await tmdb.get_movie_details(603)

    assert len(requests) == 1
    assert requests[0].url.params["api_key"] == "test-tmdb-key"
    assert requests[0].url.params["append_to_response"] == "credits"
    assert details["release_date"] == date(1999, 3, 31)
    assert details["genres"] == ["Science Fiction"]
    assert details["collection"] == {"tmdb_collection_id": 2344, "name": "The Matrix Collection"}
    assert details["cast"][0]["tmdb_person_id"] == 6384
    assert again == details

    row = await db.get(TmdbCache, "movie:603")
    assert row is not None
    assert row.expires_at > utcnow() + timedelta(hours=23)


async def test_search_uses_lowercased_cache_key(db, mock_http):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "results": [
                    {"id": 1396, "name": "Breaking Bad", "first_air_date": "2008-01-20", "popularity": 300.5},
                ]
            },
        )

    mock_http(tmdb, handler)
    results = await tmdb.search_series("Breaking BAD")
    assert results[0]["media_type"] == "series"
    assert results[0]["title"] == "Breaking Bad"
    assert results[0]["release_date"] == date(2008, 1, 20)

    keys = (await db.execute(select(TmdbCache.cache_key))).scalars().all()
    assert keys == ["search:tv:breaking bad"]


async def test_search_with_year_sends_year_filter(db, mock_http):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"results": []})

    mock_http(tmdb, handler)
    await tmdb.search_movies("Heat", 1995)
    await tmdb.search_series("Breaking Bad", 2008)
    await tmdb.search_movies("Heat")

    assert requests[0].url.params["year"] == "1995"
    assert requests[1].url.params["first_air_date_year"] == "2008"
    assert "year" not in requests[2].url.params
    keys = set((await db.execute(select(TmdbCache.cache_key))).scalars().all())
    assert keys == {"search:movie:heat:1995", "search:tv:breaking bad:2008", "search:movie:heat"}


class _LockedSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def get(self, *args, **kwargs):
        return None

    async def execute(self, *args, **kwargs):
        raise OperationalError("INSERT INTO tmdb_cache", {}, Exception("database is locked"))

    async def commit(self):
        return None


async def test_locked_cache_write_still_returns_details(db, mock_http, monkeypatch):
    mock_http(tmdb, lambda request: httpx.Response(200, json=_movie_payload()))
    monkeypatch.setattr(database, "async_session", _LockedSession)

    details = await tmdb.get_movie_details(603)
    assert details["title"] == "The Matrix"


async def test_multi_search_skips_people(db, mock_http):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "results": [
                    {"id": 1, "media_type": "movie", "title": "Alien"},
                    {"id": 2, "media_type": "person", "name": "Sigourney Weaver"},
                    {"id": 3, "media_type": "tv", "name": "Alien: Earth"},
                ]
            },
        )

    mock_http(tmdb, handler)
    results = await tmdb.search_all("alien")
    assert [(r["tmdb_id"], r["media_type"]) for r in results] == [(1, "movie"), (3, "series")]


async def test_not_found_raises_and_search_errors_return_empty(db, mock_http):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/3/search"):
            return httpx.Response(500, json={})
        return httpx.Response(404, json={"status_message": "missing"})

    mock_http(tmdb, handler)
    with pytest.raises(tmdb.TmdbNotFound):
        await tmdb.get_series_details(99999)
    assert await tmdb.search_movies("anything") == []
    assert await tmdb.search_movies("   ") == []


async def test_rate_limited_request_is_retried_once(db, mock_http):
    statuses = iter([429, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        return httpx.Response(status, json={"results": []} if status == 200 else {})

    mock_http(tmdb, handler)
    assert await tmdb.get_trending_movies() == []
    assert next(statuses, None) is None


async def test_missing_api_key_raises(db, monkeypatch):
    monkeypatch.delenv("TMDB_API_KEY")
    with pytest.raises(tmdb.TmdbError, match="TMDB_API_KEY"):
        await tmdb.get_movie_details(1)
    health = await tmdb.health_check()
    assert health["ok"] is False


async def test_cache_stats_and_clearing(db):
    now = utcnow()
    db.add_all(
        [
            TmdbCache(cache_key="movie:1", response='{"id": 1}', created_at=now, expires_at=now + timedelta(hours=1)),
            TmdbCache(cache_key="tv:2", response='{"id": 2}', created_at=now, expires_at=now - timedelta(hours=1)),
            TmdbCache(cache_key="tv:2:season:1", response="{}", created_at=now, expires_at=now - timedelta(minutes=1)),
        ]
    )
    await db.commit()

    stats = await tmdb.get_cache_stats(db)
    assert stats["total_entries"] == 3
    assert stats["expired_entries"] == 2
    assert stats["entries_by_type"] == {"movie": 1, "tv": 2}
    assert stats["total_size_bytes"] == len('{"id": 1}') + len('{"id": 2}') + 2

    removed = await tmdb.clear_expired_cache(db)
    assert removed == {"entries_removed": 2, "bytes_freed": len('{"id": 2}') + 2}
    assert (await tmdb.get_cache_stats(db))["total_entries"] == 1

    cleared = await tmdb.clear_all_cache(db)
    assert cleared["entries_removed"] == 1


async def test_expired_cache_row_is_refetched(db, mock_http):
    now = utcnow()
    db.add(TmdbCache(cache_key="tv:7", response='{"id": 7, "name": "Old"}', created_at=now, expires_at=now))
    await db.commit()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 7, "name": "New", "episode_run_time": [42]})

    mock_http(tmdb, handler)
    details = await tmdb.get_series_details(7)
    assert details["name"] == "New"
    assert details["episode_run_time"] == 42


def test_job_to_role():
    assert tmdb.job_to_role("Director") == "director"
    assert tmdb.job_to_role("Screenplay") == "writer"
    assert tmdb.job_to_role("Original Music Composer") == "composer"
    assert tmdb.job_to_role("Grip", "Crew") == "other:Crew"
    assert tmdb.image_url("/abc.jpg") == "https://image.tmdb.org/t/p/w500/abc.jpg"
    assert tmdb.image_url(None) is None
