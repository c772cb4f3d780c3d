import asyncio
import json
import logging
import os
from datetime import date, timedelta

import httpx
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from . import database
from .models import TmdbCache, utcnow
from .throttle import MinIntervalLimiter

logger = logging.getLogger(__name__)

BASE_URL = "https://api.themoviedb.org/3"
IMAGE_BASE_URL = "https://image.tmdb.org/t/p"

# Hours each kind of response stays fresh in the persistent cache.
CACHE_HOURS = {
    "search": 1,
    "movie": 24,
    "tv": 24,
    "season": 24,
    "person": 168,
    "filmography": 168,
    "credits": 24,
    "collection": 168,
    "trending": 1,
}
RATE_LIMIT_RETRY_SECONDS = 1.0

_client: httpx.AsyncClient | None = None
_limiter = MinIntervalLimiter(0.25)


class TmdbError(RuntimeError):
    pass


class TmdbNotFound(TmdbError):
    pass


def _get_api_key() -> str:
    key = os.environ.get("TMDB_API_KEY", "")
    if not key:
        raise TmdbError("TMDB_API_KEY environment variable not set.")
    return key


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=30, headers={"Accept": "application/json"})
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def _read_cache(cache_key: str):
    async with database.async_session() as db:
        row = await db.get(TmdbCache, cache_key)
        if row is None or row.expires_at <= utcnow():
            return None
        return json.loads(row.response)


async def _write_cache(cache_key: str, body: str, hours: int) -> None:
    now = utcnow()
    stmt = sqlite_insert(TmdbCache).values(
        cache_key=cache_key,
        response=body,
        created_at=now,
        expires_at=now + timedelta(hours=hours),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[TmdbCache.cache_key],
        set_={
            "response": stmt.excluded.response,
            "created_at": stmt.excluded.created_at,
            "expires_at": stmt.excluded.expires_at,
        },
    )
    try:
        async with database.async_session() as db:
            await db.execute(stmt)
            await db.commit()
    except OperationalError as exc:
        # The cache is advisory; a locked database must not fail the lookup.
        logger.warning("Skipping TMDB cache write for %s: %s", cache_key, exc)


async def _send(url: str, params: dict) -> httpx.Response:
    client = await _get_client()
    await _limiter.wait()
    try:
        resp = await client.get(url, params=params)
        if resp.status_code == 429:
            logger.warning("TMDB rate limited request to %s; retrying once", url)
            await asyncio.sleep(RATE_LIMIT_RETRY_SECONDS)
            await _limiter.wait()
            resp = await client.get(url, params=params)
            if resp.status_code != 200:
                raise TmdbError(f"TMDB API rate limited: {resp.status_code}")
    except httpx.HTTPError as exc:
        raise TmdbError(f"Network error: {exc}") from exc
    return resp


async def _get(path: str, cache_key: str, hours: int, params: dict | None = None):
    api_key = _get_api_key()
    cached = await _read_cache(cache_key)
    if cached is not None:
        return cached
    query = dict(params or {})
    query["api_key"] = api_key
    resp = await _send(f"{BASE_URL}{path}", query)
    if resp.status_code == 404:
        raise TmdbNotFound("Not found on TMDB")
    if resp.status_code != 200:
        raise TmdbError(f"TMDB API error: {resp.status_code}")
    data = resp.json()
    await _write_cache(cache_key, resp.text, hours)
    return data


def _parse_date(value) -> date | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def _text(value) -> str | None:
    raw = str(value).strip() if value is not None else ""
    return raw or None


def _genres(values: list[dict] | None) -> list[str]:
    return [str(g["name"]) for g in values or [] if g.get("name")]


def _parse_search_result(row: dict, media_type: str) -> dict:
    if media_type == "movie":
        title = row.get("title") or row.get("original_title") or ""
        released = row.get("release_date")
    else:
        title = row.get("name") or row.get("original_name") or ""
        released = row.get("first_air_date")
    return {
        "tmdb_id": int(row["id"]),
        "media_type": media_type,
        "title": title,
        "release_date": _parse_date(released),
        "poster_path": _text(row.get("poster_path")),
        "overview": _text(row.get("overview")),
        "vote_average": row.get("vote_average"),
        "popularity": row.get("popularity"),
    }


def _parse_cast(rows: list[dict] | None) -> list[dict]:
    return [
        {
            "tmdb_person_id": int(person["id"]),
            "name": person.get("name") or "",
            "character": _text(person.get("character")),
            "profile_path": _text(person.get("profile_path")),
            "order": person["order"] if person.get("order") is not None else 999,
        }
        for person in rows or []
    ]


def _parse_crew(rows: list[dict] | None) -> list[dict]:
    return [
        {
            "tmdb_person_id": int(person["id"]),
            "name": person.get("name") or "",
            "department": person.get("department") or "",
            "job": person.get("job") or "",
            "profile_path": _text(person.get("profile_path")),
        }
        for person in rows or []
    ]


def job_to_role(job: str, department: str = "") -> str:
    normalized = (job or "").strip().lower()
    if normalized == "director":
        return "director"
    if normalized in ("writer", "screenplay", "story"):
        return "writer"
    if normalized in ("director of photography", "cinematographer"):
        return "cinematographer"
    if normalized in ("original music composer", "composer", "music"):
        return "composer"
    if normalized == "producer":
        return "producer"
    if normalized == "executive producer":
        return "executive_producer"
    if normalized == "creator":
        return "created_by"
    return f"other:{department}" if department else "other"


def _parse_movie_details(data: dict) -> dict:
    credits = data.get("credits") or {}
    collection = data.get("belongs_to_collection") or None
    return {
        "tmdb_id": int(data["id"]),
        "title": data.get("title") or "",
        "original_title": _text(data.get("original_title")),
        "overview": _text(data.get("overview")),
        "release_date": _parse_date(data.get("release_date")),
        "runtime_minutes": data.get("runtime") or None,
        "poster_path": _text(data.get("poster_path")),
        "backdrop_path": _text(data.get("backdrop_path")),
        "genres": _genres(data.get("genres")),
        "original_language": _text(data.get("original_language")),
        "vote_average": data.get("vote_average"),
        "vote_count": data.get("vote_count"),
        "tagline": _text(data.get("tagline")),
        "imdb_id": _text(data.get("imdb_id")),
        "collection": (
            {"tmdb_collection_id": int(collection["id"]), "name": collection.get("name") or ""}
            if collection and collection.get("id")
            else None
        ),
        "cast": _parse_cast(credits.get("cast")),
        "crew": _parse_crew(credits.get("crew")),
    }


def _parse_season_summary(row: dict) -> dict:
    return {
        "season_number": row.get("season_number") or 0,
        "name": _text(row.get("name")),
        "overview": _text(row.get("overview")),
        "poster_path": _text(row.get("poster_path")),
        "air_date": _parse_date(row.get("air_date")),
        "episode_count": row.get("episode_count") or 0,
    }


def _parse_series_details(data: dict) -> dict:
    credits = data.get("credits") or {}
    run_times = data.get("episode_run_time") or []
    return {
        "tmdb_id": int(data["id"]),
        "name": data.get("name") or "",
        "original_name": _text(data.get("original_name")),
        "overview": _text(data.get("overview")),
        "first_air_date": _parse_date(data.get("first_air_date")),
        "last_air_date": _parse_date(data.get("last_air_date")),
        "poster_path": _text(data.get("poster_path")),
        "backdrop_path": _text(data.get("backdrop_path")),
        "genres": _genres(data.get("genres")),
        "original_language": _text(data.get("original_language")),
        "vote_average": data.get("vote_average"),
        "vote_count": data.get("vote_count"),
        "status": data.get("status") or "Unknown",
        "number_of_seasons": data.get("number_of_seasons") or 0,
        "number_of_episodes": data.get("number_of_episodes") or 0,
        "episode_run_time": int(run_times[0]) if run_times else None,
        "seasons": [_parse_season_summary(row) for row in data.get("seasons") or []],
        "cast": _parse_cast(credits.get("cast")),
        "crew": _parse_crew(credits.get("crew")),
    }


def _parse_season_details(series_id: int, data: dict) -> dict:
    return {
        "tmdb_series_id": series_id,
        "season_number": data.get("season_number") or 0,
        "name": _text(data.get("name")),
        "overview": _text(data.get("overview")),
        "poster_path": _text(data.get("poster_path")),
        "air_date": _parse_date(data.get("air_date")),
        "episodes": [
            {
                "episode_number": row.get("episode_number") or 0,
                "name": row.get("name") or "",
                "overview": _text(row.get("overview")),
                "air_date": _parse_date(row.get("air_date")),
                "runtime_minutes": row.get("runtime") or None,
                "still_path": _text(row.get("still_path")),
            }
            for row in data.get("episodes") or []
        ],
    }


def _parse_filmography_work(row: dict, is_actor: bool) -> dict:
    media_type = "series" if row.get("media_type") == "tv" else "movie"
    work = _parse_search_result(row, media_type)
    if is_actor:
        work["role"] = "actor"
        work["character"] = _text(row.get("character"))
    else:
        work["role"] = job_to_role(row.get("job") or "", row.get("department") or "")
    return work


def _search_cache_key(kind: str, query: str, year: int | None) -> str:
    key = f"search:{kind}:{query.lower()}"
    return f"{key}:{year}" if year else key


async def search_movies(query: str, year: int | None = None) -> list[dict]:
    if not (query or "").strip():
        return []
    params = {"query": query, "include_adult": "false"}
    if year:
        params["year"] = year
    try:
        data = await _get(
            "/search/movie",
            _search_cache_key("movie", query, year),
            CACHE_HOURS["search"],
            params,
        )
    except TmdbError as exc:
        logger.warning("TMDB movie search failed for %r: %s", query, exc)
        return []
    return [_parse_search_result(row, "movie") for row in data.get("results", [])]


async def search_series(query: str, year: int | None = None) -> list[dict]:
    if not (query or "").strip():
        return []
    params = {"query": query, "include_adult": "false"}
    if year:
        params["first_air_date_year"] = year
    try:
        data = await _get(
            "/search/tv",
            _search_cache_key("tv", query, year),
            CACHE_HOURS["search"],
            params,
        )
    except TmdbError as exc:
        logger.warning("TMDB series search failed for %r: %s", query, exc)
        return []
    return [_parse_search_result(row, "series") for row in data.get("results", [])]


async def search_all(query: str) -> list[dict]:
    if not (query or "").strip():
        return []
    try:
        data = await _get(
            "/search/multi",
            f"search:multi:{query.lower()}",
            CACHE_HOURS["search"],
            {"query": query, "include_adult": "false"},
        )
    except TmdbError as exc:
        logger.warning("TMDB multi search failed for %r: %s", query, exc)
        return []
    results = []
    for row in data.get("results", []):
        kind = row.get("media_type")
        # People and other result kinds are skipped.
        if kind == "movie":
            results.append(_parse_search_result(row, "movie"))
        elif kind == "tv":
            results.append(_parse_search_result(row, "series"))
    return results


async def find_by_imdb_id(imdb_id: str) -> dict | None:
    if not (imdb_id or "").strip():
        return None
    try:
        data = await _get(
            f"/find/{imdb_id}",
            f"find:imdb:{imdb_id.lower()}",
            CACHE_HOURS["search"],
            {"external_source": "imdb_id"},
        )
    except TmdbError as exc:
        logger.warning("TMDB IMDb lookup failed for %s: %s", imdb_id, exc)
        return None
    if data.get("movie_results"):
        return _parse_search_result(data["movie_results"][0], "movie")
    if data.get("tv_results"):
        return _parse_search_result(data["tv_results"][0], "series")
    return None


async def get_movie_details(movie_id: int) -> dict:
    data = await _get(f"/movie/{movie_id}", f"movie:{movie_id}", CACHE_HOURS["movie"], {"append_to_response": "credits"})
    return _parse_movie_details(data)


async def get_series_details(series_id: int) -> dict:
    data = await _get(f"/tv/{series_id}", f"tv:{series_id}", CACHE_HOURS["tv"], {"append_to_response": "credits"})
    return _parse_series_details(data)


async def get_season_details(series_id: int, season_number: int) -> dict:
    data = await _get(
        f"/tv/{series_id}/season/{season_number}",
        f"tv:{series_id}:season:{season_number}",
        CACHE_HOURS["season"],
    )
    return _parse_season_details(series_id, data)


async def get_person_details(person_id: int) -> dict:
    data = await _get(f"/person/{person_id}", f"person:{person_id}", CACHE_HOURS["person"])
    return {
        "tmdb_person_id": int(data["id"]),
        "name": data.get("name") or "",
        "profile_path": _text(data.get("profile_path")),
        "known_for_department": _text(data.get("known_for_department")),
        "birthday": _parse_date(data.get("birthday")),
        "deathday": _parse_date(data.get("deathday")),
        "place_of_birth": _text(data.get("place_of_birth")),
        "biography": _text(data.get("biography")),
    }


async def get_person_filmography(person_id: int) -> dict:
    data = await _get(f"/person/{person_id}/combined_credits", f"person:{person_id}:credits", CACHE_HOURS["filmography"])
    return {
        "tmdb_person_id": person_id,
        "cast_credits": [_parse_filmography_work(row, True) for row in data.get("cast") or []],
        "crew_credits": [_parse_filmography_work(row, False) for row in data.get("crew") or []],
    }


async def get_movie_credits(movie_id: int) -> dict:
    data = await _get(f"/movie/{movie_id}/credits", f"movie:{movie_id}:credits", CACHE_HOURS["credits"])
    return {"cast": _parse_cast(data.get("cast")), "crew": _parse_crew(data.get("crew"))}


async def get_series_credits(series_id: int) -> dict:
    data = await _get(f"/tv/{series_id}/credits", f"tv:{series_id}:credits", CACHE_HOURS["credits"])
    return {"cast": _parse_cast(data.get("cast")), "crew": _parse_crew(data.get("crew"))}


async def get_collection(collection_id: int) -> dict:
    data = await _get(f"/collection/{collection_id}", f"collection:{collection_id}", CACHE_HOURS["collection"])
    return {
        "tmdb_collection_id": int(data["id"]),
        "name": data.get("name") or "",
        "overview": _text(data.get("overview")),
        "poster_path": _text(data.get("poster_path")),
        "backdrop_path": _text(data.get("backdrop_path")),
        "parts": [_parse_search_result(row, "movie") for row in data.get("parts") or []],
    }


async def get_trending_movies() -> list[dict]:
    try:
        data = await _get("/trending/movie/week", "trending:movie", CACHE_HOURS["trending"])
    except TmdbError as exc:
        logger.warning("TMDB trending movies failed: %s", exc)
        return []
    return [_parse_search_result(row, "movie") for row in data.get("results", [])]


async def get_trending_series() -> list[dict]:
    try:
        data = await _get("/trending/tv/week", "trending:tv", CACHE_HOURS["trending"])
    except TmdbError as exc:
        logger.warning("TMDB trending series failed: %s", exc)
        return []
    return [_parse_search_result(row, "series") for row in data.get("results", [])]


async def health_check() -> dict:
    try:
        await _get("/configuration", "health:config", 1)
    except TmdbError as exc:
        return {"ok": False, "message": str(exc)}
    return {"ok": True, "message": "Connected"}


def image_url(path: str | None, size: str = "w500") -> str | None:
    if not path:
        return None
    return f"{IMAGE_BASE_URL}/{size}{path}"


def _cache_type(cache_key: str) -> str:
    return cache_key.split(":", 1)[0]


async def get_cache_entries(db: AsyncSession) -> list[dict]:
    now = utcnow()
    rows = (
        await db.execute(
            select(
                TmdbCache.cache_key,
                func.length(TmdbCache.response),
                TmdbCache.created_at,
                TmdbCache.expires_at,
            ).order_by(TmdbCache.created_at.desc())
        )
    ).all()
    return [
        {
            "cache_key": key,
            "cache_type": _cache_type(key),
            "size_bytes": int(size or 0),
            "created_at": created_at.isoformat() if created_at else None,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "is_expired": expires_at <= now,
        }
        for key, size, created_at, expires_at in rows
    ]


async def get_cache_stats(db: AsyncSession) -> dict:
    entries = await get_cache_entries(db)
    by_type: dict[str, int] = {}
    for entry in entries:
        by_type[entry["cache_type"]] = by_type.get(entry["cache_type"], 0) + 1
    return {
        "total_entries": len(entries),
        "total_size_bytes": sum(entry["size_bytes"] for entry in entries),
        "expired_entries": sum(1 for entry in entries if entry["is_expired"]),
        "entries_by_type": by_type,
    }


async def _clear(db: AsyncSession, expired_only: bool) -> dict:
    size_stmt = select(func.count(), func.coalesce(func.sum(func.length(TmdbCache.response)), 0))
    delete_stmt = delete(TmdbCache)
    if expired_only:
        now = utcnow()
        size_stmt = size_stmt.where(TmdbCache.expires_at <= now)
        delete_stmt = delete_stmt.where(TmdbCache.expires_at <= now)
    count, size = (await db.execute(size_stmt)).one()
    await db.execute(delete_stmt)
    await db.commit()
    return {"entries_removed": int(count or 0), "bytes_freed": int(size or 0)}


async def clear_expired_cache(db: AsyncSession) -> dict:
    return await _clear(db, expired_only=True)


async def clear_all_cache(db: AsyncSession) -> dict:
    return await _clear(db, expired_only=False)
