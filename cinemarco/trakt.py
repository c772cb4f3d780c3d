import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from . import database
from .models import TraktSettings, utcnow
from .throttle import MinIntervalLimiter

logger = logging.getLogger(__name__)

BASE_URL = "https://api.trakt.tv"
AUTHORIZE_URL = "https://trakt.tv/oauth/authorize"
USER_AGENT = "Cinemarco/1.0 (Personal Cinema Tracker)"
DEFAULT_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"
HISTORY_LIMIT = 10000
RATE_LIMIT_RETRY_SECONDS = 2.0
# Tokens are treated as expired a minute early.
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)
AUTH_EXPIRED_MESSAGE = "Trakt authentication expired. Please reconnect your account."

_client: httpx.AsyncClient | None = None
_limiter = MinIntervalLimiter(0.05)


class TraktError(RuntimeError):
    pass


class TraktAuthError(TraktError):
    pass


def _get_client_id() -> str:
    client_id = os.environ.get("TRAKT_CLIENT_ID", "")
    if not client_id:
        raise TraktError("TRAKT_CLIENT_ID environment variable not set.")
    return client_id


def _get_client_secret() -> str:
    secret = os.environ.get("TRAKT_CLIENT_SECRET", "")
    if not secret:
        raise TraktError("TRAKT_CLIENT_SECRET environment variable not set.")
    return secret


def _get_redirect_uri() -> str:
    return os.environ.get("TRAKT_REDIRECT_URI", "") or DEFAULT_REDIRECT_URI


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            timeout=30,
            headers={
                "Content-Type": "application/json",
                "trakt-api-version": "2",
                "User-Agent": USER_AGENT,
            },
        )
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


async def _load_settings(db) -> TraktSettings:
    settings = await db.get(TraktSettings, 1)
    if settings is None:
        settings = TraktSettings(id=1, auto_sync_enabled=False)
        db.add(settings)
        await db.flush()
    return settings


async def _store_tokens(payload: dict) -> None:
    access_token = str(payload.get("access_token") or "")
    if not access_token:
        raise TraktError("Trakt token response did not contain an access token")
    expires_in = int(payload.get("expires_in") or 0)
    async with database.async_session() as db:
        settings = await _load_settings(db)
        settings.access_token = access_token
        settings.refresh_token = payload.get("refresh_token") or settings.refresh_token
        settings.expires_at = utcnow() + timedelta(seconds=expires_in) - TOKEN_EXPIRY_MARGIN
        await db.commit()


async def clear_tokens() -> None:
    async with database.async_session() as db:
        settings = await _load_settings(db)
        settings.access_token = None
        settings.refresh_token = None
        settings.expires_at = None
        await db.commit()
    logger.info("Trakt tokens cleared")


async def is_authenticated() -> bool:
    async with database.async_session() as db:
        settings = await _load_settings(db)
        return bool(settings.access_token)


async def get_last_sync_time() -> datetime | None:
    async with database.async_session() as db:
        settings = await _load_settings(db)
        return settings.last_sync_at


async def set_last_sync_time(value: datetime) -> None:
    async with database.async_session() as db:
        settings = await _load_settings(db)
        settings.last_sync_at = value
        await db.commit()


async def get_settings() -> dict:
    async with database.async_session() as db:
        settings = await _load_settings(db)
        return {
            "is_authenticated": bool(settings.access_token),
            "last_sync_at": settings.last_sync_at,
            "auto_sync_enabled": bool(settings.auto_sync_enabled),
        }


def get_auth_url() -> dict:
    state = uuid.uuid4().hex
    query = urlencode(
        {
            "response_type": "code",
            "client_id": _get_client_id(),
            "redirect_uri": _get_redirect_uri(),
            "state": state,
        }
    )
    return {"url": f"{AUTHORIZE_URL}?{query}", "state": state}


async def _post_token(payload: dict) -> dict:
    client = await _get_client()
    await _limiter.wait()
    try:
        resp = await client.post(
            f"{BASE_URL}/oauth/token",
            json=payload,
            headers={"trakt-api-key": payload["client_id"]},
        )
    except httpx.HTTPError as exc:
        raise TraktError(f"Network error: {exc}") from exc
    if resp.status_code not in (200, 201):
        raise TraktError(f"Trakt API error: {resp.status_code} - {resp.text}")
    return resp.json()


async def exchange_code(code: str) -> None:
    if not (code or "").strip():
        raise TraktError("Authorization code is required")
    data = await _post_token(
        {
            "code": code.strip(),
            "client_id": _get_client_id(),
            "client_secret": _get_client_secret(),
            "redirect_uri": _get_redirect_uri(),
            "grant_type": "authorization_code",
        }
    )
    await _store_tokens(data)
    logger.info("Trakt tokens obtained via authorization code")


async def refresh_access_token() -> str | None:
    async with database.async_session() as db:
        refresh_token = (await _load_settings(db)).refresh_token
    if not refresh_token:
        return None
    try:
        data = await _post_token(
            {
                "refresh_token": refresh_token,
                "client_id": _get_client_id(),
                "client_secret": _get_client_secret(),
                "redirect_uri": _get_redirect_uri(),
                "grant_type": "refresh_token",
            }
        )
    except TraktError as exc:
        logger.error("Failed to refresh Trakt token: %s", exc)
        return None
    await _store_tokens(data)
    logger.info("Trakt access token refreshed")
    return str(data["access_token"])


async def _get_access_token() -> str:
    async with database.async_session() as db:
        settings = await _load_settings(db)
        access_token = settings.access_token
        expires_at = settings.expires_at
    if not access_token:
        raise TraktAuthError("Not authenticated with Trakt. Please connect your account first.")
    if expires_at is not None and expires_at <= utcnow():
        refreshed = await refresh_access_token()
        if refreshed:
            return refreshed
    return access_token


async def _send_get(url: str, access_token: str) -> httpx.Response:
    client = await _get_client()
    headers = {"trakt-api-key": _get_client_id(), "Authorization": f"Bearer {access_token}"}
    await _limiter.wait()
    try:
        resp = await client.get(url, headers=headers)
        if resp.status_code == 429:
            logger.warning("Trakt rate limited request to %s; retrying once", url)
            await asyncio.sleep(RATE_LIMIT_RETRY_SECONDS)
            await _limiter.wait()
            resp = await client.get(url, headers=headers)
            if resp.status_code == 429:
                raise TraktError("Trakt API rate limited")
    except httpx.HTTPError as exc:
        raise TraktError(f"Network error: {exc}") from exc
    return resp


async def _authed_get(path: str):
    _get_client_id()
    url = f"{BASE_URL}{path}"
    resp = await _send_get(url, await _get_access_token())
    if resp.status_code == 401:
        refreshed = await refresh_access_token()
        if not refreshed:
            raise TraktAuthError(AUTH_EXPIRED_MESSAGE)
        resp = await _send_get(url, refreshed)
        if resp.status_code == 401:
            raise TraktAuthError(AUTH_EXPIRED_MESSAGE)
    if resp.status_code != 200:
        raise TraktError(f"Trakt API error: {resp.status_code} - {resp.text}")
    return resp.json()


def parse_datetime(value) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in ("%m/%d/%Y %H:%M:%S", "%Y-%m-%d %H:%M:%S"):
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_start_at(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


def _tmdb_id(node: dict | None) -> int | None:
    ids = (node or {}).get("ids") or {}
    value = ids.get("tmdb")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def map_trakt_rating(rating: int) -> int:
    """Convert a 1-10 Trakt rating to the 1-5 personal scale."""
    if rating >= 9:
        return 5
    if rating >= 7:
        return 4
    if rating >= 5:
        return 3
    if rating >= 3:
        return 2
    return 1


def parse_history_movies(rows: list[dict]) -> list[dict]:
    items = []
    for row in rows or []:
        movie = row.get("movie")
        tmdb_id = _tmdb_id(movie)
        if tmdb_id is None:
            continue
        items.append(
            {
                "tmdb_id": tmdb_id,
                "media_type": "movie",
                "title": movie.get("title") or "",
                "watched_at": parse_datetime(row.get("watched_at")),
            }
        )
    return items


def parse_watched_shows(rows: list[dict]) -> list[dict]:
    items = []
    for row in rows or []:
        show = row.get("show")
        tmdb_id = _tmdb_id(show)
        if tmdb_id is None:
            continue
        items.append(
            {
                "tmdb_id": tmdb_id,
                "media_type": "series",
                "title": show.get("title") or "",
                "watched_at": parse_datetime(row.get("last_watched_at")),
            }
        )
    return items


def group_show_history(rows: list[dict], *, dedupe: bool) -> list[dict]:
    """Group episode history rows by show.

    With `dedupe` every (season, episode) pair appears once, carrying its
    earliest watch date; without it every watch is kept as returned.
    """
    shows: dict[int, dict] = {}
    for row in rows or []:
        show = row.get("show")
        episode = row.get("episode")
        if not show or not episode:
            continue
        tmdb_id = _tmdb_id(show)
        episode_number = episode.get("number")
        if tmdb_id is None or episode_number is None:
            continue
        group = shows.setdefault(
            tmdb_id,
            {"tmdb_id": tmdb_id, "title": show.get("title") or "", "last_watched_at": None, "episodes": []},
        )
        group["episodes"].append(
            {
                "season_number": int(episode.get("season") or 0),
                "episode_number": int(episode_number),
                "watched_at": parse_datetime(row.get("watched_at")),
            }
        )

    for group in shows.values():
        dates = [ep["watched_at"] for ep in group["episodes"] if ep["watched_at"] is not None]
        group["last_watched_at"] = max(dates) if dates else None
        if not dedupe:
            continue
        earliest: dict[tuple[int, int], dict] = {}
        for ep in group["episodes"]:
            key = (ep["season_number"], ep["episode_number"])
            current = earliest.get(key)
            if current is None:
                earliest[key] = dict(ep)
            elif ep["watched_at"] is not None and (
                current["watched_at"] is None or ep["watched_at"] < current["watched_at"]
            ):
                current["watched_at"] = ep["watched_at"]
        group["episodes"] = list(earliest.values())
    return list(shows.values())


def parse_ratings(rows: list[dict]) -> dict[tuple[int, str], int]:
    ratings: dict[tuple[int, str], int] = {}
    for row in rows or []:
        try:
            rating = int(row.get("rating"))
        except (TypeError, ValueError):
            continue
        kind = row.get("type")
        if kind == "movie":
            tmdb_id, media_type = _tmdb_id(row.get("movie")), "movie"
        elif kind == "show":
            tmdb_id, media_type = _tmdb_id(row.get("show")), "series"
        else:
            continue
        if tmdb_id is not None:
            ratings[(tmdb_id, media_type)] = rating
    return ratings


def parse_watchlist(rows: list[dict]) -> list[dict]:
    items = []
    for row in rows or []:
        kind = row.get("type")
        if kind == "movie":
            node, media_type = row.get("movie"), "movie"
        elif kind == "show":
            node, media_type = row.get("show"), "series"
        else:
            continue
        tmdb_id = _tmdb_id(node)
        if tmdb_id is None:
            continue
        items.append({"tmdb_id": tmdb_id, "media_type": media_type, "title": node.get("title") or "", "watched_at": None})
    return items


async def get_watched_movies() -> list[dict]:
    return parse_history_movies(await _authed_get(f"/sync/history/movies?limit={HISTORY_LIMIT}"))


async def get_watched_movies_since(since: datetime) -> list[dict]:
    path = f"/sync/history/movies?start_at={format_start_at(since)}&limit={HISTORY_LIMIT}"
    return parse_history_movies(await _authed_get(path))


async def get_watched_shows() -> list[dict]:
    return parse_watched_shows(await _authed_get("/sync/watched/shows"))


async def get_watched_shows_with_episodes() -> list[dict]:
    rows = await _authed_get(f"/sync/history/shows?limit={HISTORY_LIMIT}")
    return group_show_history(rows, dedupe=True)


async def get_watched_shows_with_episodes_since(since: datetime) -> list[dict]:
    rows = await _authed_get(f"/sync/history/shows?start_at={format_start_at(since)}&limit={HISTORY_LIMIT}")
    return group_show_history(rows, dedupe=False)


async def get_ratings() -> dict[tuple[int, str], int]:
    return parse_ratings(await _authed_get("/sync/ratings"))


async def get_watchlist() -> list[dict]:
    return parse_watchlist(await _authed_get("/sync/watchlist"))
