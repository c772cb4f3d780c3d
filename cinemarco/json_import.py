import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from difflib import SequenceMatcher
from html import unescape
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import database, library, tmdb
from .audit import add_audit_log
from .models import Friend, LibraryEntry
from .trakt_import import ImportAlreadyRunning

logger = logging.getLogger(__name__)

JSON_IMPORT_LIMIT = max(0, int(os.environ.get("JSON_IMPORT_LIMIT", "0") or "0"))
MATCH_CONCURRENCY = 4
# A best candidate this far ahead of the runner-up is taken as the match.
CLEAR_MARGIN = 15.0
MAX_CANDIDATES = 5
DEFAULT_SOURCE = "JSON Import"
RATING_BY_LABEL = {"waste": 1, "meh": 2, "decent": 3, "entertaining": 4, "outstanding": 5}
MEDIA_TYPE_ALIASES = {
    "movie": "movie",
    "film": "movie",
    "series": "series",
    "tv": "series",
    "show": "series",
}

MatchStatus = Literal["not_matched", "exact", "multiple", "no_match", "confirmed"]


class JsonImportError(ValueError):
    pass


def _parse_watch_date(value) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return library.to_utc_naive(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return library.to_utc_naive(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError as exc:
        raise ValueError(f"invalid date {raw!r}") from exc


def _coerce_year(value: str | int | None) -> int | None:
    if isinstance(value, int):
        return value if 1870 <= value <= 2200 else None
    raw = str(value or "").strip()
    if not raw:
        return None
    match = re.search(r"(\d{4})", raw)
    if not match:
        return None
    year = int(match.group(1))
    return year if 1870 <= year <= 2200 else None


class JsonSeasonWatch(BaseModel):
    season: int = Field(ge=0, validation_alias=AliasChoices("season", "seasonNumber", "season_number"))
    watched: datetime | None = Field(default=None, validation_alias=AliasChoices("watched", "watchedDate", "date"))

    parse_watched = field_validator("watched", mode="before")(_parse_watch_date)


class JsonEpisodeWatch(BaseModel):
    season: int = Field(ge=0, validation_alias=AliasChoices("season", "seasonNumber", "season_number"))
    episode: int = Field(ge=1, validation_alias=AliasChoices("episode", "episodeNumber", "episode_number"))
    watched: datetime | None = Field(default=None, validation_alias=AliasChoices("watched", "watchedDate", "date"))

    parse_watched = field_validator("watched", mode="before")(_parse_watch_date)


class JsonImportItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=500)
    year: int | None = None
    media_type: Literal["movie", "series"] = Field(
        default="movie",
        validation_alias=AliasChoices("type", "media_type", "mediaType"),
    )
    tmdb_id: int | None = Field(default=None, ge=1, validation_alias=AliasChoices("tmdbId", "tmdb_id"))
    watched: list[datetime] = Field(default_factory=list)
    seasons: list[JsonSeasonWatch] = Field(default_factory=list)
    episodes: list[JsonEpisodeWatch] = Field(default_factory=list)
    rating: int | None = Field(default=None, ge=1, le=5)
    notes: str | None = Field(default=None, max_length=10_000)
    friends: list[str] = Field(default_factory=list)
    source: str | None = Field(default=None, max_length=200)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value):
        return str(value or "").strip()

    @field_validator("year", mode="before")
    @classmethod
    def parse_year(cls, value):
        return _coerce_year(value)

    @field_validator("media_type", mode="before")
    @classmethod
    def parse_media_type(cls, value):
        normalized = MEDIA_TYPE_ALIASES.get(str(value or "movie").strip().lower())
        if normalized is None:
            raise ValueError(f"unknown type {value!r}")
        return normalized

    @field_validator("watched", mode="before")
    @classmethod
    def parse_watched(cls, value):
        if value is None:
            return []
        values = value if isinstance(value, list) else [value]
        return [parsed for parsed in (_parse_watch_date(v) for v in values) if parsed is not None]

    @field_validator("rating", mode="before")
    @classmethod
    def parse_rating(cls, value):
        if value is None or value == "":
            return None
        if isinstance(value, str) and not value.strip().isdigit():
            rating = RATING_BY_LABEL.get(value.strip().lower())
            if rating is None:
                raise ValueError(f"unknown rating {value!r}")
            return rating
        return int(value)

    @field_validator("friends", mode="before")
    @classmethod
    def parse_friends(cls, value):
        if value is None:
            return []
        values = value if isinstance(value, list) else [value]
        return [str(name).strip() for name in values if str(name or "").strip()]

    @field_validator("notes", "source", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if value is None:
            return None
        return str(value).strip() or None


class MatchCandidate(BaseModel):
    tmdb_id: int
    media_type: Literal["movie", "series"]
    title: str
    release_date: date | None = None
    poster_path: str | None = None
    overview: str | None = None
    score: float | None = None


class FriendResolution(BaseModel):
    name: str
    friend_id: int | None = None
    is_new: bool = False


class ItemPreview(BaseModel):
    index: int
    item: JsonImportItem
    status: MatchStatus = "not_matched"
    match: MatchCandidate | None = None
    candidates: list[MatchCandidate] = Field(default_factory=list)
    exists_in_library: bool = False
    friends: list[FriendResolution] = Field(default_factory=list)

    @property
    def importable(self) -> bool:
        return self.status in ("exact", "confirmed") and self.match is not None


def parse_json(content: str | bytes) -> list[JsonImportItem]:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise JsonImportError(f"Invalid JSON: {exc}") from exc

    rows = data.get("items") if isinstance(data, dict) else data
    if not isinstance(rows, list):
        raise JsonImportError('Expected a list of items or an object with an "items" list')
    if not rows:
        raise JsonImportError("No items found in the import file")
    if JSON_IMPORT_LIMIT > 0 and len(rows) > JSON_IMPORT_LIMIT:
        raise JsonImportError(f"Too many items: the limit is {JSON_IMPORT_LIMIT}")

    items: list[JsonImportItem] = []
    problems: list[str] = []
    for index, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            problems.append(f"Item {index}: expected an object")
            continue
        try:
            items.append(JsonImportItem.model_validate(row))
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'item'}: {err['msg']}" for err in exc.errors()
            )
            problems.append(f"Item {index} ({row.get('title') or 'untitled'}): {details}")
    if problems:
        shown = problems[:10]
        if len(problems) > len(shown):
            shown.append(f"... and {len(problems) - len(shown)} more")
        raise JsonImportError("\n".join(shown))
    return items


# Matching


def _normalize_title_for_match(value: str) -> str:
    normalized = unescape(str(value or "")).lower()
    normalized = normalized.replace("&", " and ")
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def score_candidate(title: str, year: int | None, candidate: dict) -> float:
    entry_title = _normalize_title_for_match(title)
    candidate_title = _normalize_title_for_match(str(candidate.get("title") or ""))
    if not entry_title or not candidate_title:
        return -1_000.0

    score = SequenceMatcher(None, entry_title, candidate_title).ratio() * 100.0
    if entry_title == candidate_title:
        score += 28.0
    elif candidate_title.startswith(entry_title) or entry_title.startswith(candidate_title):
        score += 12.0

    candidate_year = _coerce_year(str(candidate.get("release_date") or ""))
    if year is not None:
        if candidate_year is None:
            score -= 8.0
        else:
            diff = abs(candidate_year - year)
            if diff == 0:
                score += 18.0
            elif diff == 1:
                score += 8.0
            elif diff == 2:
                score += 2.0
            else:
                score -= min(40.0, float(diff * 5))

    try:
        score += min(6.0, float(candidate.get("popularity") or 0.0) / 120.0)
    except (TypeError, ValueError):
        pass
    return score


def classify_candidates(
    title: str,
    year: int | None,
    results: list[dict],
) -> tuple[MatchStatus, MatchCandidate | None, list[MatchCandidate]]:
    scored = sorted(
        ((score_candidate(title, year, row), row) for row in results),
        key=lambda pair: pair[0],
        reverse=True,
    )
    candidates = [_candidate(row, score) for score, row in scored[:MAX_CANDIDATES]]
    minimum_score = 52.0 if year is not None else 63.0
    viable = [score for score, _ in scored if score >= minimum_score]
    if not viable:
        return "no_match", None, candidates
    if len(viable) == 1 or viable[0] - viable[1] >= CLEAR_MARGIN:
        return "exact", candidates[0], candidates
    return "multiple", None, candidates[: min(len(viable), MAX_CANDIDATES)]


def _candidate(row: dict, score: float | None = None) -> MatchCandidate:
    return MatchCandidate(
        tmdb_id=row["tmdb_id"],
        media_type=row["media_type"],
        title=row.get("title") or "",
        release_date=row.get("release_date"),
        poster_path=row.get("poster_path"),
        overview=row.get("overview"),
        score=round(score, 1) if score is not None else None,
    )


async def match_item(item: JsonImportItem) -> tuple[MatchStatus, MatchCandidate | None, list[MatchCandidate]]:
    if item.tmdb_id:
        try:
            if item.media_type == "movie":
                details = await tmdb.get_movie_details(item.tmdb_id)
                row = {"title": details["title"], "release_date": details["release_date"]}
            else:
                details = await tmdb.get_series_details(item.tmdb_id)
                row = {"title": details["name"], "release_date": details["first_air_date"]}
        except tmdb.TmdbError as exc:
            logger.info("TMDB id %s for %r did not resolve: %s", item.tmdb_id, item.title, exc)
            return "no_match", None, []
        candidate = _candidate(
            {
                **row,
                "tmdb_id": item.tmdb_id,
                "media_type": item.media_type,
                "poster_path": details.get("poster_path"),
                "overview": details.get("overview"),
            }
        )
        return "exact", candidate, [candidate]

    search = tmdb.search_movies if item.media_type == "movie" else tmdb.search_series
    results = list(await search(item.title, item.year)) if item.year else []
    seen = {row["tmdb_id"] for row in results}
    for row in await search(item.title):
        if row["tmdb_id"] not in seen:
            seen.add(row["tmdb_id"])
            results.append(row)
    return classify_candidates(item.title, item.year, results)


def resolve_friends(names: list[str], known: dict[str, Friend]) -> list[FriendResolution]:
    resolved: list[FriendResolution] = []
    seen: set[str] = set()
    for name in names:
        key = name.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        friend = known.get(key)
        if friend is not None:
            resolved.append(FriendResolution(name=friend.name, friend_id=friend.id))
        else:
            resolved.append(FriendResolution(name=name.strip(), is_new=True))
    return resolved


async def _known_friends(db: AsyncSession) -> dict[str, Friend]:
    friends = (await db.execute(select(Friend).order_by(Friend.id))).scalars().all()
    known: dict[str, Friend] = {}
    for friend in friends:
        known.setdefault(friend.name.strip().lower(), friend)
    return known


async def preview(db: AsyncSession, items: list[JsonImportItem]) -> dict:
    semaphore = asyncio.Semaphore(MATCH_CONCURRENCY)
    previews: list[ItemPreview] = [ItemPreview(index=i, item=item) for i, item in enumerate(items)]

    async def _worker(row: ItemPreview) -> None:
        async with semaphore:
            row.status, row.match, row.candidates = await match_item(row.item)

    await asyncio.gather(*(_worker(row) for row in previews))

    keys = await library.library_keys(db)
    known = await _known_friends(db)
    new_friends: set[str] = set()
    for row in previews:
        if row.match is not None:
            row.exists_in_library = (row.match.tmdb_id, row.match.media_type) in keys
        row.friends = resolve_friends(row.item.friends, known)
        new_friends.update(f.name.lower() for f in row.friends if f.is_new)

    return {
        "items": [row.model_dump(mode="json") for row in previews],
        "summary": {
            "total_items": len(previews),
            "exact_matches": sum(1 for row in previews if row.status == "exact"),
            "ambiguous_matches": sum(1 for row in previews if row.status == "multiple"),
            "no_matches": sum(1 for row in previews if row.status == "no_match"),
            "already_in_library": sum(1 for row in previews if row.exists_in_library),
            "new_friends_to_create": len(new_friends),
        },
    }


async def confirm_match(db: AsyncSession, row: ItemPreview, candidate: MatchCandidate) -> ItemPreview:
    confirmed = row.model_copy(update={"status": "confirmed", "match": candidate})
    confirmed.exists_in_library = (
        await library.find_entry(db, candidate.tmdb_id, candidate.media_type)
    ) is not None
    return confirmed


# Import


@dataclass
class JsonImportProgress:
    in_progress: bool = False
    current_item: str | None = None
    current_index: int = 0
    total_items: int = 0
    completed_successfully: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    cancellation_requested: bool = False

    def snapshot(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "current_item": self.current_item,
            "current_index": self.current_index,
            "total_items": self.total_items,
            "completed_successfully": self.completed_successfully,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass
class JsonImportResult:
    imported_movies: int = 0
    imported_series: int = 0
    added_watch_sessions: int = 0
    imported_episodes: int = 0
    created_friends: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "imported_movies": self.imported_movies,
            "imported_series": self.imported_series,
            "added_watch_sessions": self.added_watch_sessions,
            "imported_episodes": self.imported_episodes,
            "created_friends": self.created_friends,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


_progress = JsonImportProgress()
_last_result: JsonImportResult | None = None


def get_import_status() -> dict:
    return _progress.snapshot()


def get_last_result() -> dict | None:
    return _last_result.as_dict() if _last_result else None


def request_cancel() -> bool:
    if not _progress.in_progress:
        return False
    _progress.cancellation_requested = True
    return True


def begin_import(total_items: int) -> None:
    global _progress
    if _progress.in_progress:
        raise ImportAlreadyRunning("An import is already in progress")
    _progress = JsonImportProgress(in_progress=True, total_items=total_items)


@dataclass
class _ItemCounts:
    movies: int = 0
    series: int = 0
    sessions: int = 0
    episodes: int = 0
    new_friends: dict[str, int] = field(default_factory=dict)


async def _resolve_friend_ids(
    db: AsyncSession,
    names: list[str],
    friend_ids: dict[str, int],
    counts: _ItemCounts,
) -> list[int]:
    resolved: list[int] = []
    for name in names:
        key = name.strip().lower()
        if not key:
            continue
        if key in friend_ids:
            resolved.append(friend_ids[key])
            continue
        if key in counts.new_friends:
            resolved.append(counts.new_friends[key])
            continue
        friend, created = await library.find_or_create_friend(db, name)
        if created:
            counts.new_friends[key] = friend.id
        else:
            friend_ids[key] = friend.id
        resolved.append(friend.id)
    return list(dict.fromkeys(resolved))


@dataclass
class _ItemMetadata:
    entry: LibraryEntry | None
    details: dict | None = None
    seasons: list[dict] = field(default_factory=list)


async def _load_metadata(db: AsyncSession, item: JsonImportItem, match: MatchCandidate) -> _ItemMetadata:
    """Fetch what TMDB has to supply for one item before anything is written.

    TMDB responses are cached through a separate connection, which cannot
    write while the import session holds the SQLite write lock.
    """
    entry = await library.find_entry(db, match.tmdb_id, match.media_type)
    if match.media_type == "movie":
        details = await tmdb.get_movie_details(match.tmdb_id) if entry is None else None
        return _ItemMetadata(entry=entry, details=details)

    details = await tmdb.get_series_details(match.tmdb_id) if entry is None else None
    wanted = _wanted_seasons(item)
    if entry is not None:
        wanted = await library.missing_seasons(db, entry, wanted)
    name = details["name"] if details else entry.series.name
    seasons = await library.load_season_details(match.tmdb_id, name, wanted) if wanted else []
    return _ItemMetadata(entry=entry, details=details, seasons=seasons)


def _wanted_seasons(item: JsonImportItem) -> set[int]:
    return {s.season for s in item.seasons} | {e.season for e in item.episodes}


async def _import_movie(
    db: AsyncSession,
    item: JsonImportItem,
    metadata: _ItemMetadata,
    friends: list[int],
    counts: _ItemCounts,
) -> LibraryEntry:
    entry = metadata.entry
    if entry is None:
        entry = await library.add_movie_entry(db, metadata.details, source=item.source or DEFAULT_SOURCE)
    for watched_at in sorted(item.watched):
        if not await library.movie_session_exists_on(db, entry.id, watched_at.date()):
            await library.add_movie_watch_session(db, entry, watched_at, friend_ids=friends)
            counts.sessions += 1
        library.mark_movie_watched(entry, watched_at)
    counts.movies += 1
    return entry


async def _import_series(
    db: AsyncSession,
    item: JsonImportItem,
    metadata: _ItemMetadata,
    counts: _ItemCounts,
) -> LibraryEntry:
    entry = metadata.entry
    if entry is None:
        entry = await library.add_series_entry(db, metadata.details, source=item.source or DEFAULT_SOURCE)
    for season in metadata.seasons:
        await library.save_season_episodes(db, entry.series_id, season)
    session = await library.get_default_session(db, entry.id)

    for season in item.seasons:
        numbers = await library.season_episode_numbers(db, entry.series_id, season.season)
        if not numbers:
            raise JsonImportError(f"No episode data available for season {season.season}")
        for number in numbers:
            if await library.upsert_episode_progress(db, entry.id, session.id, season.season, number, season.watched):
                counts.episodes += 1
    for ep in item.episodes:
        if await library.upsert_episode_progress(db, entry.id, session.id, ep.season, ep.episode, ep.watched):
            counts.episodes += 1

    if _wanted_seasons(item):
        await library.update_series_status_from_progress(db, entry)
    counts.series += 1
    return entry


async def import_item(db: AsyncSession, row: ItemPreview, friend_ids: dict[str, int]) -> _ItemCounts:
    """Import one matched item without committing."""
    counts = _ItemCounts()
    item = row.item
    metadata = await _load_metadata(db, item, row.match)
    friends = await _resolve_friend_ids(db, item.friends, friend_ids, counts)
    if row.match.media_type == "movie":
        entry = await _import_movie(db, item, metadata, friends, counts)
    else:
        entry = await _import_series(db, item, metadata, counts)

    library.set_rating_if_missing(entry, item.rating)
    if item.notes and not entry.notes:
        entry.notes = item.notes
    await library.attach_friends(db, entry.id, friends)
    return counts


async def run_import(rows: list[ItemPreview]) -> dict:
    """Import every matched row; `begin_import` must have claimed the slot."""
    global _last_result
    result = JsonImportResult()
    friend_ids: dict[str, int] = {}
    try:
        async with database.async_session() as db:
            for position, row in enumerate(rows, start=1):
                if _progress.cancellation_requested:
                    result.errors.append("Import cancelled")
                    break
                _progress.current_index = position
                _progress.current_item = row.item.title
                if not row.importable:
                    result.skipped += 1
                    _progress.skipped += 1
                    continue
                try:
                    counts = await import_item(db, row, friend_ids)
                    await db.commit()
                except Exception as exc:
                    await db.rollback()
                    message = f"{row.item.title}: {exc}"
                    logger.warning("JSON import failed for %s", message)
                    result.errors.append(message)
                    _progress.errors.append(message)
                    continue
                friend_ids.update(counts.new_friends)
                result.imported_movies += counts.movies
                result.imported_series += counts.series
                result.added_watch_sessions += counts.sessions
                result.imported_episodes += counts.episodes
                result.created_friends += len(counts.new_friends)
                _progress.completed_successfully += 1

            add_audit_log(
                db,
                action="import.json",
                message=(
                    f"JSON import finished. {result.imported_movies} movies, {result.imported_series} series, "
                    f"{result.skipped} skipped, {len(result.errors)} errors."
                ),
            )
            await db.commit()
    finally:
        _progress.in_progress = False
        _progress.current_item = None
        _progress.cancellation_requested = False
        _last_result = result
    logger.info("JSON import finished: %s", result.as_dict())
    return result.as_dict()


async def start_import(rows: list[ItemPreview]) -> dict:
    begin_import(len(rows))
    return await run_import(rows)
