import logging
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Contributor,
    Episode,
    EpisodeProgress,
    Friend,
    LibraryEntry,
    MediaContributor,
    Movie,
    MovieWatchSession,
    Season,
    Series,
    WatchSession,
    entry_friends,
    movie_session_friends,
    utcnow,
)
from . import tmdb

logger = logging.getLogger(__name__)

RATING_LABELS = {1: "Waste", 2: "Meh", 3: "Decent", 4: "Entertaining", 5: "Outstanding"}
DEFAULT_SESSION_NAME = "Personal"
CAST_LIMIT = 15
KEY_CREW_ROLES = {"director", "writer", "composer", "cinematographer", "created_by"}


def to_utc_naive(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


async def find_entry(db: AsyncSession, tmdb_id: int, media_type: str) -> LibraryEntry | None:
    if media_type == "movie":
        stmt = select(LibraryEntry).join(Movie, LibraryEntry.movie_id == Movie.id).where(Movie.tmdb_id == tmdb_id)
    else:
        stmt = select(LibraryEntry).join(Series, LibraryEntry.series_id == Series.id).where(Series.tmdb_id == tmdb_id)
    return (await db.execute(stmt)).unique().scalar_one_or_none()


async def library_keys(db: AsyncSession) -> set[tuple[int, str]]:
    movie_ids = (
        await db.execute(select(Movie.tmdb_id).join(LibraryEntry, LibraryEntry.movie_id == Movie.id))
    ).scalars().all()
    series_ids = (
        await db.execute(select(Series.tmdb_id).join(LibraryEntry, LibraryEntry.series_id == Series.id))
    ).scalars().all()
    return {(int(i), "movie") for i in movie_ids} | {(int(i), "series") for i in series_ids}


async def _upsert_contributor(db: AsyncSession, person: dict) -> Contributor:
    row = (
        await db.execute(select(Contributor).where(Contributor.tmdb_person_id == person["tmdb_person_id"]))
    ).scalar_one_or_none()
    if row is None:
        row = Contributor(tmdb_person_id=person["tmdb_person_id"], name=person["name"])
        db.add(row)
    row.name = person["name"] or row.name
    row.profile_path = person.get("profile_path") or row.profile_path
    if person.get("department"):
        row.known_for_department = row.known_for_department or person["department"]
    await db.flush()
    return row


async def _save_contributors(
    db: AsyncSession,
    details: dict,
    *,
    movie_id: int | None = None,
    series_id: int | None = None,
) -> None:
    target = MediaContributor.movie_id == movie_id if movie_id is not None else MediaContributor.series_id == series_id
    await db.execute(delete(MediaContributor).where(target))

    cast = sorted(details.get("cast") or [], key=lambda person: person.get("order", 999))[:CAST_LIMIT]
    for person in cast:
        contributor = await _upsert_contributor(db, person)
        db.add(
            MediaContributor(
                contributor_id=contributor.id,
                movie_id=movie_id,
                series_id=series_id,
                role="actor",
                character=person.get("character"),
                department="Acting",
                order_index=person.get("order", 999),
            )
        )

    seen: set[tuple[int, str]] = set()
    for person in details.get("crew") or []:
        role = tmdb.job_to_role(person.get("job") or "", person.get("department") or "")
        if role not in KEY_CREW_ROLES or (person["tmdb_person_id"], role) in seen:
            continue
        seen.add((person["tmdb_person_id"], role))
        contributor = await _upsert_contributor(db, person)
        db.add(
            MediaContributor(
                contributor_id=contributor.id,
                movie_id=movie_id,
                series_id=series_id,
                role=role,
                department=person.get("department") or None,
            )
        )


async def upsert_movie(db: AsyncSession, details: dict) -> Movie:
    movie = (await db.execute(select(Movie).where(Movie.tmdb_id == details["tmdb_id"]))).scalar_one_or_none()
    if movie is None:
        movie = Movie(tmdb_id=details["tmdb_id"], title=details["title"])
        db.add(movie)
    for field in (
        "title",
        "original_title",
        "overview",
        "release_date",
        "runtime_minutes",
        "poster_path",
        "backdrop_path",
        "genres",
        "original_language",
        "vote_average",
        "vote_count",
        "tagline",
        "imdb_id",
    ):
        if field in details:
            setattr(movie, field, details[field])
    await db.flush()
    await _save_contributors(db, details, movie_id=movie.id)
    return movie


async def upsert_series(db: AsyncSession, details: dict) -> Series:
    series = (await db.execute(select(Series).where(Series.tmdb_id == details["tmdb_id"]))).scalar_one_or_none()
    if series is None:
        series = Series(tmdb_id=details["tmdb_id"], name=details["name"])
        db.add(series)
    for field in (
        "name",
        "original_name",
        "overview",
        "first_air_date",
        "last_air_date",
        "poster_path",
        "backdrop_path",
        "genres",
        "original_language",
        "vote_average",
        "vote_count",
        "status",
        "number_of_seasons",
        "number_of_episodes",
        "episode_run_time",
    ):
        if field in details:
            setattr(series, field, details[field])
    await db.flush()

    for summary in details.get("seasons") or []:
        await _upsert_season(db, series.id, summary)
    await _save_contributors(db, details, series_id=series.id)
    return series


async def _upsert_season(db: AsyncSession, series_id: int, summary: dict) -> Season:
    season = (
        await db.execute(
            select(Season).where(Season.series_id == series_id, Season.season_number == summary["season_number"])
        )
    ).scalar_one_or_none()
    if season is None:
        season = Season(series_id=series_id, season_number=summary["season_number"])
        db.add(season)
    season.name = summary.get("name") or season.name
    season.overview = summary.get("overview") or season.overview
    season.poster_path = summary.get("poster_path") or season.poster_path
    season.air_date = summary.get("air_date") or season.air_date
    if summary.get("episode_count"):
        season.episode_count = summary["episode_count"]
    elif summary.get("episodes"):
        season.episode_count = len(summary["episodes"])
    await db.flush()
    return season


async def save_season_episodes(db: AsyncSession, series_id: int, season_details: dict) -> int:
    season = await _upsert_season(db, series_id, season_details)
    existing = {
        row.episode_number: row
        for row in (
            await db.execute(
                select(Episode).where(
                    Episode.series_id == series_id,
                    Episode.season_number == season.season_number,
                )
            )
        ).scalars()
    }
    for ep in season_details.get("episodes") or []:
        row = existing.get(ep["episode_number"])
        if row is None:
            row = Episode(
                series_id=series_id,
                season_id=season.id,
                season_number=season.season_number,
                episode_number=ep["episode_number"],
            )
            db.add(row)
        row.season_id = season.id
        row.name = ep.get("name") or row.name
        row.overview = ep.get("overview") or row.overview
        row.air_date = ep.get("air_date") or row.air_date
        row.runtime_minutes = ep.get("runtime_minutes") or row.runtime_minutes
        row.still_path = ep.get("still_path") or row.still_path
    await db.flush()
    return len(season_details.get("episodes") or [])


async def seasons_with_air_dates(db: AsyncSession, series_id: int) -> set[int]:
    rows = (
        await db.execute(
            select(Episode.season_number)
            .where(Episode.series_id == series_id, Episode.air_date.is_not(None))
            .distinct()
        )
    ).scalars().all()
    return {int(n) for n in rows}


async def episode_air_dates(db: AsyncSession, series_id: int) -> dict[tuple[int, int], date]:
    rows = (
        await db.execute(
            select(Episode.season_number, Episode.episode_number, Episode.air_date).where(
                Episode.series_id == series_id,
                Episode.air_date.is_not(None),
            )
        )
    ).all()
    return {(int(s), int(e)): air for s, e, air in rows}


async def add_movie_entry(
    db: AsyncSession,
    details: dict,
    *,
    source: str | None,
    context: str | None = None,
) -> LibraryEntry:
    existing = await find_entry(db, details["tmdb_id"], "movie")
    if existing is not None:
        return existing
    movie = await upsert_movie(db, details)
    entry = LibraryEntry(movie=movie, why_added_source=source, why_added_context=context)
    db.add(entry)
    await db.flush()
    return entry


async def add_series_entry(
    db: AsyncSession,
    details: dict,
    *,
    source: str | None,
    context: str | None = None,
) -> LibraryEntry:
    existing = await find_entry(db, details["tmdb_id"], "series")
    if existing is not None:
        return existing
    series = await upsert_series(db, details)
    entry = LibraryEntry(series=series, why_added_source=source, why_added_context=context)
    db.add(entry)
    await db.flush()
    await get_default_session(db, entry.id)
    return entry


async def get_default_session(db: AsyncSession, entry_id: int) -> WatchSession:
    session = (
        await db.execute(
            select(WatchSession).where(WatchSession.entry_id == entry_id, WatchSession.is_default.is_(True))
        )
    ).scalar_one_or_none()
    if session is None:
        session = WatchSession(entry_id=entry_id, name=DEFAULT_SESSION_NAME, is_default=True, start_date=utcnow())
        db.add(session)
        await db.flush()
    return session


async def movie_session_exists_on(db: AsyncSession, entry_id: int, day: date) -> bool:
    start, end = _day_bounds(day)
    count = await db.scalar(
        select(func.count())
        .select_from(MovieWatchSession)
        .where(
            MovieWatchSession.entry_id == entry_id,
            MovieWatchSession.watched_date >= start,
            MovieWatchSession.watched_date < end,
        )
    )
    return bool(count)


async def add_movie_watch_session(
    db: AsyncSession,
    entry: LibraryEntry,
    watched_at: datetime,
    *,
    name: str | None = None,
    friend_ids: list[int] | None = None,
) -> MovieWatchSession:
    session = MovieWatchSession(entry_id=entry.id, watched_date=to_utc_naive(watched_at), name=name)
    db.add(session)
    await db.flush()
    for friend_id in friend_ids or []:
        await db.execute(
            sqlite_insert(movie_session_friends)
            .values(session_id=session.id, friend_id=friend_id)
            .on_conflict_do_nothing()
        )
    return session


def mark_movie_watched(entry: LibraryEntry, watched_at: datetime | None) -> None:
    entry.watch_status = "completed"
    watched_at = to_utc_naive(watched_at)
    if watched_at is None:
        return
    if entry.date_first_watched is None or watched_at < entry.date_first_watched:
        entry.date_first_watched = watched_at
    if entry.date_last_watched is None or watched_at > entry.date_last_watched:
        entry.date_last_watched = watched_at


async def upsert_episode_progress(
    db: AsyncSession,
    entry_id: int,
    session_id: int,
    season_number: int,
    episode_number: int,
    watched_at: datetime | None,
) -> bool:
    """Mark one episode watched in a session; returns True when a new mark was added."""
    watched_at = to_utc_naive(watched_at)
    row = (
        await db.execute(
            select(EpisodeProgress).where(
                EpisodeProgress.session_id == session_id,
                EpisodeProgress.season_number == season_number,
                EpisodeProgress.episode_number == episode_number,
            )
        )
    ).scalar_one_or_none()
    if row is not None:
        newly_watched = not row.is_watched
        row.is_watched = True
        if row.watched_date is None:
            row.watched_date = watched_at
        return newly_watched
    db.add(
        EpisodeProgress(
            entry_id=entry_id,
            session_id=session_id,
            season_number=season_number,
            episode_number=episode_number,
            is_watched=True,
            watched_date=watched_at,
        )
    )
    await db.flush()
    return True


async def update_series_status_from_progress(db: AsyncSession, entry: LibraryEntry) -> None:
    if entry.watch_status == "abandoned" or entry.series is None:
        return
    session = await get_default_session(db, entry.id)
    rows = (
        await db.execute(
            select(EpisodeProgress.season_number, EpisodeProgress.episode_number, EpisodeProgress.watched_date).where(
                EpisodeProgress.session_id == session.id,
                EpisodeProgress.is_watched.is_(True),
            )
        )
    ).all()
    if not rows:
        entry.watch_status = "not_started"
        entry.current_season = None
        entry.current_episode = None
        return

    # Specials (season 0) do not count toward completion.
    regular = [row for row in rows if row[0] > 0]
    dates = [row[2] for row in rows if row[2] is not None]
    total = entry.series.number_of_episodes or 0
    latest = max(rows, key=lambda row: (row[0], row[1]))
    entry.date_first_watched = min(dates) if dates else entry.date_first_watched
    entry.date_last_watched = max(dates) if dates else entry.date_last_watched
    if total > 0 and len(regular) >= total:
        entry.watch_status = "completed"
        entry.current_season = None
        entry.current_episode = None
    else:
        entry.watch_status = "in_progress"
        entry.current_season = latest[0]
        entry.current_episode = latest[1]
    entry.last_watched_date = max(dates) if dates else None


def set_rating_if_missing(entry: LibraryEntry, rating: int | None) -> bool:
    if rating is None or entry.personal_rating is not None:
        return False
    entry.personal_rating = rating
    return True


async def attach_friends(db: AsyncSession, entry_id: int, friend_ids: list[int]) -> None:
    for friend_id in friend_ids:
        await db.execute(
            sqlite_insert(entry_friends).values(entry_id=entry_id, friend_id=friend_id).on_conflict_do_nothing()
        )


async def find_friend_by_name(db: AsyncSession, name: str) -> Friend | None:
    normalized = (name or "").strip().lower()
    if not normalized:
        return None
    return (
        await db.execute(select(Friend).where(func.lower(Friend.name) == normalized).order_by(Friend.id).limit(1))
    ).scalar_one_or_none()


async def find_or_create_friend(db: AsyncSession, name: str) -> tuple[Friend, bool]:
    existing = await find_friend_by_name(db, name)
    if existing is not None:
        return existing, False
    friend = Friend(name=name.strip())
    db.add(friend)
    await db.flush()
    return friend, True


async def last_known_watch_date(db: AsyncSession) -> datetime | None:
    movie_latest = await db.scalar(select(func.max(MovieWatchSession.watched_date)))
    episode_latest = await db.scalar(
        select(func.max(EpisodeProgress.watched_date)).where(EpisodeProgress.is_watched.is_(True))
    )
    candidates = [value for value in (movie_latest, episode_latest) if value is not None]
    return max(candidates) if candidates else None


def serialize_entry(entry: LibraryEntry) -> dict:
    if entry.movie is not None:
        media = entry.movie
        media_payload = {
            "media_type": "movie",
            "tmdb_id": media.tmdb_id,
            "title": media.title,
            "poster_path": media.poster_path,
            "release_date": media.release_date.isoformat() if media.release_date else None,
            "runtime_minutes": media.runtime_minutes,
        }
    else:
        media = entry.series
        media_payload = {
            "media_type": "series",
            "tmdb_id": media.tmdb_id if media else None,
            "title": media.name if media else "",
            "poster_path": media.poster_path if media else None,
            "release_date": media.first_air_date.isoformat() if media and media.first_air_date else None,
            "number_of_episodes": media.number_of_episodes if media else 0,
        }
    return {
        "id": entry.id,
        **media_payload,
        "watch_status": entry.watch_status,
        "current_season": entry.current_season,
        "current_episode": entry.current_episode,
        "personal_rating": entry.personal_rating,
        "personal_rating_label": RATING_LABELS.get(entry.personal_rating) if entry.personal_rating else None,
        "is_favorite": bool(entry.is_favorite),
        "notes": entry.notes,
        "why_added_source": entry.why_added_source,
        "date_added": entry.date_added.isoformat() if entry.date_added else None,
        "date_first_watched": entry.date_first_watched.isoformat() if entry.date_first_watched else None,
        "date_last_watched": entry.date_last_watched.isoformat() if entry.date_last_watched else None,
    }


async def season_episode_numbers(db: AsyncSession, series_id: int, season_number: int) -> list[int]:
    rows = (
        await db.execute(
            select(Episode.episode_number)
            .where(Episode.series_id == series_id, Episode.season_number == season_number)
            .order_by(Episode.episode_number)
        )
    ).scalars().all()
    return [int(n) for n in rows]


async def load_season_details(tmdb_series_id: int, name: str, seasons: set[int]) -> list[dict]:
    """Fetch episode lists for `seasons`; failures are logged and skipped."""
    loaded = []
    for season_number in sorted(seasons):
        try:
            loaded.append(await tmdb.get_season_details(tmdb_series_id, season_number))
        except tmdb.TmdbError as exc:
            logger.warning("Could not fetch season %s of %s: %s", season_number, name, exc)
    return loaded


async def missing_seasons(db: AsyncSession, entry: LibraryEntry, seasons: set[int]) -> set[int]:
    return seasons - await seasons_with_air_dates(db, entry.series_id)


async def fetch_season_metadata(
    db: AsyncSession,
    entry: LibraryEntry,
    seasons: set[int],
    *,
    only_missing: bool,
) -> None:
    """Fetch and store episode lists for `seasons` of an existing entry.

    Call this before the first write of the transaction: TMDB responses are
    cached through a separate connection, which cannot write while this
    session holds the SQLite write lock.
    """
    if only_missing:
        seasons = await missing_seasons(db, entry, seasons)
    for details in await load_season_details(entry.series.tmdb_id, entry.series.name, seasons):
        await save_season_episodes(db, entry.series_id, details)
