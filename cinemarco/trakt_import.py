import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import database, library, tmdb, trakt
from .audit import add_audit_log
from .models import LibraryEntry, utcnow

logger = logging.getLogger(__name__)

# More than this many episodes on one calendar day counts as a binge.
BINGE_THRESHOLD = 4
SYNC_BUFFER = timedelta(hours=1)
IMPORT_SESSION_NAME = "Imported from Trakt"
SYNC_SESSION_NAME = "Synced from Trakt"
SOURCE_IMPORT = "Trakt Import"
SOURCE_SYNC = "Trakt Sync"
SOURCE_WATCHLIST = "Trakt Watchlist"


class TraktImportOptions(BaseModel):
    import_watched_movies: bool = True
    import_watched_series: bool = True
    import_ratings: bool = True
    import_watchlist: bool = False


class ImportAlreadyRunning(RuntimeError):
    pass


@dataclass
class ImportProgress:
    in_progress: bool = False
    current_item: str | None = None
    completed: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)
    cancellation_requested: bool = False

    def snapshot(self) -> dict:
        return {
            "in_progress": self.in_progress,
            "current_item": self.current_item,
            "completed": self.completed,
            "total": self.total,
            "errors": list(self.errors),
        }


_progress = ImportProgress()


def get_import_status() -> dict:
    return _progress.snapshot()


def request_cancel() -> bool:
    if not _progress.in_progress:
        return False
    _progress.cancellation_requested = True
    return True


def begin_import() -> None:
    global _progress
    if _progress.in_progress:
        raise ImportAlreadyRunning("An import is already in progress")
    _progress = ImportProgress(in_progress=True)


# Binge detection


def group_by_watch_day(episodes: list[dict]) -> dict[date, list[dict]]:
    days: dict[date, list[dict]] = {}
    for ep in episodes:
        watched_at = ep.get("watched_at")
        if watched_at is None:
            continue
        days.setdefault(watched_at.date(), []).append(ep)
    return days


def is_binge_day(episode_count: int) -> bool:
    return episode_count > BINGE_THRESHOLD


def binge_days(episodes: list[dict]) -> set[date]:
    return {day for day, eps in group_by_watch_day(episodes).items() if is_binge_day(len(eps))}


def choose_episode_date(watched_at: datetime | None, air_date: date | None, binge: bool) -> datetime | None:
    if watched_at is None:
        return None
    if binge and air_date is not None:
        return datetime.combine(air_date, time.min)
    return watched_at


def resolve_episode_dates(
    episodes: list[dict],
    air_dates: dict[tuple[int, int], date],
) -> list[tuple[int, int, datetime | None]]:
    """Pick the stored watch date of each episode.

    Episodes watched on a binge day take their air date when it is known so the
    timeline spreads them out; everything else keeps the recorded watch time.
    """
    binges = binge_days(episodes)
    resolved = []
    for ep in episodes:
        watched_at = ep.get("watched_at")
        key = (ep["season_number"], ep["episode_number"])
        binge = watched_at is not None and watched_at.date() in binges
        resolved.append((key[0], key[1], choose_episode_date(watched_at, air_dates.get(key), binge)))
    return resolved


# Shared item import steps


def _group_movie_watches(items: list[dict]) -> list[dict]:
    grouped: dict[int, dict] = {}
    for item in items:
        movie = grouped.setdefault(
            item["tmdb_id"],
            {"tmdb_id": item["tmdb_id"], "title": item["title"], "watch_dates": []},
        )
        if item.get("watched_at") is not None:
            movie["watch_dates"].append(item["watched_at"])
    for movie in grouped.values():
        movie["watch_dates"].sort()
    return list(grouped.values())


async def import_movie(
    db: AsyncSession,
    item: dict,
    rating: int | None,
    *,
    session_name: str,
    source: str,
) -> int:
    entry = await library.find_entry(db, item["tmdb_id"], "movie")
    if entry is None:
        details = await tmdb.get_movie_details(item["tmdb_id"])
        entry = await library.add_movie_entry(db, details, source=source)
    added = 0
    for watched_at in item.get("watch_dates") or []:
        if not await library.movie_session_exists_on(db, entry.id, watched_at.date()):
            await library.add_movie_watch_session(db, entry, watched_at, name=session_name)
            added += 1
        library.mark_movie_watched(entry, watched_at)
    if rating is not None:
        library.set_rating_if_missing(entry, trakt.map_trakt_rating(rating))
    return added


async def import_episodes_with_binge_detection(db: AsyncSession, entry: LibraryEntry, episodes: list[dict]) -> int:
    session = await library.get_default_session(db, entry.id)
    air_dates = await library.episode_air_dates(db, entry.series_id)
    added = 0
    for season_number, episode_number, watched_at in resolve_episode_dates(episodes, air_dates):
        if await library.upsert_episode_progress(db, entry.id, session.id, season_number, episode_number, watched_at):
            added += 1
    return added


async def import_episodes_simple(db: AsyncSession, entry: LibraryEntry, episodes: list[dict]) -> int:
    session = await library.get_default_session(db, entry.id)
    added = 0
    for ep in episodes:
        if ep.get("watched_at") is None:
            logger.warning(
                "Skipping S%02dE%02d of %s: no watch date",
                ep["season_number"],
                ep["episode_number"],
                entry.series.name if entry.series else entry.id,
            )
            continue
        if await library.upsert_episode_progress(
            db, entry.id, session.id, ep["season_number"], ep["episode_number"], ep["watched_at"]
        ):
            added += 1
    return added


async def import_series(db: AsyncSession, show: dict, rating: int | None, *, source: str) -> int:
    episodes = show.get("episodes") or []
    seasons = {ep["season_number"] for ep in episodes}
    entry = await library.find_entry(db, show["tmdb_id"], "series")
    if entry is None:
        # All TMDB reads happen before the first write of the item.
        details = await tmdb.get_series_details(show["tmdb_id"])
        season_details = await library.load_season_details(details["tmdb_id"], details["name"], seasons)
        entry = await library.add_series_entry(db, details, source=source)
        for season in season_details:
            await library.save_season_episodes(db, entry.series_id, season)
        added = await import_episodes_with_binge_detection(db, entry, episodes)
    else:
        await library.fetch_season_metadata(db, entry, seasons, only_missing=True)
        added = await import_episodes_simple(db, entry, episodes)
    if episodes:
        await library.update_series_status_from_progress(db, entry)
    if rating is not None:
        library.set_rating_if_missing(entry, trakt.map_trakt_rating(rating))
    return added


async def sync_series(db: AsyncSession, show: dict) -> int:
    entry = await library.find_entry(db, show["tmdb_id"], "series")
    if entry is None:
        details = await tmdb.get_series_details(show["tmdb_id"])
        entry = await library.add_series_entry(db, details, source=SOURCE_SYNC)
    added = await import_episodes_simple(db, entry, show.get("episodes") or [])
    await library.update_series_status_from_progress(db, entry)
    return added


async def add_watchlist_item(db: AsyncSession, item: dict) -> bool:
    if await library.find_entry(db, item["tmdb_id"], item["media_type"]) is not None:
        return False
    if item["media_type"] == "movie":
        details = await tmdb.get_movie_details(item["tmdb_id"])
        await library.add_movie_entry(db, details, source=SOURCE_WATCHLIST)
    else:
        details = await tmdb.get_series_details(item["tmdb_id"])
        await library.add_series_entry(db, details, source=SOURCE_WATCHLIST)
    return True


# Full import


async def _fetch_sources(options: TraktImportOptions, errors: list[str] | None) -> tuple[list[dict], list[dict], dict]:
    """Fetch the selected Trakt lists.

    With an `errors` list a failing source is recorded there and skipped;
    without one the failure propagates.
    """

    async def _fetch(label: str, call, default):
        try:
            return await call()
        except trakt.TraktAuthError:
            raise
        except trakt.TraktError as exc:
            if errors is None:
                raise
            logger.warning("Failed to fetch %s from Trakt: %s", label, exc)
            errors.append(f"Failed to fetch {label}: {exc}")
            return default

    movies: list[dict] = []
    series: list[dict] = []
    ratings: dict = {}
    if options.import_watched_movies:
        movies = _group_movie_watches(await _fetch("watched movies", trakt.get_watched_movies, []))
    if options.import_watched_series:
        series = await _fetch("watched shows", trakt.get_watched_shows_with_episodes, [])
    if options.import_watchlist:
        watchlist = await _fetch("watchlist", trakt.get_watchlist, [])
        movie_ids = {m["tmdb_id"] for m in movies}
        series_ids = {s["tmdb_id"] for s in series}
        for item in watchlist:
            if item["media_type"] == "movie" and item["tmdb_id"] not in movie_ids:
                movie_ids.add(item["tmdb_id"])
                movies.append({"tmdb_id": item["tmdb_id"], "title": item["title"], "watch_dates": [], "watchlist": True})
            elif item["media_type"] == "series" and item["tmdb_id"] not in series_ids:
                series_ids.add(item["tmdb_id"])
                series.append({"tmdb_id": item["tmdb_id"], "title": item["title"], "episodes": [], "watchlist": True})
    if options.import_ratings:
        ratings = await _fetch("ratings", trakt.get_ratings, {})
    return movies, series, ratings


async def preview(options: TraktImportOptions) -> dict:
    movies, series, _ = await _fetch_sources(options.model_copy(update={"import_ratings": False}), None)
    async with database.async_session() as db:
        keys = await library.library_keys(db)
    already = sum(1 for m in movies if (m["tmdb_id"], "movie") in keys)
    already += sum(1 for s in series if (s["tmdb_id"], "series") in keys)
    total = len(movies) + len(series)
    return {
        "movies": len(movies),
        "series": len(series),
        "total_items": total,
        "already_in_library": already,
        "new_items": total - already,
    }


async def _run_item(db: AsyncSession, title: str, step) -> None:
    _progress.current_item = title
    try:
        await step()
        await db.commit()
    except Exception as exc:
        await db.rollback()
        logger.warning("Trakt import failed for %s: %s", title, exc)
        _progress.errors.append(f"{title}: {exc}")
    _progress.completed += 1


async def run_import(options: TraktImportOptions) -> dict:
    """Run a full import; `begin_import` must have claimed the slot."""
    try:
        movies, series, ratings = await _fetch_sources(options, _progress.errors)
        _progress.total = len(movies) + len(series)
        logger.info("Trakt import started: %d movies, %d series", len(movies), len(series))
        async with database.async_session() as db:
            for item in movies:
                if _progress.cancellation_requested:
                    break
                source = SOURCE_WATCHLIST if item.get("watchlist") else SOURCE_IMPORT
                await _run_item(
                    db,
                    item["title"],
                    lambda item=item, source=source: import_movie(
                        db,
                        item,
                        ratings.get((item["tmdb_id"], "movie")),
                        session_name=IMPORT_SESSION_NAME,
                        source=source,
                    ),
                )
            for show in series:
                if _progress.cancellation_requested:
                    break
                source = SOURCE_WATCHLIST if show.get("watchlist") else SOURCE_IMPORT
                await _run_item(
                    db,
                    show["title"],
                    lambda show=show, source=source: import_series(
                        db,
                        show,
                        ratings.get((show["tmdb_id"], "series")),
                        source=source,
                    ),
                )
            if _progress.cancellation_requested:
                _progress.errors.append("Import cancelled")
            add_audit_log(
                db,
                action="trakt.import",
                message=(
                    f"Trakt import finished. Processed {_progress.completed} of {_progress.total}, "
                    f"{len(_progress.errors)} errors."
                ),
            )
            await db.commit()
    except trakt.TraktError as exc:
        logger.warning("Trakt import aborted: %s", exc)
        _progress.errors.append(str(exc))
    except Exception:
        logger.exception("Trakt import crashed")
        _progress.errors.append("Unexpected error during import")
        raise
    finally:
        _progress.in_progress = False
        _progress.current_item = None
        _progress.cancellation_requested = False
    logger.info("Trakt import finished with %d errors", len(_progress.errors))
    return _progress.snapshot()


async def start_import(options: TraktImportOptions) -> dict:
    begin_import()
    return await run_import(options)


# Incremental sync


def _empty_sync_result() -> dict:
    return {"new_movie_watches": 0, "new_episode_watches": 0, "updated_items": 0, "errors": []}


async def sync_from_date(since: datetime) -> dict:
    result = _empty_sync_result()
    errors = result["errors"]

    async def _fetch(label: str, call, default):
        try:
            return await call()
        except trakt.TraktAuthError:
            raise
        except trakt.TraktError as exc:
            logger.warning("Failed to fetch %s from Trakt: %s", label, exc)
            errors.append(f"Failed to fetch {label}: {exc}")
            return default

    movies = _group_movie_watches(
        await _fetch("watched movies", lambda: trakt.get_watched_movies_since(since), [])
    )
    shows = await _fetch("watched shows", lambda: trakt.get_watched_shows_with_episodes_since(since), [])
    watchlist = await _fetch("watchlist", trakt.get_watchlist, [])

    async with database.async_session() as db:

        async def _apply(title: str, step) -> int:
            try:
                count = await step()
                await db.commit()
                return count
            except Exception as exc:
                await db.rollback()
                logger.warning("Trakt sync failed for %s: %s", title, exc)
                errors.append(f"{title}: {exc}")
                return 0

        for item in movies:
            result["new_movie_watches"] += await _apply(
                item["title"],
                lambda item=item: import_movie(db, item, None, session_name=SYNC_SESSION_NAME, source=SOURCE_SYNC),
            )
        for show in shows:
            result["new_episode_watches"] += await _apply(show["title"], lambda show=show: sync_series(db, show))
        for item in watchlist:
            result["updated_items"] += int(await _apply(item["title"], lambda item=item: add_watchlist_item(db, item)))

        add_audit_log(
            db,
            action="trakt.sync",
            message=(
                f"Trakt sync since {since.isoformat()}: {result['new_movie_watches']} movie watches, "
                f"{result['new_episode_watches']} episode watches, {result['updated_items']} watchlist additions."
            ),
        )
        await db.commit()

    await trakt.set_last_sync_time(utcnow())
    return result


async def require_authenticated() -> None:
    if not await trakt.is_authenticated():
        raise trakt.TraktAuthError("Not authenticated with Trakt")


async def _sync_guarded(since: datetime) -> dict:
    begin_import()
    try:
        return await sync_from_date(since)
    finally:
        _progress.in_progress = False


async def incremental_sync() -> dict:
    await require_authenticated()
    async with database.async_session() as db:
        last = await library.last_known_watch_date(db)
    if last is None:
        logger.info("No local watch history; a full import is needed before syncing")
        return _empty_sync_result()
    return await _sync_guarded(library.to_utc_naive(last) - SYNC_BUFFER)


async def resync_since(since: datetime) -> dict:
    await require_authenticated()
    return await _sync_guarded(library.to_utc_naive(since) - SYNC_BUFFER)


async def get_sync_status() -> dict:
    settings = await trakt.get_settings()
    last_sync = settings["last_sync_at"]
    return {
        "is_authenticated": settings["is_authenticated"],
        "last_sync_at": last_sync.isoformat() if last_sync else None,
        "auto_sync_enabled": settings["auto_sync_enabled"],
    }
