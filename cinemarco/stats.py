from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .library import serialize_entry
from .models import (
    Collection,
    CollectionItem,
    Episode,
    EpisodeProgress,
    Friend,
    LibraryEntry,
    MovieWatchSession,
    WatchSession,
    entry_friends,
    movie_session_friends,
    session_friends,
)

DEFAULT_EPISODE_MINUTES = 45
TOP_RATED_LIMIT = 10
TOP_FRIENDS_LIMIT = 5
TIMELINE_MAX_PAGE_SIZE = 100
GRAPH_DEFAULT_MAX_NODES = 300


@dataclass
class EpisodeWatch:
    entry_id: int
    season_number: int
    episode_number: int
    watched_date: datetime
    runtime: int
    name: str | None = None


@dataclass
class LibrarySnapshot:
    entries: list[LibraryEntry]
    movie_sessions: list[MovieWatchSession]
    episode_watches: list[EpisodeWatch]
    watched_counts: dict[int, int] = field(default_factory=dict)

    def entry_by_id(self) -> dict[int, LibraryEntry]:
        return {entry.id: entry for entry in self.entries}


def movie_minutes(entry: LibraryEntry) -> int:
    if entry.movie is None:
        return 0
    return entry.movie.runtime_minutes or 0


def series_episode_minutes(entry: LibraryEntry) -> int:
    if entry.series is None:
        return DEFAULT_EPISODE_MINUTES
    return entry.series.episode_run_time or DEFAULT_EPISODE_MINUTES


def series_total_minutes(entry: LibraryEntry) -> int:
    if entry.series is None:
        return 0
    return (entry.series.number_of_episodes or 0) * series_episode_minutes(entry)


async def load_snapshot(db: AsyncSession) -> LibrarySnapshot:
    entries = list((await db.execute(select(LibraryEntry).order_by(LibraryEntry.id))).unique().scalars().all())
    movie_sessions = list(
        (await db.execute(select(MovieWatchSession).order_by(MovieWatchSession.watched_date))).scalars().all()
    )
    runtime_by_entry = {entry.id: series_episode_minutes(entry) for entry in entries if entry.series_id}

    rows = (
        await db.execute(
            select(
                EpisodeProgress.entry_id,
                EpisodeProgress.season_number,
                EpisodeProgress.episode_number,
                EpisodeProgress.watched_date,
                Episode.runtime_minutes,
                Episode.name,
            )
            .join(LibraryEntry, LibraryEntry.id == EpisodeProgress.entry_id)
            .outerjoin(
                Episode,
                and_(
                    Episode.series_id == LibraryEntry.series_id,
                    Episode.season_number == EpisodeProgress.season_number,
                    Episode.episode_number == EpisodeProgress.episode_number,
                ),
            )
            .where(EpisodeProgress.is_watched.is_(True))
        )
    ).all()

    # The same episode may be marked in several sessions; count it once per entry.
    watched: dict[int, set[tuple[int, int]]] = defaultdict(set)
    episode_watches: list[EpisodeWatch] = []
    for entry_id, season_number, episode_number, watched_date, runtime, name in rows:
        watched[entry_id].add((season_number, episode_number))
        if watched_date is None:
            continue
        episode_watches.append(
            EpisodeWatch(
                entry_id=entry_id,
                season_number=season_number,
                episode_number=episode_number,
                watched_date=watched_date,
                runtime=runtime or runtime_by_entry.get(entry_id, DEFAULT_EPISODE_MINUTES),
                name=name,
            )
        )
    return LibrarySnapshot(
        entries=entries,
        movie_sessions=movie_sessions,
        episode_watches=episode_watches,
        watched_counts={entry_id: len(pairs) for entry_id, pairs in watched.items()},
    )


def _watched_in_year(entry: LibraryEntry, year: int) -> bool:
    return entry.date_last_watched is not None and entry.date_last_watched.year == year


def calculate_watch_time(snapshot: LibrarySnapshot, year: int | None = None) -> dict:
    entries = snapshot.entries
    if year is not None:
        entries = [entry for entry in entries if _watched_in_year(entry, year)]
    watched_entries = [entry for entry in entries if entry.watch_status in ("completed", "in_progress")]

    movie_total = sum(
        movie_minutes(entry) for entry in watched_entries if entry.movie_id and entry.watch_status == "completed"
    )
    episodes = [w for w in snapshot.episode_watches if year is None or w.watched_date.year == year]
    series_total = sum(w.runtime for w in episodes)

    runtime_by_entry = {entry.id: movie_minutes(entry) for entry in snapshot.entries if entry.movie_id}
    by_year: Counter[int] = Counter()
    for session in snapshot.movie_sessions:
        if year is not None and session.watched_date.year != year:
            continue
        if session.entry_id in runtime_by_entry:
            by_year[session.watched_date.year] += runtime_by_entry[session.entry_id]
    for watch in episodes:
        by_year[watch.watched_date.year] += watch.runtime

    by_rating: Counter[int] = Counter()
    for entry in watched_entries:
        if entry.personal_rating is None:
            continue
        if entry.movie_id:
            by_rating[entry.personal_rating] += movie_minutes(entry)
        else:
            by_rating[entry.personal_rating] += series_episode_minutes(entry) * snapshot.watched_counts.get(entry.id, 0)

    return {
        "total_minutes": movie_total + series_total,
        "movie_minutes": movie_total,
        "series_minutes": series_total,
        "by_year": {str(k): v for k, v in sorted(by_year.items())},
        "by_rating": {str(k): v for k, v in sorted(by_rating.items())},
    }


def calculate_backlog(snapshot: LibrarySnapshot) -> dict:
    backlog = [entry for entry in snapshot.entries if entry.watch_status == "not_started"]
    estimated = sum(movie_minutes(entry) if entry.movie_id else series_total_minutes(entry) for entry in backlog)
    oldest = min(backlog, key=lambda entry: entry.date_added, default=None)
    return {
        "total_entries": len(backlog),
        "estimated_minutes": estimated,
        "oldest_entry": serialize_entry(oldest) if oldest else None,
    }


def series_time_investment(entry: LibraryEntry, watched_count: int) -> dict:
    total = series_total_minutes(entry)
    watched = watched_count * series_episode_minutes(entry)
    return {
        "entry": serialize_entry(entry),
        "total_minutes": total,
        "watched_minutes": watched,
        "remaining_minutes": max(0, total - watched),
        "completion_percentage": round(watched / total * 100.0, 1) if total > 0 else 0.0,
    }


def top_series_by_time(snapshot: LibrarySnapshot, limit: int = 10) -> list[dict]:
    rows = [
        series_time_investment(entry, snapshot.watched_counts[entry.id])
        for entry in snapshot.entries
        if entry.series_id and snapshot.watched_counts.get(entry.id, 0) > 0
    ]
    rows.sort(key=lambda row: row["watched_minutes"], reverse=True)
    return rows[:limit]


def available_years(snapshot: LibrarySnapshot) -> dict:
    years = {session.watched_date.year for session in snapshot.movie_sessions}
    years.update(watch.watched_date.year for watch in snapshot.episode_watches)
    years.update(entry.date_last_watched.year for entry in snapshot.entries if entry.date_last_watched)
    ordered = sorted(years)
    return {
        "years": ordered,
        "earliest_year": ordered[0] if ordered else None,
        "latest_year": ordered[-1] if ordered else None,
    }


async def _friend_ids_by_entry(db: AsyncSession) -> dict[int, set[int]]:
    result: dict[int, set[int]] = defaultdict(set)
    for entry_id, friend_id in (await db.execute(select(entry_friends.c.entry_id, entry_friends.c.friend_id))).all():
        result[entry_id].add(friend_id)
    rows = await db.execute(
        select(MovieWatchSession.entry_id, movie_session_friends.c.friend_id).join(
            movie_session_friends, movie_session_friends.c.session_id == MovieWatchSession.id
        )
    )
    for entry_id, friend_id in rows.all():
        result[entry_id].add(friend_id)
    rows = await db.execute(
        select(WatchSession.entry_id, session_friends.c.friend_id).join(
            session_friends, session_friends.c.session_id == WatchSession.id
        )
    )
    for entry_id, friend_id in rows.all():
        result[entry_id].add(friend_id)
    return result


async def _completed_collections(db: AsyncSession, entries: dict[int, LibraryEntry], year: int) -> list[dict]:
    items_by_collection: dict[int, list[int]] = defaultdict(list)
    for collection_id, entry_id in (await db.execute(select(CollectionItem.collection_id, CollectionItem.entry_id))).all():
        items_by_collection[collection_id].append(entry_id)
    if not items_by_collection:
        return []

    completed_ids = []
    for collection_id, entry_ids in items_by_collection.items():
        members = [entries.get(entry_id) for entry_id in entry_ids]
        if any(member is None or member.watch_status != "completed" for member in members):
            continue
        finished = [member.date_last_watched for member in members if member.date_last_watched]
        if finished and max(finished).year == year:
            completed_ids.append(collection_id)
    if not completed_ids:
        return []
    collections = (
        await db.execute(select(Collection).where(Collection.id.in_(completed_ids)).order_by(Collection.name))
    ).scalars().all()
    return [{"id": c.id, "name": c.name, "description": c.description} for c in collections]


async def year_in_review(db: AsyncSession, year: int) -> dict:
    snapshot = await load_snapshot(db)
    entries = snapshot.entry_by_id()

    year_sessions = [s for s in snapshot.movie_sessions if s.watched_date.year == year]
    year_episodes = [w for w in snapshot.episode_watches if w.watched_date.year == year]
    movie_ids = list(dict.fromkeys(s.entry_id for s in year_sessions if s.entry_id in entries))
    series_ids = list(dict.fromkeys(w.entry_id for w in year_episodes if w.entry_id in entries))

    movie_total = sum(movie_minutes(entries[s.entry_id]) for s in year_sessions if s.entry_id in entries)
    series_total = sum(w.runtime for w in year_episodes)

    watched_entries = [entries[entry_id] for entry_id in dict.fromkeys(movie_ids + series_ids)]
    distribution = {str(rating): 0 for rating in range(1, 6)}
    distribution["unrated"] = 0
    ratings: list[int] = []
    for entry in watched_entries:
        if entry.personal_rating is None:
            distribution["unrated"] += 1
        else:
            distribution[str(entry.personal_rating)] += 1
            ratings.append(entry.personal_rating)

    top_rated = sorted(
        (entry for entry in watched_entries if (entry.personal_rating or 0) >= 4),
        key=lambda entry: entry.personal_rating,
        reverse=True,
    )[:TOP_RATED_LIMIT]

    friend_ids = await _friend_ids_by_entry(db)
    friend_counts = Counter(friend_id for entry in watched_entries for friend_id in friend_ids.get(entry.id, ()))
    top_friends: list[dict] = []
    if friend_counts:
        friends = {
            friend.id: friend
            for friend in (await db.execute(select(Friend).where(Friend.id.in_(list(friend_counts))))).scalars().all()
        }
        for friend_id, count in friend_counts.most_common():
            if friend_id in friends:
                top_friends.append({"id": friend_id, "name": friends[friend_id].name, "watch_count": count})
            if len(top_friends) >= TOP_FRIENDS_LIMIT:
                break

    last_movie_watch: dict[int, datetime] = {}
    for session in year_sessions:
        last_movie_watch[session.entry_id] = max(session.watched_date, last_movie_watch.get(session.entry_id, session.watched_date))
    all_movies = sorted(
        (entries[entry_id] for entry_id in movie_ids),
        key=lambda entry: last_movie_watch.get(entry.id, datetime.min),
    )

    last_episode_watch: dict[int, datetime] = {}
    for watch in snapshot.episode_watches:
        current = last_episode_watch.get(watch.entry_id)
        if current is None or watch.watched_date > current:
            last_episode_watch[watch.entry_id] = watch.watched_date

    all_series = []
    for entry_id in series_ids:
        entry = entries[entry_id]
        last_in_year = last_episode_watch.get(entry_id, datetime.min).year == year
        total_episodes = entry.series.number_of_episodes if entry.series else 0
        finished = total_episodes > 0 and snapshot.watched_counts.get(entry_id, 0) >= total_episodes and last_in_year
        abandoned = entry.watch_status == "abandoned" and last_in_year
        all_series.append((finished, abandoned, entry))
    all_series.sort(key=lambda row: (0 if row[0] else 2 if row[1] else 1, row[2].series.name if row[2].series else ""))

    return {
        "year": year,
        "total_minutes": movie_total + series_total,
        "movie_minutes": movie_total,
        "series_minutes": series_total,
        "movies_watched": len(movie_ids),
        "series_watched": len(series_ids),
        "episodes_watched": len(year_episodes),
        "rating_distribution": distribution,
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else None,
        "top_rated": [serialize_entry(entry) for entry in top_rated],
        "top_friends": top_friends,
        "collections_completed": await _completed_collections(db, entries, year),
        "has_data": bool(year_sessions or year_episodes),
        "movies": [serialize_entry(entry) for entry in all_movies],
        "series": [
            {"entry": serialize_entry(entry), "finished_this_year": finished, "abandoned_this_year": abandoned}
            for finished, abandoned, entry in all_series
        ],
    }


def _entry_summary(entry: LibraryEntry) -> dict:
    media = entry.movie if entry.movie is not None else entry.series
    return {
        "entry_id": entry.id,
        "media_type": entry.media_type,
        "tmdb_id": media.tmdb_id if media else None,
        "title": (entry.movie.title if entry.movie is not None else entry.series.name) if media else "",
        "poster_path": media.poster_path if media else None,
    }


async def timeline(
    db: AsyncSession,
    *,
    start_date: date | None = None,
    end_date: date | None = None,
    media_type: str | None = None,
    entry_id: int | None = None,
    page: int = 1,
    page_size: int = 20,
) -> dict:
    page = max(1, page)
    page_size = min(TIMELINE_MAX_PAGE_SIZE, max(1, page_size))
    entries = {
        entry.id: entry for entry in (await db.execute(select(LibraryEntry))).unique().scalars().all()
    }

    def in_range(watched: datetime) -> bool:
        if start_date is not None and watched.date() < start_date:
            return False
        if end_date is not None and watched.date() > end_date:
            return False
        return True

    events: list[dict] = []
    if media_type in (None, "movie"):
        query = select(MovieWatchSession)
        if entry_id is not None:
            query = query.where(MovieWatchSession.entry_id == entry_id)
        for session in (await db.execute(query)).scalars().all():
            entry = entries.get(session.entry_id)
            if entry is None or not in_range(session.watched_date):
                continue
            events.append(
                {
                    **_entry_summary(entry),
                    "kind": "movie",
                    "watched_date": session.watched_date.isoformat(),
                    "session_name": session.name,
                }
            )

    if media_type in (None, "series"):
        snapshot_rows = (
            await db.execute(
                select(
                    EpisodeProgress.entry_id,
                    EpisodeProgress.season_number,
                    EpisodeProgress.episode_number,
                    EpisodeProgress.watched_date,
                    Episode.name,
                )
                .join(LibraryEntry, LibraryEntry.id == EpisodeProgress.entry_id)
                .outerjoin(
                    Episode,
                    and_(
                        Episode.series_id == LibraryEntry.series_id,
                        Episode.season_number == EpisodeProgress.season_number,
                        Episode.episode_number == EpisodeProgress.episode_number,
                    ),
                )
                .where(
                    EpisodeProgress.is_watched.is_(True),
                    EpisodeProgress.watched_date.is_not(None),
                    *([EpisodeProgress.entry_id == entry_id] if entry_id is not None else []),
                )
            )
        ).all()
        for row_entry_id, season_number, episode_number, watched_date, name in snapshot_rows:
            entry = entries.get(row_entry_id)
            if entry is None or not in_range(watched_date):
                continue
            events.append(
                {
                    **_entry_summary(entry),
                    "kind": "episode",
                    "watched_date": watched_date.isoformat(),
                    "season_number": season_number,
                    "episode_number": episode_number,
                    "episode_name": name,
                }
            )

    events.sort(key=lambda event: event["watched_date"], reverse=True)
    offset = (page - 1) * page_size
    items = events[offset : offset + page_size]
    return {
        "items": items,
        "page": page,
        "page_size": page_size,
        "total": len(events),
        "has_more": offset + len(items) < len(events),
    }


async def relationship_graph(
    db: AsyncSession,
    *,
    max_nodes: int | None = None,
    search: str | None = None,
    focus: str | None = None,
) -> dict:
    nodes: dict[str, dict] = {}
    for entry in (await db.execute(select(LibraryEntry))).unique().scalars().all():
        summary = _entry_summary(entry)
        nodes[f"entry-{entry.id}"] = {
            "id": f"entry-{entry.id}",
            "type": entry.media_type,
            "label": summary["title"],
            "poster_path": summary["poster_path"],
            "rating": entry.personal_rating,
        }
    for friend in (await db.execute(select(Friend))).scalars().all():
        nodes[f"friend-{friend.id}"] = {"id": f"friend-{friend.id}", "type": "friend", "label": friend.name}
    for collection in (await db.execute(select(Collection))).scalars().all():
        nodes[f"collection-{collection.id}"] = {
            "id": f"collection-{collection.id}",
            "type": "collection",
            "label": collection.name,
        }

    edge_keys: set[tuple[str, str, str]] = set()
    for entry_id, friend_ids in (await _friend_ids_by_entry(db)).items():
        for friend_id in friend_ids:
            edge_keys.add((f"entry-{entry_id}", f"friend-{friend_id}", "watched_with"))
    for collection_id, entry_id in (await db.execute(select(CollectionItem.collection_id, CollectionItem.entry_id))).all():
        edge_keys.add((f"entry-{entry_id}", f"collection-{collection_id}", "in_collection"))
    edges = [
        {"source": source, "target": target, "type": kind}
        for source, target, kind in sorted(edge_keys)
        if source in nodes and target in nodes
    ]

    neighbors: dict[str, set[str]] = defaultdict(set)
    for edge in edges:
        neighbors[edge["source"]].add(edge["target"])
        neighbors[edge["target"]].add(edge["source"])

    keep = set(nodes)
    if focus:
        keep = {focus} | neighbors.get(focus, set()) if focus in nodes else set()
    if search and search.strip():
        needle = search.strip().lower()
        matched = {node_id for node_id in keep if needle in (nodes[node_id]["label"] or "").lower()}
        keep = matched | {n for node_id in matched for n in neighbors.get(node_id, set()) if n in keep}

    limit = max_nodes if max_nodes and max_nodes > 0 else GRAPH_DEFAULT_MAX_NODES
    if len(keep) > limit:
        ranked = sorted(keep, key=lambda node_id: (node_id != focus, -len(neighbors.get(node_id, ())), node_id))
        keep = set(ranked[:limit])

    return {
        "nodes": [nodes[node_id] for node_id in sorted(keep)],
        "edges": [edge for edge in edges if edge["source"] in keep and edge["target"] in keep],
    }
