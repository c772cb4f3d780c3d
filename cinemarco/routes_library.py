from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import library, tmdb
from .database import get_db
from .models import EpisodeProgress, Friend, LibraryEntry, MovieWatchSession, WatchSession

router = APIRouter(prefix="/api", tags=["library"])


class AddEntryRequest(BaseModel):
    tmdb_id: int = Field(ge=1)
    source: str | None = Field(default=None, max_length=200)
    context: str | None = Field(default=None, max_length=2000)


class CreateFriendRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    nickname: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=2000)


def _serialize_friend(friend: Friend) -> dict:
    return {
        "id": friend.id,
        "name": friend.name,
        "nickname": friend.nickname,
        "notes": friend.notes,
        "created_at": friend.created_at.isoformat() if friend.created_at else None,
    }


async def _get_entry_or_404(db: AsyncSession, entry_id: int) -> LibraryEntry:
    entry = (await db.execute(select(LibraryEntry).where(LibraryEntry.id == entry_id))).unique().scalar_one_or_none()
    if entry is None:
        raise HTTPException(status_code=404, detail="Library entry not found")
    return entry


@router.get("/library")
async def list_library(
    status: Literal["not_started", "in_progress", "completed", "abandoned"] | None = None,
    media_type: Literal["movie", "series"] | None = None,
    limit: int = Query(500, ge=1, le=5000),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(LibraryEntry).order_by(LibraryEntry.date_added.desc()).limit(limit)
    if status:
        stmt = stmt.where(LibraryEntry.watch_status == status)
    if media_type == "movie":
        stmt = stmt.where(LibraryEntry.movie_id.is_not(None))
    elif media_type == "series":
        stmt = stmt.where(LibraryEntry.series_id.is_not(None))
    rows = (await db.execute(stmt)).unique().scalars().all()
    return {"results": [library.serialize_entry(row) for row in rows]}


@router.get("/library/{entry_id}")
async def get_library_entry(entry_id: int, db: AsyncSession = Depends(get_db)):
    entry = await _get_entry_or_404(db, entry_id)
    return library.serialize_entry(entry)


@router.post("/library/movie")
async def add_movie(body: AddEntryRequest, db: AsyncSession = Depends(get_db)):
    existing = await library.find_entry(db, body.tmdb_id, "movie")
    if existing is not None:
        return {"ok": True, "entry": library.serialize_entry(existing), "already_exists": True}
    try:
        details = await tmdb.get_movie_details(body.tmdb_id)
    except tmdb.TmdbNotFound:
        raise HTTPException(status_code=404, detail="Movie not found on TMDB")
    entry = await library.add_movie_entry(db, details, source=body.source, context=body.context)
    await db.commit()
    return {"ok": True, "entry": library.serialize_entry(entry), "already_exists": False}


@router.post("/library/series")
async def add_series(body: AddEntryRequest, db: AsyncSession = Depends(get_db)):
    existing = await library.find_entry(db, body.tmdb_id, "series")
    if existing is not None:
        return {"ok": True, "entry": library.serialize_entry(existing), "already_exists": True}
    try:
        details = await tmdb.get_series_details(body.tmdb_id)
    except tmdb.TmdbNotFound:
        raise HTTPException(status_code=404, detail="Series not found on TMDB")
    entry = await library.add_series_entry(db, details, source=body.source, context=body.context)
    await db.commit()
    return {"ok": True, "entry": library.serialize_entry(entry), "already_exists": False}


@router.delete("/library/{entry_id}")
async def delete_library_entry(entry_id: int, db: AsyncSession = Depends(get_db)):
    entry = await _get_entry_or_404(db, entry_id)
    await db.delete(entry)
    await db.commit()
    return {"ok": True}


@router.get("/library/{entry_id}/progress")
async def entry_progress(entry_id: int, db: AsyncSession = Depends(get_db)):
    entry = await _get_entry_or_404(db, entry_id)
    if entry.media_type == "movie":
        sessions = (
            await db.execute(
                select(MovieWatchSession)
                .where(MovieWatchSession.entry_id == entry.id)
                .order_by(MovieWatchSession.watched_date.desc())
            )
        ).scalars().all()
        return {
            "entry_id": entry.id,
            "media_type": "movie",
            "watch_sessions": [
                {"id": s.id, "name": s.name, "watched_date": s.watched_date.isoformat()} for s in sessions
            ],
        }

    sessions = (
        await db.execute(
            select(WatchSession).where(WatchSession.entry_id == entry.id).order_by(WatchSession.is_default.desc(), WatchSession.id)
        )
    ).scalars().all()
    progress = (
        await db.execute(
            select(EpisodeProgress)
            .where(EpisodeProgress.entry_id == entry.id, EpisodeProgress.is_watched.is_(True))
            .order_by(EpisodeProgress.season_number, EpisodeProgress.episode_number)
        )
    ).scalars().all()
    by_session: dict[int, list[dict]] = {}
    for row in progress:
        by_session.setdefault(row.session_id, []).append(
            {
                "season_number": row.season_number,
                "episode_number": row.episode_number,
                "watched_date": row.watched_date.isoformat() if row.watched_date else None,
            }
        )
    return {
        "entry_id": entry.id,
        "media_type": "series",
        "watch_status": entry.watch_status,
        "current_season": entry.current_season,
        "current_episode": entry.current_episode,
        "sessions": [
            {
                "id": s.id,
                "name": s.name,
                "is_default": bool(s.is_default),
                "status": s.status,
                "episodes": by_session.get(s.id, []),
            }
            for s in sessions
        ],
    }


@router.get("/friends")
async def list_friends(db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(select(Friend).order_by(Friend.name))).scalars().all()
    return {"results": [_serialize_friend(row) for row in rows]}


@router.post("/friends")
async def create_friend(body: CreateFriendRequest, db: AsyncSession = Depends(get_db)):
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    if await library.find_friend_by_name(db, name) is not None:
        raise HTTPException(status_code=409, detail="A friend with this name already exists")
    friend = Friend(name=name, nickname=(body.nickname or "").strip() or None, notes=(body.notes or "").strip() or None)
    db.add(friend)
    await db.commit()
    return {"ok": True, "friend": _serialize_friend(friend)}
