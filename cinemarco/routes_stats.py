from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from . import stats
from .database import get_db

router = APIRouter(prefix="/api", tags=["stats"])


@router.get("/stats/watch-time")
async def watch_time(
    year: int | None = Query(None, ge=1870, le=2200),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await stats.load_snapshot(db)
    return stats.calculate_watch_time(snapshot, year)


@router.get("/stats/backlog")
async def backlog(db: AsyncSession = Depends(get_db)):
    return stats.calculate_backlog(await stats.load_snapshot(db))


@router.get("/stats/top-series")
async def top_series(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await stats.load_snapshot(db)
    return {"results": stats.top_series_by_time(snapshot, limit)}


@router.get("/stats/years")
async def years(db: AsyncSession = Depends(get_db)):
    return stats.available_years(await stats.load_snapshot(db))


@router.get("/stats/year/{year}")
async def year_in_review(year: int, db: AsyncSession = Depends(get_db)):
    if year < 1870 or year > 2200:
        raise HTTPException(status_code=400, detail="Invalid year")
    return await stats.year_in_review(db, year)


@router.get("/timeline")
async def timeline(
    start_date: date | None = None,
    end_date: date | None = None,
    media_type: Literal["movie", "series"] | None = None,
    entry_id: int | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=stats.TIMELINE_MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_db),
):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    return await stats.timeline(
        db,
        start_date=start_date,
        end_date=end_date,
        media_type=media_type,
        entry_id=entry_id,
        page=page,
        page_size=page_size,
    )


@router.get("/graph")
async def graph(
    max_nodes: int | None = Query(None, ge=1, le=5000),
    search: str | None = Query(None, max_length=200),
    focus: str | None = Query(None, max_length=100),
    db: AsyncSession = Depends(get_db),
):
    return await stats.relationship_graph(db, max_nodes=max_nodes, search=search, focus=focus)
