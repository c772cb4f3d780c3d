from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from . import tmdb
from .audit import add_audit_log, list_audit_log
from .database import get_db

router = APIRouter(prefix="/api", tags=["maintenance"])


@router.get("/cache/stats")
async def cache_stats(db: AsyncSession = Depends(get_db)):
    return await tmdb.get_cache_stats(db)


@router.get("/cache/entries")
async def cache_entries(
    limit: int = Query(200, ge=1, le=5000),
    db: AsyncSession = Depends(get_db),
):
    entries = await tmdb.get_cache_entries(db)
    return {"results": entries[:limit], "total": len(entries)}


@router.post("/cache/clear-expired")
async def cache_clear_expired(db: AsyncSession = Depends(get_db)):
    result = await tmdb.clear_expired_cache(db)
    add_audit_log(
        db,
        action="cache.clear_expired",
        message=f"Cleared {result['entries_removed']} expired TMDB cache entries.",
    )
    await db.commit()
    return result


@router.post("/cache/clear")
async def cache_clear_all(db: AsyncSession = Depends(get_db)):
    result = await tmdb.clear_all_cache(db)
    add_audit_log(
        db,
        action="cache.clear",
        message=f"Cleared all {result['entries_removed']} TMDB cache entries.",
    )
    await db.commit()
    return result


@router.get("/audit-log")
async def audit_log(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return {"results": await list_audit_log(db, limit=limit)}
