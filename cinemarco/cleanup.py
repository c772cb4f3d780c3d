import asyncio
import logging
import os

from . import database, tmdb

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_HOURS = float(os.environ.get("CLEANUP_INTERVAL_HOURS", "24") or "24")


async def run_cleanup() -> dict:
    async with database.async_session() as db:
        result = await tmdb.clear_expired_cache(db)
    if result["entries_removed"]:
        logger.info(
            "Removed %s expired TMDB cache entries (%s bytes)",
            result["entries_removed"],
            result["bytes_freed"],
        )
    return result


async def cleanup_loop(interval_hours: float = CLEANUP_INTERVAL_HOURS) -> None:
    while True:
        try:
            await run_cleanup()
        except Exception:
            logger.exception("Cache cleanup failed")
        await asyncio.sleep(max(interval_hours, 0.01) * 3600)


def start_cleanup_task() -> asyncio.Task:
    return asyncio.create_task(cleanup_loop(), name="cinemarco-cache-cleanup")


async def stop_cleanup_task(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
