from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Request
from pydantic import BaseModel, Field, field_validator

from . import trakt, trakt_import
from .ratelimit import IMPORT_RATE_LIMIT, limiter
from .trakt_import import TraktImportOptions

router = APIRouter(prefix="/api/trakt", tags=["trakt"])


class ExchangeCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=500)

    @field_validator("code", mode="before")
    @classmethod
    def strip_code(cls, value):
        return str(value or "").strip()


class ResyncRequest(BaseModel):
    since: datetime


@router.get("/auth-url")
async def auth_url():
    return trakt.get_auth_url()


@router.post("/exchange")
async def exchange(body: ExchangeCodeRequest):
    await trakt.exchange_code(body.code)
    return {"ok": True}


@router.post("/logout")
async def logout():
    await trakt.clear_tokens()
    return {"ok": True}


@router.get("/status")
async def status():
    return await trakt_import.get_sync_status()


@router.post("/preview")
async def preview(options: TraktImportOptions):
    await trakt_import.require_authenticated()
    return await trakt_import.preview(options)


@router.post("/import")
@limiter.limit(IMPORT_RATE_LIMIT)
async def start_import(request: Request, options: TraktImportOptions, background_tasks: BackgroundTasks):
    await trakt_import.require_authenticated()
    trakt_import.begin_import()
    background_tasks.add_task(trakt_import.run_import, options)
    return {"ok": True, "started": True}


@router.get("/import/status")
async def import_status():
    return trakt_import.get_import_status()


@router.post("/import/cancel")
async def cancel_import():
    return {"ok": True, "cancelled": trakt_import.request_cancel()}


@router.post("/sync")
@limiter.limit(IMPORT_RATE_LIMIT)
async def sync(request: Request):
    return await trakt_import.incremental_sync()


@router.post("/resync")
@limiter.limit(IMPORT_RATE_LIMIT)
async def resync(request: Request, body: ResyncRequest):
    return await trakt_import.resync_since(body.since)
