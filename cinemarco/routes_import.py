from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import json_import
from .database import get_db
from .json_import import ItemPreview, JsonImportError, JsonImportItem, MatchCandidate
from .ratelimit import IMPORT_RATE_LIMIT, limiter

router = APIRouter(prefix="/api/import/json", tags=["import"])

MAX_UPLOAD_BYTES = 20 * 1024 * 1024


class PreviewRequest(BaseModel):
    items: list[JsonImportItem] = Field(min_length=1)


class ConfirmMatchRequest(BaseModel):
    item: ItemPreview
    candidate: MatchCandidate


class StartImportRequest(BaseModel):
    items: list[ItemPreview] = Field(min_length=1)


async def _read_upload(request: Request) -> bytes:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise HTTPException(status_code=400, detail="Upload a JSON file in the 'file' field")
        content = await upload.read()
    else:
        content = await request.body()
    if not content.strip():
        raise HTTPException(status_code=400, detail="Import file is empty")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Import file is too large")
    return content


@router.post("/parse")
async def parse(request: Request):
    content = await _read_upload(request)
    try:
        items = json_import.parse_json(content)
    except JsonImportError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"items": [item.model_dump(mode="json") for item in items], "count": len(items)}


@router.post("/preview")
async def preview(body: PreviewRequest, db: AsyncSession = Depends(get_db)):
    return await json_import.preview(db, body.items)


@router.post("/confirm")
async def confirm(body: ConfirmMatchRequest, db: AsyncSession = Depends(get_db)):
    if body.candidate.media_type != body.item.item.media_type:
        raise HTTPException(status_code=400, detail="Candidate media type does not match the item")
    confirmed = await json_import.confirm_match(db, body.item, body.candidate)
    return confirmed.model_dump(mode="json")


@router.post("/start")
@limiter.limit(IMPORT_RATE_LIMIT)
async def start(request: Request, body: StartImportRequest, background_tasks: BackgroundTasks):
    json_import.begin_import(len(body.items))
    background_tasks.add_task(json_import.run_import, body.items)
    return {"ok": True, "started": True, "total_items": len(body.items)}


@router.post("/cancel")
async def cancel():
    return {"ok": True, "cancelled": json_import.request_cancel()}


@router.get("/status")
async def status():
    return json_import.get_import_status()


@router.get("/result")
async def result():
    last = json_import.get_last_result()
    if last is None:
        raise HTTPException(status_code=404, detail="No JSON import has finished yet")
    return last
