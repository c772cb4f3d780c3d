import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded

from . import cleanup, tmdb, trakt
from .database import close_db, init_db
from .ratelimit import limiter
from .routes_cache import router as cache_router
from .routes_import import router as import_router
from .routes_library import router as library_router
from .routes_stats import router as stats_router
from .routes_tmdb import router as tmdb_router
from .routes_trakt import router as trakt_router
from .trakt_import import ImportAlreadyRunning

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

FRONTEND_DIR = Path(__file__).parent.parent / "frontend" / "dist"


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    cleanup_task = cleanup.start_cleanup_task()
    yield
    await cleanup.stop_cleanup_task(cleanup_task)
    await tmdb.close_client()
    await trakt.close_client()
    await close_db()


app = FastAPI(title="Cinemarco", lifespan=lifespan)
app.state.limiter = limiter


# Rate limit error handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Too many requests. Please try again later."})


@app.exception_handler(ImportAlreadyRunning)
async def import_running_handler(request: Request, exc: ImportAlreadyRunning):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(tmdb.TmdbNotFound)
async def tmdb_not_found_handler(request: Request, exc: tmdb.TmdbNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(tmdb.TmdbError)
async def tmdb_error_handler(request: Request, exc: tmdb.TmdbError):
    logger.warning("TMDB request failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(trakt.TraktAuthError)
async def trakt_auth_handler(request: Request, exc: trakt.TraktAuthError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(trakt.TraktError)
async def trakt_error_handler(request: Request, exc: trakt.TraktError):
    logger.warning("Trakt request failed on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# CORS
ALLOWED_ORIGINS = os.environ.get("CORS_ORIGINS", "").split(",")
ALLOWED_ORIGINS = [o.strip() for o in ALLOWED_ORIGINS if o.strip()]
if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type"],
    )


app.include_router(tmdb_router)
app.include_router(library_router)
app.include_router(cache_router)
app.include_router(trakt_router)
app.include_router(import_router)
app.include_router(stats_router)


@app.get("/api/health")
async def health():
    tmdb_status = await tmdb.health_check()
    return {
        "status": "ok",
        "tmdb": tmdb_status,
        "trakt_authenticated": await trakt.is_authenticated(),
    }


if FRONTEND_DIR.exists():
    app.mount("/", StaticFiles(directory=str(FRONTEND_DIR), html=True), name="frontend")
