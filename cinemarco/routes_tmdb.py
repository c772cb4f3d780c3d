from typing import Literal

from fastapi import APIRouter, HTTPException, Query

from . import tmdb

router = APIRouter(prefix="/api/tmdb", tags=["tmdb"])


async def _details_or_404(call, *args):
    try:
        return await call(*args)
    except tmdb.TmdbNotFound:
        raise HTTPException(status_code=404, detail="Not found on TMDB")


@router.get("/search")
async def search(
    q: str = Query(..., min_length=1, max_length=200),
    type: Literal["all", "movie", "series"] = "all",
):
    if type == "movie":
        results = await tmdb.search_movies(q)
    elif type == "series":
        results = await tmdb.search_series(q)
    else:
        results = await tmdb.search_all(q)
    return {"results": results}


@router.get("/movie/{movie_id}")
async def movie_details(movie_id: int):
    return await _details_or_404(tmdb.get_movie_details, movie_id)


@router.get("/movie/{movie_id}/credits")
async def movie_credits(movie_id: int):
    return await _details_or_404(tmdb.get_movie_credits, movie_id)


@router.get("/tv/{series_id}")
async def series_details(series_id: int):
    return await _details_or_404(tmdb.get_series_details, series_id)


@router.get("/tv/{series_id}/season/{season_number}")
async def season_details(series_id: int, season_number: int):
    return await _details_or_404(tmdb.get_season_details, series_id, season_number)


@router.get("/tv/{series_id}/credits")
async def series_credits(series_id: int):
    return await _details_or_404(tmdb.get_series_credits, series_id)


@router.get("/find/imdb/{imdb_id}")
async def find_by_imdb(imdb_id: str):
    result = await tmdb.find_by_imdb_id(imdb_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No TMDB title for this IMDb id")
    return result


@router.get("/person/{person_id}")
async def person_details(person_id: int, include_filmography: bool = False):
    person = await _details_or_404(tmdb.get_person_details, person_id)
    if include_filmography:
        person["filmography"] = await _details_or_404(tmdb.get_person_filmography, person_id)
    return person


@router.get("/collection/{collection_id}")
async def collection_details(collection_id: int):
    return await _details_or_404(tmdb.get_collection, collection_id)


@router.get("/trending")
async def trending(type: Literal["all", "movie", "series"] = "all"):
    movies = await tmdb.get_trending_movies() if type in ("all", "movie") else []
    series = await tmdb.get_trending_series() if type in ("all", "series") else []
    return {"movies": movies, "series": series}
