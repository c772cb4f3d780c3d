import json
from datetime import datetime

import httpx
import pytest
from sqlalchemy import func, select

from cinemarco import json_import, library, tmdb
from cinemarco.json_import import (
    ItemPreview,
    JsonImportError,
    JsonImportItem,
    MatchCandidate,
    classify_candidates,
    parse_json,
    score_candidate,
)
from cinemarco.models import AuditLog, Friend, MovieWatchSession, TmdbCache, entry_friends, movie_session_friends
from cinemarco.trakt_import import ImportAlreadyRunning

from payloads import search_row


def test_parse_accepts_object_with_items_and_normalizes_fields():
    content = json.dumps(
        {
            "items": [
                {
                    "title": " Heat ",
                    "year": "1995",
                    "type": "film",
                    "watched": "2024-01-01",
                    "rating": "Outstanding",
                    "friends": ["Bob", " ", "Alice"],
                    "notes": "  ",
                },
                {
                    "title": "Breaking Bad",
                    "type": "tv",
                    "tmdbId": 1396,
                    "seasons": [{"seasonNumber": 1, "watchedDate": "2024-02-01T20:00:00Z"}],
                    "episodes": [{"season": 2, "episode": 3}],
                    "rating": 4,
                },
            ]
        }
    )
    heat, bad = parse_json(content)

    assert heat.title == "Heat"
    assert heat.year == 1995
    assert heat.media_type == "movie"
    assert heat.watched == [datetime(2024, 1, 1)]
    assert heat.rating == 5
    assert heat.friends == ["Bob", "Alice"]
    assert heat.notes is None

    assert bad.media_type == "series"
    assert bad.tmdb_id == 1396
    assert bad.seasons[0].season == 1
    assert bad.seasons[0].watched == datetime(2024, 2, 1, 20, 0)
    assert bad.episodes[0].watched is None
    assert bad.rating == 4


def test_parse_accepts_a_bare_list():
    items = parse_json(b'[{"title": "Alien", "watched": ["1999-01-01", "2020-05-05T10:00:00"]}]')
    assert items[0].media_type == "movie"
    assert len(items[0].watched) == 2


@pytest.mark.parametrize(
    "content,message",
    [
        ("{not json", "Invalid JSON"),
        ('{"movies": []}', "Expected a list"),
        ("[]", "No items"),
        ('[{"title": "A"}, {"title": "B", "rating": 9}]', "Item 2 (B)"),
        ('[{"title": "A", "type": "podcast"}]', "Item 1"),
        ('[{"title": "A", "watched": "yesterday"}]', "Item 1"),
        ('["just a string"]', "Item 1: expected an object"),
    ],
)
def test_parse_rejects_bad_input(content, message):
    with pytest.raises(JsonImportError, match=message.replace("(", r"\(").replace(")", r"\)")):
        parse_json(content)


def test_parse_enforces_item_limit(monkeypatch):
    monkeypatch.setattr(json_import, "JSON_IMPORT_LIMIT", 1)
    with pytest.raises(JsonImportError, match="limit is 1"):
        parse_json('[{"title": "A"}, {"title": "B"}]')


def test_scoring_prefers_exact_title_and_year():
    exact = score_candidate("Heat", 1995, search_row(949, "Heat", 1995))
    wrong_year = score_candidate("Heat", 1995, search_row(1, "Heat", 2021))
    partial = score_candidate("Heat", 1995, search_row(2, "Heat Wave", 1995))
    assert exact > partial > wrong_year
    assert score_candidate("", None, search_row(1, "Heat", 1995)) < 0


def test_classify_candidates():
    status, match, candidates = classify_candidates(
        "Heat", 1995, [search_row(1, "Heat", 2021), search_row(949, "Heat", 1995, popularity=50)]
    )
    assert status == "exact"
    assert match.tmdb_id == 949
    assert candidates[0].tmdb_id == 949

    status, match, candidates = classify_candidates(
        "Dune", None, [search_row(841, "Dune", 1984), search_row(438631, "Dune", 2021)]
    )
    assert status == "multiple"
    assert match is None
    assert {c.tmdb_id for c in candidates} == {841, 438631}

    status, match, _ = classify_candidates("Zzyzx Road", None, [search_row(1, "Heat", 1995)])
    assert (status, match) == ("no_match", None)


async def _seed(db, fake_tmdb):
    fake_tmdb.add_movie(tmdb_id=949, title="Heat", runtime=170)
    fake_tmdb.add_series(tmdb_id=1396, name="Breaking Bad", seasons={1: 3, 2: 2})
    fake_tmdb.movie_results["heat"] = [search_row(949, "Heat", 1995, popularity=40), search_row(5, "Heat", 2021)]
    db.add(Friend(name="Alice"))
    await db.commit()


def _items():
    return parse_json(
        json.dumps(
            [
                {
                    "title": "Heat",
                    "year": 1995,
                    "watched": ["2024-01-05T20:00:00", "2024-01-05T23:00:00", "2024-03-01T20:00:00"],
                    "rating": 5,
                    "notes": "Diner scene",
                    "friends": ["alice", "Bob", "bob"],
                },
                {
                    "title": "Breaking Bad",
                    "type": "series",
                    "tmdb_id": 1396,
                    "seasons": [{"season": 1, "watched": "2024-02-01"}],
                    "episodes": [{"season": 2, "episode": 1, "watched": "2024-03-01"}],
                },
                {"title": "Zzyzx Road"},
            ]
        )
    )


async def test_preview_matches_items_and_resolves_friends(db, fake_tmdb):
    await _seed(db, fake_tmdb)
    preview = await json_import.preview(db, _items())

    rows = preview["items"]
    assert [row["status"] for row in rows] == ["exact", "exact", "no_match"]
    assert rows[0]["match"]["tmdb_id"] == 949
    assert rows[1]["match"]["media_type"] == "series"
    friends = rows[0]["friends"]
    assert [(f["name"], f["is_new"]) for f in friends] == [("Alice", False), ("Bob", True)]
    assert preview["summary"] == {
        "total_items": 3,
        "exact_matches": 2,
        "ambiguous_matches": 0,
        "no_matches": 1,
        "already_in_library": 0,
        "new_friends_to_create": 1,
    }


async def test_search_with_year_finds_titles_the_plain_search_misses(db, fake_tmdb):
    fake_tmdb.movie_results["heat"] = [search_row(5, "Heat", 2021), search_row(6, "Heat Wave", 2019)]
    fake_tmdb.movie_results["heat:1995"] = [search_row(949, "Heat", 1995)]

    status, match, candidates = await json_import.match_item(JsonImportItem(title="Heat", year=1995))
    assert status == "exact"
    assert match.tmdb_id == 949
    assert sorted(c.tmdb_id for c in candidates) == [5, 6, 949]
    assert ("search:movie", "Heat", 1995) in fake_tmdb.calls

    await json_import.match_item(JsonImportItem(title="Heat"))
    assert fake_tmdb.calls[-1] == ("search:movie", "Heat", None)


async def test_unknown_tmdb_id_is_no_match(db, fake_tmdb):
    item = JsonImportItem(title="Lost", media_type="movie", tmdb_id=424242)
    status, match, candidates = await json_import.match_item(item)
    assert (status, match, candidates) == ("no_match", None, [])


async def test_import_creates_entries_sessions_and_friends(db, fake_tmdb):
    await _seed(db, fake_tmdb)
    preview = await json_import.preview(db, _items())
    rows = [ItemPreview.model_validate(row) for row in preview["items"]]

    broken = ItemPreview(index=3, item=JsonImportItem(title="Lost Tape", media_type="movie"))
    rows.append(
        await json_import.confirm_match(db, broken, MatchCandidate(tmdb_id=555, media_type="movie", title="Lost Tape"))
    )
    assert rows[-1].status == "confirmed"

    json_import.begin_import(len(rows))
    result = await json_import.run_import(rows)

    assert result["imported_movies"] == 1
    assert result["imported_series"] == 1
    assert result["added_watch_sessions"] == 2
    assert result["imported_episodes"] == 4
    assert result["created_friends"] == 1
    assert result["skipped"] == 1
    assert len(result["errors"]) == 1 and result["errors"][0].startswith("Lost Tape:")
    assert json_import.get_last_result() == result
    assert json_import.get_import_status()["in_progress"] is False

    db.expire_all()
    heat = await library.find_entry(db, 949, "movie")
    assert heat.watch_status == "completed"
    assert heat.personal_rating == 5
    assert heat.notes == "Diner scene"
    assert heat.why_added_source == json_import.DEFAULT_SOURCE
    assert await db.scalar(select(func.count()).select_from(MovieWatchSession)) == 2
    assert await db.scalar(select(func.count()).select_from(entry_friends)) == 2
    assert await db.scalar(select(func.count()).select_from(movie_session_friends)) == 4
    assert await db.scalar(select(func.count()).select_from(Friend)) == 2

    series = await library.find_entry(db, 1396, "series")
    assert series.watch_status == "in_progress"
    assert (series.current_season, series.current_episode) == (2, 1)

    actions = (await db.execute(select(AuditLog.action))).scalars().all()
    assert actions == ["import.json"]


async def test_reimport_does_not_duplicate(db, fake_tmdb):
    await _seed(db, fake_tmdb)
    preview = await json_import.preview(db, _items()[:2])
    rows = [ItemPreview.model_validate(row) for row in preview["items"]]

    json_import.begin_import(len(rows))
    await json_import.run_import(rows)
    json_import.begin_import(len(rows))
    second = await json_import.run_import(rows)

    assert second["added_watch_sessions"] == 0
    assert second["imported_episodes"] == 0
    assert second["created_friends"] == 0
    assert await db.scalar(select(func.count()).select_from(Friend)) == 2

    again = await json_import.preview(db, _items()[:2])
    assert again["summary"]["already_in_library"] == 2


async def test_json_import_slot_is_exclusive():
    json_import.begin_import(1)
    with pytest.raises(ImportAlreadyRunning):
        json_import.begin_import(1)
    assert json_import.request_cancel() is True


async def test_import_with_new_friend_caches_movie_details(db, mock_http):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/3/movie/603":
            return httpx.Response(
                200,
                json={
                    "id": 603,
                    "title": "The Matrix",
                    "release_date": "1999-03-31",
                    "runtime": 136,
                    "credits": {"cast": [], "crew": []},
                },
            )
        return httpx.Response(404)

    mock_http(tmdb, handler)
    row = ItemPreview(
        index=0,
        item=JsonImportItem(title="The Matrix", year=1999, tmdb_id=603, friends=["Sarah"], watched=["2024-01-05"]),
        status="exact",
        match=MatchCandidate(tmdb_id=603, media_type="movie", title="The Matrix", year=1999),
    )

    json_import.begin_import(1)
    result = await json_import.run_import([row])

    assert result["errors"] == []
    assert result["imported_movies"] == 1
    assert result["created_friends"] == 1
    assert (await db.execute(select(Friend.name))).scalars().all() == ["Sarah"]
    assert await db.get(TmdbCache, "movie:603") is not None
