from datetime import datetime, timedelta, timezone

import pytest

from cinemarco import trakt


@pytest.mark.parametrize(
    "rating,expected",
    [(10, 5), (9, 5), (8, 4), (7, 4), (6, 3), (5, 3), (4, 2), (3, 2), (2, 1), (1, 1)],
)
def test_map_trakt_rating(rating, expected):
    assert trakt.map_trakt_rating(rating) == expected


def test_parse_datetime_converts_to_naive_utc():
    assert trakt.parse_datetime("2024-03-01T20:15:00.000Z") == datetime(2024, 3, 1, 20, 15)
    assert trakt.parse_datetime("2024-03-01T22:15:00+02:00") == datetime(2024, 3, 1, 20, 15)
    assert trakt.parse_datetime("") is None
    assert trakt.parse_datetime("not a date") is None


def test_format_start_at_uses_millisecond_utc_format():
    value = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone(timedelta(hours=1)))
    assert trakt.format_start_at(value) == "2024-01-02T02:04:05.678Z"


def test_parse_history_movies_skips_rows_without_tmdb_id():
    rows = [
        {"watched_at": "2024-01-01T10:00:00.000Z", "movie": {"title": "Heat", "ids": {"tmdb": 949}}},
        {"watched_at": "2024-01-02T10:00:00.000Z", "movie": {"title": "Unknown", "ids": {"tmdb": None}}},
        {"watched_at": "2024-01-03T10:00:00.000Z"},
    ]
    items = trakt.parse_history_movies(rows)
    assert items == [
        {"tmdb_id": 949, "media_type": "movie", "title": "Heat", "watched_at": datetime(2024, 1, 1, 10)}
    ]


def _episode_row(tmdb_id, season, number, watched_at, title="Show"):
    return {
        "watched_at": watched_at,
        "show": {"title": title, "ids": {"tmdb": tmdb_id}},
        "episode": {"season": season, "number": number},
    }


def test_group_show_history_dedupe_keeps_earliest_watch():
    rows = [
        _episode_row(1, 1, 1, "2024-02-01T10:00:00Z"),
        _episode_row(1, 1, 1, "2023-05-01T10:00:00Z"),
        _episode_row(1, 1, 2, "2024-02-02T10:00:00Z"),
        _episode_row(2, 1, 1, "2024-03-01T10:00:00Z", title="Other"),
    ]
    shows = {show["tmdb_id"]: show for show in trakt.group_show_history(rows, dedupe=True)}

    first = shows[1]
    assert len(first["episodes"]) == 2
    by_key = {(ep["season_number"], ep["episode_number"]): ep["watched_at"] for ep in first["episodes"]}
    assert by_key[(1, 1)] == datetime(2023, 5, 1, 10)
    assert first["last_watched_at"] == datetime(2024, 2, 2, 10)
    assert shows[2]["title"] == "Other"


def test_group_show_history_without_dedupe_keeps_every_watch():
    rows = [
        _episode_row(1, 1, 1, "2024-02-01T10:00:00Z"),
        _episode_row(1, 1, 1, "2023-05-01T10:00:00Z"),
    ]
    shows = trakt.group_show_history(rows, dedupe=False)
    assert len(shows[0]["episodes"]) == 2


def test_group_show_history_defaults_missing_season_to_specials():
    rows = [{"watched_at": None, "show": {"title": "S", "ids": {"tmdb": 5}}, "episode": {"number": 3}}]
    show = trakt.group_show_history(rows, dedupe=True)[0]
    assert show["episodes"] == [{"season_number": 0, "episode_number": 3, "watched_at": None}]
    assert show["last_watched_at"] is None


def test_parse_ratings_and_watchlist():
    ratings = trakt.parse_ratings(
        [
            {"rating": 9, "type": "movie", "movie": {"ids": {"tmdb": 10}}},
            {"rating": 6, "type": "show", "show": {"ids": {"tmdb": 20}}},
            {"rating": 8, "type": "episode", "episode": {"ids": {"tmdb": 30}}},
            {"rating": None, "type": "movie", "movie": {"ids": {"tmdb": 40}}},
        ]
    )
    assert ratings == {(10, "movie"): 9, (20, "series"): 6}

    watchlist = trakt.parse_watchlist(
        [
            {"type": "movie", "movie": {"title": "Dune", "ids": {"tmdb": 438631}}},
            {"type": "show", "show": {"title": "Severance", "ids": {"tmdb": 95396}}},
            {"type": "season", "season": {"ids": {"tmdb": 1}}},
        ]
    )
    assert [(item["tmdb_id"], item["media_type"]) for item in watchlist] == [(438631, "movie"), (95396, "series")]
