from datetime import date, datetime

from cinemarco.trakt_import import (
    binge_days,
    choose_episode_date,
    group_by_watch_day,
    is_binge_day,
    resolve_episode_dates,
)


def _episodes(day: date, count: int, season: int = 1, start: int = 1) -> list[dict]:
    return [
        {
            "season_number": season,
            "episode_number": start + i,
            "watched_at": datetime(day.year, day.month, day.day, 18 + i // 10, (i * 7) % 60),
        }
        for i in range(count)
    ]


def test_threshold_is_more_than_four_per_day():
    assert not is_binge_day(4)
    assert is_binge_day(5)


def test_grouping_ignores_time_of_day_and_missing_dates():
    episodes = [
        {"season_number": 1, "episode_number": 1, "watched_at": datetime(2024, 1, 1, 0, 5)},
        {"season_number": 1, "episode_number": 2, "watched_at": datetime(2024, 1, 1, 23, 55)},
        {"season_number": 1, "episode_number": 3, "watched_at": None},
    ]
    days = group_by_watch_day(episodes)
    assert list(days) == [date(2024, 1, 1)]
    assert len(days[date(2024, 1, 1)]) == 2


def test_choose_episode_date():
    watched = datetime(2024, 5, 1, 21, 30)
    aired = date(2010, 3, 7)
    assert choose_episode_date(watched, aired, binge=True) == datetime(2010, 3, 7)
    assert choose_episode_date(watched, aired, binge=False) == watched
    assert choose_episode_date(watched, None, binge=True) == watched
    assert choose_episode_date(None, aired, binge=True) is None


def test_four_episodes_keep_watch_dates():
    episodes = _episodes(date(2024, 1, 1), 4)
    air_dates = {(1, n): date(2010, 1, n) for n in range(1, 5)}
    resolved = resolve_episode_dates(episodes, air_dates)
    assert [w for _, _, w in resolved] == [ep["watched_at"] for ep in episodes]


def test_five_episodes_use_air_dates_when_known():
    episodes = _episodes(date(2024, 1, 1), 5)
    air_dates = {(1, n): date(2010, 1, n) for n in range(1, 5)}
    resolved = {(s, e): w for s, e, w in resolve_episode_dates(episodes, air_dates)}
    assert resolved[(1, 1)] == datetime(2010, 1, 1)
    assert resolved[(1, 4)] == datetime(2010, 1, 4)
    # No air date known for episode 5, so its watch time stays.
    assert resolved[(1, 5)] == episodes[4]["watched_at"]


def test_binge_applies_per_day():
    episodes = _episodes(date(2024, 1, 1), 6) + _episodes(date(2024, 1, 8), 2, start=7)
    assert binge_days(episodes) == {date(2024, 1, 1)}
    air_dates = {(1, n): date(2010, 1, n) for n in range(1, 9)}
    resolved = {(s, e): w for s, e, w in resolve_episode_dates(episodes, air_dates)}
    assert resolved[(1, 2)] == datetime(2010, 1, 2)
    assert resolved[(1, 8)] == episodes[-1]["watched_at"]


def test_missing_watch_date_resolves_to_none():
    episodes = [{"season_number": 1, "episode_number": 1, "watched_at": None}]
    assert resolve_episode_dates(episodes, {(1, 1): date(2010, 1, 1)}) == [(1, 1, None)]
