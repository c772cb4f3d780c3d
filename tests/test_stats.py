from datetime import date, datetime

from cinemarco import library, stats
from cinemarco.models import Collection, CollectionItem, Friend

from payloads import movie_details, season_details, series_details


async def _build_library(db) -> dict:
    alpha = await library.add_movie_entry(db, movie_details(tmdb_id=1, title="Alpha", runtime=120), source=None)
    beta = await library.add_movie_entry(db, movie_details(tmdb_id=2, title="Beta", runtime=90), source=None)
    sigma = await library.add_series_entry(
        db, series_details(tmdb_id=10, name="Sigma", seasons={1: 4}, run_time=50), source=None
    )
    tau = await library.add_series_entry(
        db, series_details(tmdb_id=11, name="Tau", seasons={1: 10}, run_time=None), source=None
    )
    beta.date_added = datetime(2020, 1, 1)
    tau.date_added = datetime(2021, 1, 1)

    alice = Friend(name="Alice")
    bob = Friend(name="Bob")
    db.add_all([alice, bob])
    await db.flush()

    for watched_at, friends in ((datetime(2023, 6, 1, 20), []), (datetime(2024, 2, 1, 20), [bob.id])):
        await library.add_movie_watch_session(db, alpha, watched_at, friend_ids=friends)
        library.mark_movie_watched(alpha, watched_at)
    alpha.personal_rating = 5

    await library.save_season_episodes(db, sigma.series_id, season_details(10, 1, 4, runtime=40))
    session = await library.get_default_session(db, sigma.id)
    await library.upsert_episode_progress(db, sigma.id, session.id, 1, 1, datetime(2024, 3, 1, 21))
    await library.upsert_episode_progress(db, sigma.id, session.id, 1, 2, datetime(2024, 3, 2, 21))
    await library.upsert_episode_progress(db, sigma.id, session.id, 1, 3, None)
    await library.update_series_status_from_progress(db, sigma)
    sigma.personal_rating = 4

    await library.attach_friends(db, alpha.id, [alice.id])
    await library.attach_friends(db, sigma.id, [alice.id])

    favorites = Collection(name="Favorites")
    mixed = Collection(name="Mixed")
    db.add_all([favorites, mixed])
    await db.flush()
    db.add_all(
        [
            CollectionItem(collection_id=favorites.id, entry_id=alpha.id),
            CollectionItem(collection_id=mixed.id, entry_id=alpha.id),
            CollectionItem(collection_id=mixed.id, entry_id=beta.id, position=1),
        ]
    )
    await db.commit()
    return {
        "alpha": alpha,
        "beta": beta,
        "sigma": sigma,
        "tau": tau,
        "alice": alice,
        "bob": bob,
        "favorites": favorites,
        "mixed": mixed,
    }


async def test_watch_time(db):
    await _build_library(db)
    snapshot = await stats.load_snapshot(db)

    overall = stats.calculate_watch_time(snapshot)
    assert overall["movie_minutes"] == 120
    # Two dated episodes at their own 40 minute runtime; the undated one is not counted.
    assert overall["series_minutes"] == 80
    assert overall["total_minutes"] == 200
    assert overall["by_year"] == {"2023": 120, "2024": 200}
    # Series rating minutes use the series runtime for every watched episode.
    assert overall["by_rating"] == {"4": 150, "5": 120}

    this_year = stats.calculate_watch_time(snapshot, 2024)
    assert this_year["total_minutes"] == 200
    assert this_year["by_year"] == {"2024": 200}


async def test_backlog_and_top_series(db):
    built = await _build_library(db)
    snapshot = await stats.load_snapshot(db)

    backlog = stats.calculate_backlog(snapshot)
    assert backlog["total_entries"] == 2
    # Tau has no runtime, so 10 episodes at the 45 minute default.
    assert backlog["estimated_minutes"] == 90 + 450
    assert backlog["oldest_entry"]["id"] == built["beta"].id

    top = stats.top_series_by_time(snapshot)
    assert len(top) == 1
    assert top[0]["entry"]["id"] == built["sigma"].id
    assert top[0]["watched_minutes"] == 150
    assert top[0]["remaining_minutes"] == 50
    assert top[0]["completion_percentage"] == 75.0


async def test_available_years(db):
    await _build_library(db)
    years = stats.available_years(await stats.load_snapshot(db))
    assert years == {"years": [2023, 2024], "earliest_year": 2023, "latest_year": 2024}


async def test_available_years_empty_library(db):
    years = stats.available_years(await stats.load_snapshot(db))
    assert years == {"years": [], "earliest_year": None, "latest_year": None}


async def test_year_in_review(db):
    built = await _build_library(db)
    review = await stats.year_in_review(db, 2024)

    assert review["has_data"] is True
    assert review["movie_minutes"] == 120
    assert review["series_minutes"] == 80
    assert review["movies_watched"] == 1
    assert review["series_watched"] == 1
    assert review["episodes_watched"] == 2
    assert review["rating_distribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 1, "unrated": 0}
    assert review["average_rating"] == 4.5
    assert [entry["id"] for entry in review["top_rated"]] == [built["alpha"].id, built["sigma"].id]
    assert review["top_friends"] == [
        {"id": built["alice"].id, "name": "Alice", "watch_count": 2},
        {"id": built["bob"].id, "name": "Bob", "watch_count": 1},
    ]
    assert [c["name"] for c in review["collections_completed"]] == ["Favorites"]
    assert review["series"][0]["finished_this_year"] is False
    assert review["series"][0]["abandoned_this_year"] is False

    earlier = await stats.year_in_review(db, 2023)
    assert earlier["movies_watched"] == 1
    assert earlier["series_watched"] == 0
    assert earlier["collections_completed"] == []

    empty = await stats.year_in_review(db, 2019)
    assert empty["has_data"] is False
    assert empty["average_rating"] is None


async def test_timeline_is_newest_first_and_paginated(db):
    built = await _build_library(db)

    first = await stats.timeline(db, page=1, page_size=3)
    assert first["total"] == 4
    assert first["has_more"] is True
    assert [item["kind"] for item in first["items"]] == ["episode", "episode", "movie"]
    assert first["items"][0]["episode_number"] == 2
    assert first["items"][0]["episode_name"] == "Episode 2"

    second = await stats.timeline(db, page=2, page_size=3)
    assert len(second["items"]) == 1
    assert second["has_more"] is False

    movies = await stats.timeline(db, media_type="movie")
    assert movies["total"] == 2
    recent = await stats.timeline(db, start_date=date(2024, 1, 1))
    assert recent["total"] == 3
    sigma_only = await stats.timeline(db, entry_id=built["sigma"].id)
    assert sigma_only["total"] == 2

    clamped = await stats.timeline(db, page=0, page_size=1000)
    assert clamped["page"] == 1
    assert clamped["page_size"] == stats.TIMELINE_MAX_PAGE_SIZE


async def test_relationship_graph(db):
    built = await _build_library(db)
    alpha = f"entry-{built['alpha'].id}"
    alice = f"friend-{built['alice'].id}"
    mixed = f"collection-{built['mixed'].id}"

    graph = await stats.relationship_graph(db)
    assert len(graph["nodes"]) == 8
    assert len(graph["edges"]) == 6
    kinds = {(edge["source"], edge["target"]): edge["type"] for edge in graph["edges"]}
    assert kinds[(alpha, alice)] == "watched_with"
    assert kinds[(alpha, mixed)] == "in_collection"

    focused = await stats.relationship_graph(db, focus=alice)
    assert {node["id"] for node in focused["nodes"]} == {alice, alpha, f"entry-{built['sigma'].id}"}
    assert len(focused["edges"]) == 2

    searched = await stats.relationship_graph(db, search="mixed")
    assert {node["id"] for node in searched["nodes"]} == {mixed, alpha, f"entry-{built['beta'].id}"}

    limited = await stats.relationship_graph(db, max_nodes=2)
    assert len(limited["nodes"]) == 2
    assert alpha in {node["id"] for node in limited["nodes"]}

    assert await stats.relationship_graph(db, focus="entry-9999") == {"nodes": [], "edges": []}
