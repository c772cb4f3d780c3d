from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    # SQLite has no timezone storage; everything is kept as naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Movie(Base):
    __tablename__ = "movies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tmdb_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    original_title: Mapped[str | None] = mapped_column(String, nullable=True)
    overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    release_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    runtime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    poster_path: Mapped[str | None] = mapped_column(String, nullable=True)
    backdrop_path: Mapped[str | None] = mapped_column(String, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    original_language: Mapped[str | None] = mapped_column(String, nullable=True)
    vote_average: Mapped[float | None] = mapped_column(Float, nullable=True)
    vote_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tagline: Mapped[str | None] = mapped_column(String, nullable=True)
    imdb_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Series(Base):
    __tablename__ = "series"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tmdb_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    original_name: Mapped[str | None] = mapped_column(String, nullable=True)
    overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    first_air_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_air_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    poster_path: Mapped[str | None] = mapped_column(String, nullable=True)
    backdrop_path: Mapped[str | None] = mapped_column(String, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    original_language: Mapped[str | None] = mapped_column(String, nullable=True)
    vote_average: Mapped[float | None] = mapped_column(Float, nullable=True)
    vote_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, default="Unknown", nullable=False)
    number_of_seasons: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    number_of_episodes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    episode_run_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Season(Base):
    __tablename__ = "seasons"
    __table_args__ = (UniqueConstraint("series_id", "season_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    series_id: Mapped[int] = mapped_column(Integer, ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True)
    season_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    poster_path: Mapped[str | None] = mapped_column(String, nullable=True)
    air_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    episode_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Episode(Base):
    __tablename__ = "episodes"
    __table_args__ = (UniqueConstraint("series_id", "season_number", "episode_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    series_id: Mapped[int] = mapped_column(Integer, ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True)
    season_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("seasons.id", ondelete="CASCADE"), nullable=True)
    season_number: Mapped[int] = mapped_column(Integer, nullable=False)
    episode_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    air_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    runtime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    still_path: Mapped[str | None] = mapped_column(String, nullable=True)


class Contributor(Base):
    __tablename__ = "contributors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tmdb_person_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    profile_path: Mapped[str | None] = mapped_column(String, nullable=True)
    known_for_department: Mapped[str | None] = mapped_column(String, nullable=True)


class MediaContributor(Base):
    __tablename__ = "media_contributors"
    __table_args__ = (
        CheckConstraint("(movie_id IS NULL) <> (series_id IS NULL)", name="ck_media_contributor_target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contributor_id: Mapped[int] = mapped_column(Integer, ForeignKey("contributors.id", ondelete="CASCADE"), nullable=False)
    movie_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("movies.id", ondelete="CASCADE"), nullable=True, index=True)
    series_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("series.id", ondelete="CASCADE"), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String, nullable=False)
    character: Mapped[str | None] = mapped_column(String, nullable=True)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, default=999, nullable=False)


class Friend(Base):
    __tablename__ = "friends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    nickname: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    color: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Collection(Base):
    __tablename__ = "collections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class LibraryEntry(Base):
    __tablename__ = "library_entries"
    __table_args__ = (
        CheckConstraint("(movie_id IS NULL) <> (series_id IS NULL)", name="ck_library_entry_media"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    movie_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("movies.id", ondelete="CASCADE"), unique=True, nullable=True)
    series_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("series.id", ondelete="CASCADE"), unique=True, nullable=True)
    why_added_source: Mapped[str | None] = mapped_column(String, nullable=True)
    why_added_context: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_added: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    watch_status: Mapped[str] = mapped_column(String, default="not_started", nullable=False)
    current_season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_episode: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_watched_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    abandoned_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    abandoned_season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    abandoned_episode: Mapped[int | None] = mapped_column(Integer, nullable=True)
    abandoned_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    personal_rating: Mapped[int | None] = mapped_column(
        Integer, CheckConstraint("personal_rating BETWEEN 1 AND 5"), nullable=True
    )
    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_first_watched: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    date_last_watched: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    movie: Mapped[Movie | None] = relationship(lazy="joined")
    series: Mapped[Series | None] = relationship(lazy="joined")

    @property
    def media_type(self) -> str:
        return "movie" if self.movie_id is not None else "series"


entry_friends = Table(
    "entry_friends",
    Base.metadata,
    Column("entry_id", Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), primary_key=True),
    Column("friend_id", Integer, ForeignKey("friends.id", ondelete="CASCADE"), primary_key=True),
)

entry_tags = Table(
    "entry_tags",
    Base.metadata,
    Column("entry_id", Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class CollectionItem(Base):
    __tablename__ = "collection_items"
    __table_args__ = (UniqueConstraint("collection_id", "entry_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    collection_id: Mapped[int] = mapped_column(Integer, ForeignKey("collections.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class WatchSession(Base):
    __tablename__ = "watch_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


session_friends = Table(
    "session_friends",
    Base.metadata,
    Column("session_id", Integer, ForeignKey("watch_sessions.id", ondelete="CASCADE"), primary_key=True),
    Column("friend_id", Integer, ForeignKey("friends.id", ondelete="CASCADE"), primary_key=True),
)


class EpisodeProgress(Base):
    __tablename__ = "episode_progress"
    __table_args__ = (UniqueConstraint("session_id", "season_number", "episode_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("watch_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    season_number: Mapped[int] = mapped_column(Integer, nullable=False)
    episode_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_watched: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    watched_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class MovieWatchSession(Base):
    __tablename__ = "movie_watch_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("library_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    watched_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


movie_session_friends = Table(
    "movie_session_friends",
    Base.metadata,
    Column("session_id", Integer, ForeignKey("movie_watch_sessions.id", ondelete="CASCADE"), primary_key=True),
    Column("friend_id", Integer, ForeignKey("friends.id", ondelete="CASCADE"), primary_key=True),
)


class TmdbCache(Base):
    __tablename__ = "tmdb_cache"

    cache_key: Mapped[str] = mapped_column(String, primary_key=True)
    response: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class TraktSettings(Base):
    __tablename__ = "trakt_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    access_token: Mapped[str | None] = mapped_column(String, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    auto_sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
