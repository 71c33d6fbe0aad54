"""Database setup."""

from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from pillsync.config import settings

engine = create_engine(
    f"sqlite:///{settings.db_path}",
    echo=False,
    connect_args={"check_same_thread": False},
)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as timezone-aware UTC.

    SQLite drops tzinfo, so stored datetimes may load back naive; they were
    written in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables."""
    # Import models to register them with SQLModel before create_all()
    import pillsync.documents.models  # noqa: F401
    import pillsync.realtime.models  # noqa: F401
    import pillsync.tasks.models  # noqa: F401

    target = bind if bind is not None else engine
    database = target.url.database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(target)
