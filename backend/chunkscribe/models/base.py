from __future__ import annotations

from datetime import datetime, timezone

from sqlmodel import SQLModel, create_engine
from sqlalchemy.engine import Engine
from chunkscribe.config import Settings

_settings = Settings()

# SQLite with WAL enabled
engine: Engine = create_engine(
    f"sqlite:///{_settings.database_path}", connect_args={"check_same_thread": False}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_db(bind: Engine | None = None) -> None:
    target = bind or engine
    if bind is None:
        _settings.database_path.parent.mkdir(parents=True, exist_ok=True)
    # Enable WAL
    with target.begin() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
        conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
    # Import table modules so their metadata is registered
    from chunkscribe.models import audio_chunk, recording_session, setting, summary, transcript  # noqa: F401

    SQLModel.metadata.create_all(target)
