from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from chunkscribe.models.base import utcnow


class AudioChunk(SQLModel, table=True):
    # Ids are never reused, so late writers for a deleted session find nothing
    __table_args__ = (UniqueConstraint("session_id", "index_in_session"), {"sqlite_autoincrement": True})

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(index=True, foreign_key="recordingsession.id")
    index_in_session: int
    file_path: str
    duration_ms: int
    # Leading audio repeated from the previous chunk's tail
    overlap_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    finalized: bool = True
