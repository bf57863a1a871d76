from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from chunkscribe.models.base import utcnow


class Transcript(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("session_id", "chunk_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(index=True, foreign_key="recordingsession.id")
    chunk_id: int = Field(foreign_key="audiochunk.id")
    chunk_index: int = Field(index=True)  # mirrors AudioChunk.index_in_session
    text: str = ""
    status: str = Field(default="pending")  # pending|completed|failed
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
