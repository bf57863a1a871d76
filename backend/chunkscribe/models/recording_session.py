from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from chunkscribe.models.base import utcnow


class RecordingSession(SQLModel, table=True):
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=utcnow, index=True)
    ended_at: Optional[datetime] = None
    status: str = Field(default="active")  # active|stopped
    title: Optional[str] = None
    complete_audio_path: Optional[str] = None
