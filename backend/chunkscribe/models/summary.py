from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from chunkscribe.models.base import utcnow


class Summary(SQLModel, table=True):
    session_id: int = Field(primary_key=True, foreign_key="recordingsession.id")
    status: str = Field(default="idle")  # idle|generating|completed|failed
    title: Optional[str] = None
    summary: Optional[str] = None
    action_items: Optional[str] = None
    key_points: Optional[str] = None
    sections_completed: int = 0
    error_message: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
