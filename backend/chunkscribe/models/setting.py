from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from chunkscribe.models.base import utcnow


class Setting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value_json: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
