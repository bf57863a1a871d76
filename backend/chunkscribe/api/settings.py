from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError
from sqlmodel import Session

from chunkscribe.deps import get_session
from chunkscribe.repositories.settings import get_app_settings, save_app_settings
from chunkscribe.models.app_settings import CaptureSettings, SummarySettings


router = APIRouter(prefix="/settings", tags=["settings"])


class SettingsUpdate(BaseModel):
    capture: CaptureSettings | None = None
    summary: SummarySettings | None = None


@router.get("")
def read_settings(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return get_app_settings(session)


@router.post("")
def update_settings(body: SettingsUpdate, session: Session = Depends(get_session)) -> Dict[str, Any]:
    # Partial update; omitted sections keep their stored values
    patch = body.model_dump(exclude_none=True)
    try:
        return save_app_settings(session, patch)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors())
