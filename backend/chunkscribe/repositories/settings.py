from __future__ import annotations

from typing import Any, Dict, Optional
import copy
import json
import logging

from pydantic import ValidationError
from sqlmodel import Session, select

from chunkscribe.models.base import utcnow
from chunkscribe.models.setting import Setting
from chunkscribe.models.app_settings import (
    AppSettingsModel,
    normalize_settings_dict,
    deep_merge_dict,
)


logger = logging.getLogger("chunkscribe.settings")

DEFAULT_SETTINGS: Dict[str, Any] = AppSettingsModel().to_dict()

APP_SETTINGS_KEY = "app_settings"


def _load_json_or_default(value_json: Optional[str]) -> Dict[str, Any]:
    if not value_json:
        return copy.deepcopy(DEFAULT_SETTINGS)
    try:
        parsed = json.loads(value_json)
        # deep-merge defaults so new fields exist, then validate
        merged = deep_merge_dict(copy.deepcopy(DEFAULT_SETTINGS), normalize_settings_dict(parsed))
        return AppSettingsModel(**merged).to_dict()
    except (ValueError, ValidationError):
        logger.warning("Stored settings unreadable; falling back to defaults")
        return copy.deepcopy(DEFAULT_SETTINGS)


def get_app_settings(session: Session) -> Dict[str, Any]:
    row = session.get(Setting, APP_SETTINGS_KEY)
    return _load_json_or_default(row.value_json if row else None)


def save_app_settings(session: Session, settings_data: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial settings payload into the stored settings.

    Raises ``pydantic.ValidationError`` when the merged result is invalid.
    """
    current = get_app_settings(session)
    merged = deep_merge_dict(current, normalize_settings_dict(settings_data))
    normalized = AppSettingsModel(**merged).to_dict()
    payload = json.dumps(normalized, ensure_ascii=False)
    row = session.exec(select(Setting).where(Setting.key == APP_SETTINGS_KEY)).first()
    if row is None:
        row = Setting(key=APP_SETTINGS_KEY, value_json=payload)
    else:
        row.value_json = payload
        row.updated_at = utcnow()
    session.add(row)
    session.commit()
    return normalized
