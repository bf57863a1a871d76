from __future__ import annotations

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class CaptureSettings(BaseModel):
    """User-selectable capture options persisted across restarts."""

    # sounddevice input index as a string; None → system default input
    mic_device_id: Optional[str] = Field(default=None)


class SummarySettings(BaseModel):
    # Characters of transcript text kept (most recent) when prompting
    max_transcript_chars: int = Field(default=15_000, ge=1000)


class AppSettingsModel(BaseModel):
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    summary: SummarySettings = Field(default_factory=SummarySettings)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def deep_merge_dict(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = deep_merge_dict(dict(dst.get(k, {})), v)
        else:
            dst[k] = v
    return dst


def normalize_settings_dict(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a settings payload to the supported keys.

    Unknown keys are dropped and a blank device id means the system default.
    """
    if not isinstance(raw, dict):
        return {}
    result: Dict[str, Any] = {}

    capture_in = raw.get("capture")
    if isinstance(capture_in, dict) and "mic_device_id" in capture_in:
        dev = capture_in.get("mic_device_id")
        if dev is None or (isinstance(dev, str) and not dev.strip()):
            result["capture"] = {"mic_device_id": None}
        else:
            result["capture"] = {"mic_device_id": str(dev).strip()}

    summary_in = raw.get("summary")
    if isinstance(summary_in, dict) and "max_transcript_chars" in summary_in:
        try:
            result["summary"] = {"max_transcript_chars": int(summary_in["max_transcript_chars"])}
        except (TypeError, ValueError):
            pass

    return result
