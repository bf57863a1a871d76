from __future__ import annotations

from pathlib import Path
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
import os


def _default_root() -> Path:
    # Roaming app data on Windows, home directory elsewhere
    base = os.getenv("APPDATA") or str(Path.home())
    return Path(base) / "ChunkScribe"


class Settings(BaseSettings):
    app_name: str = "ChunkScribe"

    appdata_dir: Path = Field(default_factory=_default_root)
    data_dir: Path = Field(default_factory=lambda: _default_root() / "data")
    audio_dir: Path = Field(default_factory=lambda: _default_root() / "recordings")
    logs_dir: Path = Field(default_factory=lambda: _default_root() / "logs")

    database_path: Path = Field(default_factory=lambda: _default_root() / "data" / "chunkscribe.db")

    # Capture tuning (16 kHz mono int16)
    sample_rate: int = 16000
    chunk_ms: int = 30_000
    overlap_ms: int = 2_000
    read_frames: int = 1600
    silence_rms_threshold: float = 200.0
    silence_alert_ms: int = 10_000
    min_free_bytes: int = 20 * 1024 * 1024
    pause_poll_ms: int = 100

    # Inference service
    inference_api_key: str = ""
    inference_base_url: str = "https://generativelanguage.googleapis.com"
    inference_model: str = "gemini-2.0-flash"
    inference_timeout_s: float = 120.0

    # Browser origins allowed to call the API (CS_CORS_ORIGINS='["http://..."]')
    cors_origins: List[str] = Field(default_factory=list)

    class Config:
        env_prefix = "CS_"
        case_sensitive = False

    def ensure_dirs(self) -> None:
        for d in [self.appdata_dir, self.data_dir, self.audio_dir, self.logs_dir]:
            d.mkdir(parents=True, exist_ok=True)
