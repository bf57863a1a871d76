from __future__ import annotations

import logging
import shutil
from pathlib import Path

from chunkscribe.config import Settings


logger = logging.getLogger("chunkscribe.files")

COMPLETE_AUDIO_NAME = "complete_audio.wav"


class SessionFiles:
    """On-disk layout: ``<root>/<session_id>/chunk_NNNN.wav`` plus the complete file."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionFiles":
        return cls(settings.audio_dir)

    def session_dir(self, session_id: int) -> Path:
        return self.root / str(session_id)

    def ensure_session_dir(self, session_id: int) -> Path:
        d = self.session_dir(session_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def chunk_path(self, session_id: int, index: int) -> Path:
        return self.session_dir(session_id) / f"chunk_{index:04d}.wav"

    def complete_audio_path(self, session_id: int) -> Path:
        return self.session_dir(session_id) / COMPLETE_AUDIO_NAME

    def remove_session_dir(self, session_id: int) -> bool:
        d = self.session_dir(session_id)
        if not d.exists():
            return False
        shutil.rmtree(d)
        logger.info("Removed session directory %s", d)
        return True

    def free_bytes(self) -> int:
        # Probe the nearest existing ancestor so a fresh install still reports space
        probe = self.root
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        return shutil.disk_usage(str(probe)).free
