from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, List, Optional

import numpy as np
import pytest
from sqlmodel import Session, create_engine

from chunkscribe.models.audio_chunk import AudioChunk
from chunkscribe.models.base import init_db
from chunkscribe.models.recording_session import RecordingSession
from chunkscribe.repositories.chunks import ChunksRepository
from chunkscribe.repositories.sessions import SessionsRepository
from chunkscribe.services import wav_codec
from chunkscribe.services.audio_capture import AudioSource, CaptureConfig
from chunkscribe.services.inference import InferenceService
from chunkscribe.services.session_files import SessionFiles


class FakeClock:
    """Monotonic clock in whole milliseconds so chunk boundaries are exact."""

    def __init__(self) -> None:
        self.ms = 0
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.ms / 1000

    def advance(self, ms: int) -> None:
        with self._lock:
            self.ms += ms


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeInference(InferenceService):
    """Scripted inference: each call consumes one scripted item (value or exception)."""

    def __init__(
        self,
        uploads: Optional[List[Any]] = None,
        transcripts: Optional[List[Any]] = None,
        generations: Optional[List[Any]] = None,
    ) -> None:
        self.uploads = list(uploads or [])
        self.transcripts = list(transcripts or [])
        self.generations = list(generations or [])
        self.upload_calls = 0
        self.transcribe_calls: List[str] = []
        self.prompts: List[str] = []

    @staticmethod
    def _next(script: List[Any], default: Any) -> Any:
        item = script.pop(0) if script else default
        if isinstance(item, BaseException):
            raise item
        return item

    async def upload_audio(self, data: bytes, mime_type: str = "audio/wav", display_name: Optional[str] = None) -> str:
        self.upload_calls += 1
        return self._next(self.uploads, f"files/{self.upload_calls}")

    async def transcribe(self, handle: str, prompt: str, mime_type: str = "audio/wav") -> str:
        self.transcribe_calls.append(handle)
        return self._next(self.transcripts, "transcribed text")

    async def generate_text(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self._next(self.generations, f"section {len(self.prompts)}")


class FakeSource(AudioSource):
    """Produces ``total_reads`` buffers of ``read_frames`` samples, then exhausts.

    Every read advances the fake clock by the buffer's duration. Samples form a
    running ramp so overlapping regions can be compared byte for byte.
    """

    def __init__(
        self,
        clock: FakeClock,
        config: CaptureConfig,
        total_reads: int,
        amplitude: Callable[[int], int] = lambda n: 1000,
        on_read: Optional[Callable[[int], None]] = None,
        fail_at: Optional[int] = None,
    ) -> None:
        self.clock = clock
        self.config = config
        self.total_reads = total_reads
        self.amplitude = amplitude
        self.on_read = on_read
        self.fail_at = fail_at
        self.reads = 0
        self.opened = False
        self.closed = False
        self._sample = 0

    def open(self) -> None:
        self.opened = True

    def read(self) -> Optional[np.ndarray]:
        if self.fail_at is not None and self.reads >= self.fail_at:
            raise OSError("device unplugged")
        if self.reads >= self.total_reads:
            return None
        n = self.config.read_frames
        amp = self.amplitude(self.reads)
        if amp == 0:
            samples = np.zeros(n, dtype=np.int16)
        else:
            ramp = (np.arange(self._sample, self._sample + n) % 2000) - 1000
            samples = np.clip(ramp * amp // 1000, -32768, 32767).astype(np.int16)
            # never quieter than the silence threshold
            samples[::2] = amp
        self._sample += n
        self.reads += 1
        self.clock.advance(n * 1000 // self.config.sample_rate)
        if self.on_read is not None:
            self.on_read(self.reads)
        return samples

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def engine(tmp_path: Path):
    eng = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> Callable[[], Session]:
    return lambda: Session(engine, expire_on_commit=False)


@pytest.fixture
def files(tmp_path: Path) -> SessionFiles:
    return SessionFiles(tmp_path / "recordings")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def capture_config() -> CaptureConfig:
    return CaptureConfig(pause_poll_ms=5)


@pytest.fixture
def make_chunk(session_factory, files):
    """Create a session (if needed) plus a chunk row backed by a real WAV file."""

    def _make(session_id: Optional[int] = None, index: int = 0, write_file: bool = True) -> AudioChunk:
        with session_factory() as s:
            if session_id is None:
                session_id = int(SessionsRepository(s).create(RecordingSession(status="stopped")).id)
            path = files.chunk_path(session_id, index)
            if write_file:
                wav_codec.write_file(path, b"\x01\x00" * 16000, 16000)
            return ChunksRepository(s).create(
                AudioChunk(
                    session_id=session_id,
                    index_in_session=index,
                    file_path=str(path),
                    duration_ms=1000,
                )
            )

    return _make
