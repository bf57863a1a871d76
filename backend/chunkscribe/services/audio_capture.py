from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - allow import on systems without PortAudio
    sd = None

from chunkscribe.config import Settings
from chunkscribe.models.audio_chunk import AudioChunk
from chunkscribe.models.base import utcnow
from chunkscribe.repositories.chunks import ChunksRepository
from chunkscribe.repositories.sessions import SessionsRepository
from chunkscribe.services import wav_codec
from chunkscribe.services.events import ChangeHub, EntityChange
from chunkscribe.services.recording_state import ObservableState, RecordingStateMachine, STATUS_RECORDING
from chunkscribe.services.session_files import SessionFiles
from chunkscribe.services.transcription_service import SessionFactory, TranscriptionPipeline


logger = logging.getLogger("chunkscribe.capture")

STATUS_NO_AUDIO = "No audio detected - Check microphone"
STATUS_LOW_STORAGE = "Recording stopped - Low storage"
STATUS_SOURCE_INTERRUPTED = "Audio source interrupted"

REASON_STOPPED = "stopped"
REASON_EXHAUSTED = "exhausted"
REASON_LOW_STORAGE = "low_storage"
REASON_INTERRUPTED = "interrupted"


@dataclass
class CaptureConfig:
    sample_rate: int = 16000
    chunk_ms: int = 30_000
    overlap_ms: int = 2_000
    read_frames: int = 1600
    silence_rms_threshold: float = 200.0
    silence_alert_ms: int = 10_000
    min_free_bytes: int = 20 * 1024 * 1024
    pause_poll_ms: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> "CaptureConfig":
        return cls(
            sample_rate=settings.sample_rate,
            chunk_ms=settings.chunk_ms,
            overlap_ms=settings.overlap_ms,
            read_frames=settings.read_frames,
            silence_rms_threshold=settings.silence_rms_threshold,
            silence_alert_ms=settings.silence_alert_ms,
            min_free_bytes=settings.min_free_bytes,
            pause_poll_ms=settings.pause_poll_ms,
        )

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * wav_codec.SAMPLE_WIDTH

    @property
    def overlap_bytes(self) -> int:
        n = self.bytes_per_second * self.overlap_ms // 1000
        return n - (n % wav_codec.SAMPLE_WIDTH)


class AudioSource(abc.ABC):
    """Pull-based mono int16 audio source."""

    @abc.abstractmethod
    def open(self) -> None:
        ...

    @abc.abstractmethod
    def read(self) -> Optional[np.ndarray]:
        """Block for the next buffer; ``None`` once the source is exhausted."""

    @abc.abstractmethod
    def close(self) -> None:
        ...


class MicrophoneSource(AudioSource):
    def __init__(self, device_id: Optional[str], config: CaptureConfig) -> None:
        self.device_id = device_id
        self.config = config
        self._stream = None

    def open(self) -> None:
        if sd is None:
            raise RuntimeError("sounddevice not available")
        device = int(self.device_id) if self.device_id is not None else None
        self._stream = sd.InputStream(
            device=device,
            channels=1,
            dtype="int16",
            samplerate=self.config.sample_rate,
            blocksize=self.config.read_frames,
        )
        self._stream.start()
        logger.info("Mic capture started", extra={"device": device, "rate": self.config.sample_rate})

    def read(self) -> Optional[np.ndarray]:
        if self._stream is None:
            return None
        data, overflowed = self._stream.read(self.config.read_frames)
        if overflowed:  # pragma: no cover - depends on host load
            logger.debug("Input overflow")
        return np.asarray(data, dtype=np.int16).reshape(-1).copy()

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


@dataclass
class CaptureResult:
    session_id: int
    reason: str
    chunks: List[AudioChunk] = field(default_factory=list)


class CaptureLoop:
    """Sequential capture loop for one session.

    Reads buffers, tracks silence, cuts a chunk every ``chunk_ms`` of
    (unpaused) wall-clock time with the previous chunk's last ``overlap_ms``
    prepended, and flushes the partial window on stop. Chunk writes and
    transcription kickoff run as separate tasks so reads are never held up
    by disk or network I/O.
    """

    def __init__(
        self,
        session_id: int,
        source: AudioSource,
        config: CaptureConfig,
        machine: RecordingStateMachine,
        state: ObservableState,
        files: SessionFiles,
        session_factory: SessionFactory,
        transcription: TranscriptionPipeline,
        events: Optional[ChangeHub] = None,
        clock: Callable[[], float] = time.monotonic,
        free_bytes: Optional[Callable[[], int]] = None,
    ) -> None:
        self.session_id = session_id
        self._source = source
        self._cfg = config
        self._machine = machine
        self._state = state
        self._files = files
        self._session_factory = session_factory
        self._transcription = transcription
        self._events = events
        self._clock = clock
        self._free_bytes = free_bytes or files.free_bytes
        self._writes: List[asyncio.Task] = []
        self._silent_ms = 0.0
        self._silence_alerted = False

    async def run(self) -> CaptureResult:
        """Capture until stop, exhaustion, low storage or a device error.

        The source must already be open; it is closed before returning.
        """
        cfg = self._cfg
        last_overlap = b""
        window = bytearray()
        index = 0
        reason = REASON_STOPPED
        window_start = self._clock()
        try:
            while True:
                if self._machine.stop_requested:
                    break
                if self._machine.is_paused:
                    await asyncio.sleep(cfg.pause_poll_ms / 1000)
                    # paused time must not count toward the window
                    window_start = self._clock()
                    self._reset_silence()
                    continue
                try:
                    samples = await asyncio.to_thread(self._source.read)
                except Exception:
                    logger.exception("Audio source read failed", extra={"session_id": self.session_id})
                    self._state.set(status=STATUS_SOURCE_INTERRUPTED)
                    reason = REASON_INTERRUPTED
                    break
                if samples is None:
                    reason = REASON_EXHAUSTED
                    break
                if samples.size == 0:
                    await asyncio.sleep(0.01)
                    continue

                window += samples.astype("<i2", copy=False).tobytes()
                self._track_silence(samples)

                if (self._clock() - window_start) * 1000 >= cfg.chunk_ms:
                    payload = last_overlap + bytes(window)
                    self._emit(index, payload, len(last_overlap))
                    last_overlap = payload[-cfg.overlap_bytes:] if cfg.overlap_bytes else b""
                    window = bytearray()
                    window_start = self._clock()
                    index += 1
                    if self._free_bytes() < cfg.min_free_bytes:
                        logger.warning("Low storage; stopping capture", extra={"session_id": self.session_id})
                        self._state.set(status=STATUS_LOW_STORAGE)
                        reason = REASON_LOW_STORAGE
                        break
        finally:
            if window:
                self._emit(index, last_overlap + bytes(window), len(last_overlap))
                index += 1
            try:
                await asyncio.to_thread(self._source.close)
            except Exception:
                logger.exception("Failed to release audio source")

        chunks = await self._finish_writes()
        self._mark_session_stopped()
        logger.info(
            "Capture finished", extra={"session_id": self.session_id, "reason": reason, "chunks": len(chunks)}
        )
        return CaptureResult(session_id=self.session_id, reason=reason, chunks=chunks)

    async def assemble_complete_audio(self) -> Optional[Path]:
        """Best-effort: build the session's complete audio file from its chunks."""
        try:
            path = await asyncio.to_thread(self._write_complete_audio)
        except Exception:
            logger.exception("Failed to create complete audio", extra={"session_id": self.session_id})
            return None
        with self._session_factory() as s:
            repo = SessionsRepository(s)
            recording = repo.get(self.session_id)
            if recording is not None:
                recording.complete_audio_path = str(path)
                repo.update(recording)
        self._publish("session", self.session_id)
        return path

    def _track_silence(self, samples: np.ndarray) -> None:
        read_ms = samples.size * 1000.0 / self._cfg.sample_rate
        if rms(samples) < self._cfg.silence_rms_threshold:
            self._silent_ms += read_ms
        else:
            self._silent_ms = 0.0
            if self._silence_alerted:
                self._silence_alerted = False
                self._state.set(status=STATUS_RECORDING)
        if self._silent_ms >= self._cfg.silence_alert_ms and not self._silence_alerted:
            self._silence_alerted = True
            logger.warning("No audio detected", extra={"session_id": self.session_id})
            self._state.set(status=STATUS_NO_AUDIO)

    def _reset_silence(self) -> None:
        self._silent_ms = 0.0
        self._silence_alerted = False

    def _emit(self, index: int, payload: bytes, overlap_len: int) -> None:
        task = asyncio.create_task(
            self._persist_chunk(index, payload, overlap_len), name=f"chunk-{self.session_id}-{index}"
        )
        self._writes.append(task)

    async def _persist_chunk(self, index: int, payload: bytes, overlap_len: int) -> Optional[AudioChunk]:
        try:
            chunk = await asyncio.to_thread(self._write_chunk, index, payload, overlap_len)
        except Exception:
            logger.exception("Failed to persist chunk", extra={"session_id": self.session_id, "chunk_index": index})
            return None
        self._publish("chunk", chunk.id)
        self._transcription.enqueue(chunk)
        return chunk

    def _write_chunk(self, index: int, payload: bytes, overlap_len: int) -> AudioChunk:
        sr = self._cfg.sample_rate
        path = self._files.chunk_path(self.session_id, index)
        wav_codec.write_file(path, payload, sr)
        chunk = AudioChunk(
            session_id=self.session_id,
            index_in_session=index,
            file_path=str(path),
            duration_ms=wav_codec.duration_ms(len(payload), sr),
            overlap_ms=wav_codec.duration_ms(overlap_len, sr),
            finalized=True,
        )
        with self._session_factory() as s:
            return ChunksRepository(s).create(chunk)

    async def _finish_writes(self) -> List[AudioChunk]:
        results = await asyncio.gather(*self._writes)
        return sorted((c for c in results if c is not None), key=lambda c: c.index_in_session)

    def _mark_session_stopped(self) -> None:
        with self._session_factory() as s:
            repo = SessionsRepository(s)
            recording = repo.get(self.session_id)
            if recording is not None:
                recording.status = "stopped"
                recording.ended_at = utcnow()
                repo.update(recording)
        self._publish("session", self.session_id)

    def _write_complete_audio(self) -> Path:
        with self._session_factory() as s:
            chunks = ChunksRepository(s).list_by_session(self.session_id)
        if not chunks:
            raise ValueError("No chunks to concatenate")
        sr = self._cfg.sample_rate
        pcm = bytearray()
        for chunk in chunks:
            path = Path(chunk.file_path)
            if not path.exists():
                logger.warning("Chunk file missing during assembly: %s", path)
                continue
            data = wav_codec.read_pcm(path)
            # Drop the prefix repeated from the previous chunk
            skip = self._cfg.bytes_per_second * chunk.overlap_ms // 1000
            pcm += data[skip:]
        if not pcm:
            raise ValueError("No audio data to concatenate")
        out = self._files.complete_audio_path(self.session_id)
        wav_codec.write_file(out, bytes(pcm), sr)
        return out

    def _publish(self, kind: str, entity_id: Optional[int]) -> None:
        if self._events is not None:
            self._events.publish(EntityChange(kind, self.session_id, entity_id))
