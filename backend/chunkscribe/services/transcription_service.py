from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from sqlmodel import Session

from chunkscribe.models.audio_chunk import AudioChunk
from chunkscribe.models.transcript import Transcript
from chunkscribe.repositories.chunks import ChunksRepository
from chunkscribe.repositories.transcripts import TranscriptsRepository
from chunkscribe.services.events import ChangeHub, EntityChange
from chunkscribe.services.inference import InferenceError, InferenceService, RateLimited
from chunkscribe.services.prompts import TRANSCRIPTION_PROMPT


logger = logging.getLogger("chunkscribe.transcription")

SessionFactory = Callable[[], Session]
Sleep = Callable[[float], Awaitable[None]]

MAX_RETRIES = 3  # beyond the first attempt
UPLOAD_MAX_ATTEMPTS = 3
RETRYING_PREFIX = "Retrying..."


class ChunkFileMissing(FileNotFoundError):
    pass


class UploadFailed(InferenceError):
    """Upload gave up; distinct from a failed transcription call."""


def transcription_retry_delay(retry_index: int) -> float:
    """Backoff before retry ``retry_index + 1``: 5s, 10s, 20s, then 30s."""
    return {0: 5.0, 1: 10.0, 2: 20.0}.get(retry_index, 30.0)


def upload_retry_delay(attempt: int) -> float:
    return 2.0 * (2 ** (attempt - 1))


class TranscriptionPipeline:
    """Runs one independent task per chunk: upload, transcribe, record outcome.

    Tasks are detached from the capture lifecycle; stopping a recording never
    cancels them. ``drain`` waits for everything in flight.
    """

    def __init__(
        self,
        inference: InferenceService,
        session_factory: SessionFactory,
        events: Optional[ChangeHub] = None,
        sleep: Sleep = asyncio.sleep,
        max_retries: int = MAX_RETRIES,
        upload_attempts: int = UPLOAD_MAX_ATTEMPTS,
    ) -> None:
        self._inference = inference
        self._session_factory = session_factory
        self._events = events
        self._sleep = sleep
        self.max_retries = max_retries
        self.upload_attempts = upload_attempts
        self._active: Dict[int, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._active)

    def create_pending(self, chunk: AudioChunk) -> Transcript:
        with self._session_factory() as s:
            transcript = TranscriptsRepository(s).create_pending(chunk)
        self._publish(chunk.session_id, transcript.id)
        return transcript

    def start(self, chunk: AudioChunk) -> asyncio.Task:
        chunk_id = int(chunk.id)  # type: ignore[arg-type]
        existing = self._active.get(chunk_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(
            self._run(chunk), name=f"transcribe-{chunk.session_id}-{chunk.index_in_session}"
        )
        self._active[chunk_id] = task
        task.add_done_callback(lambda _t, cid=chunk_id: self._active.pop(cid, None))
        return task

    def enqueue(self, chunk: AudioChunk) -> asyncio.Task:
        self.create_pending(chunk)
        return self.start(chunk)

    async def drain(self) -> None:
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)

    async def retry_failed(self, session_id: int) -> int:
        """Re-run every terminally failed transcript of a session."""
        with self._session_factory() as s:
            repo = TranscriptsRepository(s)
            chunks: List[AudioChunk] = []
            for transcript in repo.list_by_status("failed", session_id):
                if transcript.chunk_id in self._active:
                    continue  # still inside its retry envelope
                chunk = ChunksRepository(s).get(transcript.chunk_id)
                if chunk is None:
                    continue
                repo.mark_pending(session_id, transcript.chunk_id)
                chunks.append(chunk)
        for chunk in chunks:
            self._publish(session_id, None)
            self.start(chunk)
        logger.info("Retrying failed transcripts", extra={"session_id": session_id, "count": len(chunks)})
        return len(chunks)

    async def recover_pending(self) -> int:
        """Restart transcripts a previous process left unfinished."""
        with self._session_factory() as s:
            repo = TranscriptsRepository(s)
            unfinished = repo.list_by_status("pending") + [
                t for t in repo.list_by_status("failed") if (t.error_message or "").startswith(RETRYING_PREFIX)
            ]
            chunks = [c for c in (ChunksRepository(s).get(t.chunk_id) for t in unfinished) if c is not None]
        for chunk in chunks:
            self.start(chunk)
        if chunks:
            logger.info("Recovered unfinished transcripts", extra={"count": len(chunks)})
        return len(chunks)

    async def _run(self, chunk: AudioChunk) -> None:
        retries = 0
        while True:
            try:
                text = await self._attempt(chunk)
            except Exception as e:
                reason = str(e) or e.__class__.__name__
                if retries < self.max_retries:
                    retries += 1
                    self._mark_failed(chunk, f"{RETRYING_PREFIX} ({retries}/{self.max_retries}): {reason}")
                    delay = transcription_retry_delay(retries - 1)
                    logger.warning(
                        "Transcription attempt failed, retrying in %.0fs: %s", delay, reason,
                        extra={"session_id": chunk.session_id, "chunk_index": chunk.index_in_session},
                    )
                    await self._sleep(delay)
                    continue
                self._mark_failed(chunk, f"Failed after {self.max_retries} retries: {reason}")
                logger.error(
                    "Transcription failed permanently: %s", reason,
                    extra={"session_id": chunk.session_id, "chunk_index": chunk.index_in_session},
                )
                return
            self._mark_completed(chunk, text)
            return

    async def _attempt(self, chunk: AudioChunk) -> str:
        path = Path(chunk.file_path)
        if not path.exists():
            raise ChunkFileMissing(f"Audio file not found: {path}")
        data = await asyncio.to_thread(path.read_bytes)
        handle = await self._upload(data, path.name)
        text = await self._inference.transcribe(handle, TRANSCRIPTION_PROMPT, mime_type="audio/wav")
        return text.strip()

    async def _upload(self, data: bytes, name: str) -> str:
        attempt = 0
        while True:
            try:
                return await self._inference.upload_audio(data, "audio/wav", display_name=name)
            except RateLimited as e:
                attempt += 1
                if attempt >= self.upload_attempts:
                    raise UploadFailed(
                        f"Failed to upload audio: rate limit exceeded after {attempt} attempts"
                    ) from e
                delay = upload_retry_delay(attempt)
                logger.warning("Upload rate limited, retrying in %.0fs (attempt %d/%d)", delay, attempt, self.upload_attempts)
                await self._sleep(delay)
            except InferenceError as e:
                raise UploadFailed(f"Failed to upload audio: {e}") from e

    def _mark_completed(self, chunk: AudioChunk, text: str) -> None:
        with self._session_factory() as s:
            row = TranscriptsRepository(s).mark_completed(chunk.session_id, chunk.id, text)  # type: ignore[arg-type]
        if row is None:
            # Session deleted while the job was running
            logger.info("Transcript row gone; dropping result", extra={"chunk_id": chunk.id})
            return
        logger.info("Transcription completed", extra={"session_id": chunk.session_id, "chunk_index": chunk.index_in_session})
        self._publish(chunk.session_id, row.id)

    def _mark_failed(self, chunk: AudioChunk, message: str) -> None:
        with self._session_factory() as s:
            row = TranscriptsRepository(s).mark_failed(chunk.session_id, chunk.id, message)  # type: ignore[arg-type]
        if row is not None:
            self._publish(chunk.session_id, row.id)

    def _publish(self, session_id: int, entity_id: Optional[int]) -> None:
        if self._events is not None:
            self._events.publish(EntityChange("transcript", session_id, entity_id))
