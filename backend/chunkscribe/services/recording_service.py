from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from chunkscribe.models.recording_session import RecordingSession
from chunkscribe.repositories.chunks import ChunksRepository
from chunkscribe.repositories.sessions import SessionsRepository
from chunkscribe.repositories.settings import get_app_settings
from chunkscribe.repositories.summaries import SummariesRepository
from chunkscribe.repositories.transcripts import TranscriptsRepository
from chunkscribe.services.audio_capture import (
    AudioSource,
    CaptureConfig,
    CaptureLoop,
    CaptureResult,
    MicrophoneSource,
    REASON_INTERRUPTED,
    REASON_LOW_STORAGE,
    STATUS_LOW_STORAGE,
    STATUS_SOURCE_INTERRUPTED,
)
from chunkscribe.services.events import ChangeHub, EntityChange
from chunkscribe.services.recording_state import (
    ElapsedTimer,
    ObservableState,
    PauseCause,
    RecordingPhase,
    RecordingStateMachine,
    STATUS_RECORDING,
    STATUS_STOPPED,
    StateView,
)
from chunkscribe.services.session_files import SessionFiles
from chunkscribe.services.transcription_service import SessionFactory, TranscriptionPipeline


logger = logging.getLogger("chunkscribe.recording")

SourceFactory = Callable[[Optional[str], CaptureConfig], AudioSource]

_FINAL_STATUS = {
    REASON_LOW_STORAGE: STATUS_LOW_STORAGE,
    REASON_INTERRUPTED: STATUS_SOURCE_INTERRUPTED,
}


class CaptureAlreadyRunning(RuntimeError):
    pass


class LowStorageError(RuntimeError):
    pass


class SessionActive(RuntimeError):
    pass


class SessionNotFound(LookupError):
    pass


class RecordingService:
    """Host-facing commands for the recording lifecycle and session store.

    The observable recording state is written only from here, the capture
    loop and the elapsed timer; callers get a read-only ``state`` view.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        files: SessionFiles,
        transcription: TranscriptionPipeline,
        config: Optional[CaptureConfig] = None,
        events: Optional[ChangeHub] = None,
        source_factory: SourceFactory = MicrophoneSource,
        clock: Callable[[], float] = time.monotonic,
        free_bytes: Optional[Callable[[], int]] = None,
        timer_interval: float = 1.0,
    ) -> None:
        self._session_factory = session_factory
        self._files = files
        self._transcription = transcription
        self.config = config or CaptureConfig()
        self._events = events
        self._source_factory = source_factory
        self._clock = clock
        self._free_bytes = free_bytes or files.free_bytes
        self._machine = RecordingStateMachine(clock)
        self._cell = ObservableState()
        self.state: StateView = self._cell.view()
        self._timer = ElapsedTimer(self._machine, self._cell, interval=timer_interval)
        self._capture_task: Optional[asyncio.Task] = None

    @property
    def machine(self) -> RecordingStateMachine:
        return self._machine

    @property
    def is_capturing(self) -> bool:
        return self._capture_task is not None and not self._capture_task.done()

    async def start_capture(self, device_id: Optional[str] = None) -> int:
        if self._machine.is_active or self.is_capturing:
            raise CaptureAlreadyRunning("A recording is already in progress")
        if self._free_bytes() < self.config.min_free_bytes:
            self._cell.set(status=STATUS_LOW_STORAGE)
            raise LowStorageError(STATUS_LOW_STORAGE)

        if device_id is None:
            with self._session_factory() as s:
                device_id = get_app_settings(s)["capture"]["mic_device_id"]
        source = self._source_factory(device_id, self.config)
        await asyncio.to_thread(source.open)

        try:
            with self._session_factory() as s:
                recording = SessionsRepository(s).create(RecordingSession(status="active"))
            session_id = int(recording.id)  # type: ignore[arg-type]
            self._files.ensure_session_dir(session_id)
        except Exception:
            await asyncio.to_thread(source.close)
            raise

        self._machine.start(session_id)
        self._cell.reset(active_session_id=session_id, status=STATUS_RECORDING, phase=RecordingPhase.RECORDING)
        self._publish(session_id)

        loop = CaptureLoop(
            session_id=session_id,
            source=source,
            config=self.config,
            machine=self._machine,
            state=self._cell,
            files=self._files,
            session_factory=self._session_factory,
            transcription=self._transcription,
            events=self._events,
            clock=self._clock,
            free_bytes=self._free_bytes,
        )
        self._timer.start()
        self._capture_task = asyncio.create_task(self._run_capture(loop), name=f"capture-{session_id}")
        logger.info("Recording started", extra={"session_id": session_id, "device": device_id})
        return session_id

    def pause_capture(self, cause: PauseCause = PauseCause.USER) -> None:
        self._machine.pause(cause)
        self._cell.set(is_paused=True, status=self._machine.status_text(), phase=RecordingPhase.PAUSED)
        logger.info("Recording paused", extra={"cause": cause.value})

    def resume_capture(self) -> None:
        self._machine.resume()
        self._cell.set(is_paused=False, status=STATUS_RECORDING, phase=RecordingPhase.RECORDING)
        logger.info("Recording resumed")

    def interrupt_begin(self) -> bool:
        """Phone call started: pause if recording.

        An existing pause keeps its cause, so a user pause outlives the call.
        """
        if not self._machine.is_active or self._machine.is_paused:
            return False
        self.pause_capture(PauseCause.PHONE_CALL)
        return True

    def interrupt_end(self) -> bool:
        """Phone call ended: resume only a pause the call itself caused."""
        if self._machine.is_paused and self._machine.pause_cause == PauseCause.PHONE_CALL:
            self.resume_capture()
            return True
        return False

    async def stop_capture(self, wait: bool = True) -> Optional[CaptureResult]:
        self._machine.request_stop()
        task = self._capture_task
        if not wait or task is None:
            return None
        return await task

    async def wait_stopped(self) -> Optional[CaptureResult]:
        task = self._capture_task
        if task is None:
            return None
        return await task

    async def _run_capture(self, loop: CaptureLoop) -> CaptureResult:
        final_status = STATUS_STOPPED
        try:
            result = await loop.run()
            final_status = _FINAL_STATUS.get(result.reason, STATUS_STOPPED)
        finally:
            self._machine.finish()
            await self._timer.stop()
            self._cell.reset(
                status=final_status,
                elapsed_sec=self._machine.elapsed_ms() // 1000,
                phase=RecordingPhase.STOPPED,
            )
        # Runs after the UI state is cleared; failures are logged only
        await loop.assemble_complete_audio()
        return result

    def rename_session(self, session_id: int, title: Optional[str]) -> RecordingSession:
        with self._session_factory() as s:
            repo = SessionsRepository(s)
            recording = repo.get(session_id)
            if recording is None:
                raise SessionNotFound(session_id)
            recording.title = (title or "").strip() or None
            recording = repo.update(recording)
        self._publish(session_id)
        return recording

    def delete_session(self, session_id: int) -> None:
        """Remove transcripts, summary, chunks, the session row and its directory."""
        if self._machine.is_active and self._machine.session_id == session_id:
            raise SessionActive("Stop the recording before deleting it")
        with self._session_factory() as s:
            if SessionsRepository(s).get(session_id) is None:
                raise SessionNotFound(session_id)
            TranscriptsRepository(s).delete_for_session(session_id)
            SummariesRepository(s).delete_for_session(session_id)
            ChunksRepository(s).delete_for_session(session_id)
            SessionsRepository(s).delete(session_id)
        self._files.remove_session_dir(session_id)
        logger.info("Session deleted", extra={"session_id": session_id})
        self._publish(session_id)

    def _publish(self, session_id: int) -> None:
        if self._events is not None:
            self._events.publish(EntityChange("session", session_id, session_id))
