from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
import logging

from chunkscribe.deps import get_recording_service
from chunkscribe.services.recording_service import (
    CaptureAlreadyRunning,
    LowStorageError,
    RecordingService,
)
from chunkscribe.services.recording_state import InvalidTransition, RecordingUiState

logger = logging.getLogger("chunkscribe.api")


router = APIRouter(prefix="/recording", tags=["recording"])


class StartRecordingRequest(BaseModel):
    device_id: Optional[str] = None


class RecordingStateResponse(BaseModel):
    active_session_id: Optional[int] = None
    status: str
    elapsed_sec: int
    elapsed_text: str
    is_paused: bool
    phase: str


class StopResponse(BaseModel):
    ok: bool
    session_id: Optional[int] = None
    reason: Optional[str] = None
    chunks: int = 0
    state: RecordingStateResponse


def _state_response(state: RecordingUiState) -> RecordingStateResponse:
    return RecordingStateResponse(
        active_session_id=state.active_session_id,
        status=state.status,
        elapsed_sec=state.elapsed_sec,
        elapsed_text=state.elapsed_text,
        is_paused=state.is_paused,
        phase=state.phase.value,
    )


@router.get("/state")
async def read_state(recording: RecordingService = Depends(get_recording_service)) -> RecordingStateResponse:
    return _state_response(recording.state.value)


@router.get("/state/stream")
async def stream_state(recording: RecordingService = Depends(get_recording_service)) -> StreamingResponse:
    async def _events() -> AsyncIterator[str]:
        async for state in recording.state.subscribe():
            yield f"data: {_state_response(state).model_dump_json()}\n\n"

    return StreamingResponse(_events(), media_type="text/event-stream")


@router.post("/start")
async def start_recording(
    body: StartRecordingRequest | None = None,
    recording: RecordingService = Depends(get_recording_service),
) -> Dict[str, Any]:
    try:
        session_id = await recording.start_capture(body.device_id if body else None)
    except CaptureAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LowStorageError as e:
        raise HTTPException(status_code=507, detail=str(e))
    except (RuntimeError, OSError, ValueError) as e:
        # Device could not be opened (missing PortAudio, bad device id, ...)
        logger.exception("Failed to open audio source")
        raise HTTPException(status_code=503, detail=f"Audio device unavailable: {e}")
    return {"session_id": session_id, "state": _state_response(recording.state.value)}


@router.post("/pause")
async def pause_recording(recording: RecordingService = Depends(get_recording_service)) -> RecordingStateResponse:
    try:
        recording.pause_capture()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _state_response(recording.state.value)


@router.post("/resume")
async def resume_recording(recording: RecordingService = Depends(get_recording_service)) -> RecordingStateResponse:
    try:
        recording.resume_capture()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _state_response(recording.state.value)


@router.post("/interrupt/begin")
async def interrupt_begin(recording: RecordingService = Depends(get_recording_service)) -> RecordingStateResponse:
    recording.interrupt_begin()
    return _state_response(recording.state.value)


@router.post("/interrupt/end")
async def interrupt_end(recording: RecordingService = Depends(get_recording_service)) -> RecordingStateResponse:
    recording.interrupt_end()
    return _state_response(recording.state.value)


@router.post("/stop")
async def stop_recording(recording: RecordingService = Depends(get_recording_service)) -> StopResponse:
    try:
        result = await recording.stop_capture()
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return StopResponse(
        ok=True,
        session_id=result.session_id if result else None,
        reason=result.reason if result else None,
        chunks=len(result.chunks) if result else 0,
        state=_state_response(recording.state.value),
    )
