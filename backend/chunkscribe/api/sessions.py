from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional
from pathlib import Path
import json

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel
from sqlmodel import Session
import logging

from chunkscribe.deps import (
    get_change_hub,
    get_recording_service,
    get_session,
    get_summary_pipeline,
    get_transcription_pipeline,
)
from chunkscribe.models.audio_chunk import AudioChunk
from chunkscribe.models.recording_session import RecordingSession
from chunkscribe.models.summary import Summary
from chunkscribe.models.transcript import Transcript
from chunkscribe.repositories.chunks import ChunksRepository
from chunkscribe.repositories.sessions import SessionsRepository
from chunkscribe.repositories.summaries import SummariesRepository
from chunkscribe.repositories.transcripts import TranscriptsRepository
from chunkscribe.services.events import ChangeHub, EntityChange
from chunkscribe.services.recording_service import RecordingService, SessionActive, SessionNotFound
from chunkscribe.services.summarization_service import SummaryPipeline
from chunkscribe.services.transcription_service import TranscriptionPipeline

logger = logging.getLogger("chunkscribe.api")


router = APIRouter(prefix="/sessions", tags=["sessions"])


class UpdateSessionRequest(BaseModel):
    title: Optional[str] = None


def _require_session(session: Session, session_id: int) -> RecordingSession:
    recording = SessionsRepository(session).get(session_id)
    if recording is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return recording


def _change_stream(changes: AsyncIterator[EntityChange]) -> StreamingResponse:
    async def _events() -> AsyncIterator[str]:
        async for change in changes:
            payload = {"kind": change.kind, "session_id": change.session_id, "entity_id": change.entity_id}
            yield f"event: {change.kind}\ndata: {json.dumps(payload)}\n\n"

    return StreamingResponse(_events(), media_type="text/event-stream")


@router.get("")
def list_sessions(limit: int = 50, offset: int = 0, session: Session = Depends(get_session)) -> List[RecordingSession]:
    return SessionsRepository(session).list(limit=limit, offset=offset)


# Declared before /{session_id} so "events" is not parsed as an id
@router.get("/events")
async def all_session_events(events: ChangeHub = Depends(get_change_hub)) -> StreamingResponse:
    return _change_stream(events.subscribe())


@router.get("/{session_id}")
def get_session_detail(session_id: int, session: Session = Depends(get_session)) -> Dict[str, Any]:
    recording = _require_session(session, session_id)
    return {
        "session": recording,
        "chunks": ChunksRepository(session).list_by_session(session_id),
        "transcripts": TranscriptsRepository(session).list_by_session(session_id),
        "summary": SummariesRepository(session).get_by_session(session_id),
    }


@router.get("/{session_id}/chunks")
def list_chunks(session_id: int, session: Session = Depends(get_session)) -> List[AudioChunk]:
    _require_session(session, session_id)
    return ChunksRepository(session).list_by_session(session_id)


@router.get("/{session_id}/transcripts")
def list_transcripts(session_id: int, session: Session = Depends(get_session)) -> List[Transcript]:
    _require_session(session, session_id)
    return TranscriptsRepository(session).list_by_session(session_id)


@router.get("/{session_id}/summary")
def read_summary(session_id: int, session: Session = Depends(get_session)) -> Summary:
    _require_session(session, session_id)
    summary = SummariesRepository(session).get_by_session(session_id)
    # Not generated yet: report an idle summary without persisting it
    return summary if summary is not None else Summary(session_id=session_id)


# Rename and delete publish change events, so both run on the event loop
@router.put("/{session_id}")
async def update_session(
    session_id: int,
    body: UpdateSessionRequest,
    recording: RecordingService = Depends(get_recording_service),
) -> RecordingSession:
    try:
        return recording.rename_session(session_id, body.title)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@router.delete("/{session_id}")
async def delete_session(session_id: int, recording: RecordingService = Depends(get_recording_service)) -> Dict[str, bool]:
    try:
        recording.delete_session(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionActive as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True}


@router.post("/{session_id}/summary")
async def generate_summary(
    session_id: int,
    session: Session = Depends(get_session),
    summaries: SummaryPipeline = Depends(get_summary_pipeline),
) -> Dict[str, bool]:
    _require_session(session, session_id)
    return {"started": summaries.generate(session_id)}


@router.post("/{session_id}/transcripts/retry")
async def retry_transcripts(
    session_id: int,
    session: Session = Depends(get_session),
    transcription: TranscriptionPipeline = Depends(get_transcription_pipeline),
) -> Dict[str, int]:
    _require_session(session, session_id)
    count = await transcription.retry_failed(session_id)
    return {"retried": count}


@router.get("/{session_id}/audio")
def get_complete_audio(session_id: int, session: Session = Depends(get_session)) -> FileResponse:
    recording = _require_session(session, session_id)
    path = Path(recording.complete_audio_path) if recording.complete_audio_path else None
    if path is None or not path.exists():
        raise HTTPException(status_code=404, detail="Complete audio not available")
    return FileResponse(str(path), media_type="audio/wav", filename=path.name)


@router.get("/{session_id}/events")
async def session_events(session_id: int, events: ChangeHub = Depends(get_change_hub)) -> StreamingResponse:
    return _change_stream(events.subscribe(session_id))
