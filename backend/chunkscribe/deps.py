from __future__ import annotations

from typing import Iterator

from fastapi import Request
from sqlmodel import Session

from chunkscribe.services.events import ChangeHub
from chunkscribe.services.recording_service import RecordingService
from chunkscribe.services.summarization_service import SummaryPipeline
from chunkscribe.services.transcription_service import TranscriptionPipeline


def get_session(request: Request) -> Iterator[Session]:
    with request.app.state.session_factory() as session:
        yield session


def get_recording_service(request: Request) -> RecordingService:
    return request.app.state.recording


def get_transcription_pipeline(request: Request) -> TranscriptionPipeline:
    return request.app.state.transcription


def get_summary_pipeline(request: Request) -> SummaryPipeline:
    return request.app.state.summaries


def get_change_hub(request: Request) -> ChangeHub:
    return request.app.state.events
