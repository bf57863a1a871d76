from __future__ import annotations

from typing import Optional
from sqlmodel import Session, select

from chunkscribe.models.recording_session import RecordingSession


class SessionsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, recording: RecordingSession) -> RecordingSession:
        self.session.add(recording)
        self.session.commit()
        self.session.refresh(recording)
        return recording

    def get(self, session_id: int) -> Optional[RecordingSession]:
        return self.session.get(RecordingSession, session_id)

    def list(self, limit: int = 50, offset: int = 0) -> list[RecordingSession]:
        statement = (
            select(RecordingSession)
            .order_by(RecordingSession.started_at.desc(), RecordingSession.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.exec(statement))

    def update(self, recording: RecordingSession) -> RecordingSession:
        self.session.add(recording)
        self.session.commit()
        self.session.refresh(recording)
        return recording

    def delete(self, session_id: int) -> bool:
        recording = self.get(session_id)
        if recording is None:
            return False
        self.session.delete(recording)
        self.session.commit()
        return True
