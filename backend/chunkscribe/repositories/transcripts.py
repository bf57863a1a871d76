from __future__ import annotations

from typing import Optional
from sqlmodel import Session, select

from chunkscribe.models.audio_chunk import AudioChunk
from chunkscribe.models.base import utcnow
from chunkscribe.models.transcript import Transcript


class TranscriptsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_pending(self, chunk: AudioChunk) -> Transcript:
        """Insert the pending row for a chunk, or return the existing one."""
        existing = self.get_for_chunk(chunk.session_id, chunk.id)  # type: ignore[arg-type]
        if existing is not None:
            return existing
        transcript = Transcript(
            session_id=chunk.session_id,
            chunk_id=chunk.id,  # type: ignore[arg-type]
            chunk_index=chunk.index_in_session,
            text="",
            status="pending",
        )
        self.session.add(transcript)
        self.session.commit()
        self.session.refresh(transcript)
        return transcript

    def get_for_chunk(self, session_id: int, chunk_id: int) -> Optional[Transcript]:
        statement = select(Transcript).where(
            Transcript.session_id == session_id,
            Transcript.chunk_id == chunk_id,
        )
        return self.session.exec(statement).first()

    def mark_completed(self, session_id: int, chunk_id: int, text: str) -> Optional[Transcript]:
        transcript = self.get_for_chunk(session_id, chunk_id)
        if transcript is None:
            return None
        transcript.text = text
        transcript.status = "completed"
        transcript.error_message = None
        transcript.completed_at = utcnow()
        return self._save(transcript)

    def mark_failed(self, session_id: int, chunk_id: int, error_message: str) -> Optional[Transcript]:
        transcript = self.get_for_chunk(session_id, chunk_id)
        if transcript is None:
            return None
        transcript.status = "failed"
        transcript.error_message = error_message
        return self._save(transcript)

    def mark_pending(self, session_id: int, chunk_id: int) -> Optional[Transcript]:
        transcript = self.get_for_chunk(session_id, chunk_id)
        if transcript is None:
            return None
        transcript.status = "pending"
        transcript.error_message = None
        return self._save(transcript)

    def list_by_session(self, session_id: int) -> list[Transcript]:
        statement = (
            select(Transcript)
            .where(Transcript.session_id == session_id)
            .order_by(Transcript.chunk_index.asc())
        )
        return list(self.session.exec(statement))

    def list_completed(self, session_id: int) -> list[Transcript]:
        statement = (
            select(Transcript)
            .where(Transcript.session_id == session_id, Transcript.status == "completed")
            .order_by(Transcript.chunk_index.asc())
        )
        return list(self.session.exec(statement))

    def list_by_status(self, status: str, session_id: Optional[int] = None) -> list[Transcript]:
        statement = select(Transcript).where(Transcript.status == status)
        if session_id is not None:
            statement = statement.where(Transcript.session_id == session_id)
        return list(self.session.exec(statement.order_by(Transcript.session_id, Transcript.chunk_index)))

    def delete_for_session(self, session_id: int) -> int:
        to_delete = self.list_by_session(session_id)
        for transcript in to_delete:
            self.session.delete(transcript)
        self.session.commit()
        return len(to_delete)

    def _save(self, transcript: Transcript) -> Transcript:
        self.session.add(transcript)
        self.session.commit()
        self.session.refresh(transcript)
        return transcript
