from __future__ import annotations

from typing import Optional
from sqlmodel import Session, select

from chunkscribe.models.audio_chunk import AudioChunk


class ChunksRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, chunk: AudioChunk) -> AudioChunk:
        self.session.add(chunk)
        self.session.commit()
        self.session.refresh(chunk)
        return chunk

    def get(self, chunk_id: int) -> Optional[AudioChunk]:
        return self.session.get(AudioChunk, chunk_id)

    def list_by_session(self, session_id: int) -> list[AudioChunk]:
        # Index order, never creation order
        statement = (
            select(AudioChunk)
            .where(AudioChunk.session_id == session_id)
            .order_by(AudioChunk.index_in_session.asc())
        )
        return list(self.session.exec(statement))

    def delete_for_session(self, session_id: int) -> int:
        to_delete = self.list_by_session(session_id)
        for chunk in to_delete:
            self.session.delete(chunk)
        self.session.commit()
        return len(to_delete)
