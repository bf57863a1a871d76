from __future__ import annotations

from typing import Optional
from sqlmodel import Session

from chunkscribe.models.base import utcnow
from chunkscribe.models.summary import Summary


SECTION_FIELDS = ("title", "summary", "action_items", "key_points")


class SummariesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_by_session(self, session_id: int) -> Optional[Summary]:
        return self.session.get(Summary, session_id)

    def ensure(self, session_id: int) -> Summary:
        existing = self.get_by_session(session_id)
        if existing is not None:
            return existing
        return self._save(Summary(session_id=session_id))

    def mark_generating(self, session_id: int) -> Summary:
        summary = self.ensure(session_id)
        for field in SECTION_FIELDS:
            setattr(summary, field, None)
        summary.status = "generating"
        summary.sections_completed = 0
        summary.error_message = None
        return self._save(summary)

    def update_section(
        self, session_id: int, field: str, value: str, sections_completed: int
    ) -> Optional[Summary]:
        if field not in SECTION_FIELDS:
            raise ValueError(f"Unknown summary section: {field}")
        summary = self.get_by_session(session_id)
        if summary is None:
            return None
        setattr(summary, field, value)
        summary.sections_completed = sections_completed
        return self._save(summary)

    def mark_completed(self, session_id: int) -> Optional[Summary]:
        summary = self.get_by_session(session_id)
        if summary is None:
            return None
        summary.status = "completed"
        summary.sections_completed = len(SECTION_FIELDS)
        return self._save(summary)

    def mark_failed(self, session_id: int, message: str) -> Optional[Summary]:
        # Completed sections are kept
        summary = self.get_by_session(session_id)
        if summary is None:
            return None
        summary.status = "failed"
        summary.error_message = message
        return self._save(summary)

    def delete_for_session(self, session_id: int) -> bool:
        summary = self.get_by_session(session_id)
        if summary is None:
            return False
        self.session.delete(summary)
        self.session.commit()
        return True

    def _save(self, summary: Summary) -> Summary:
        summary.updated_at = utcnow()
        self.session.add(summary)
        self.session.commit()
        self.session.refresh(summary)
        return summary
