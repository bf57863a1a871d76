from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from sqlmodel import Session

from chunkscribe.repositories.settings import get_app_settings
from chunkscribe.repositories.summaries import SummariesRepository
from chunkscribe.repositories.transcripts import TranscriptsRepository
from chunkscribe.services.events import ChangeHub, EntityChange
from chunkscribe.services.inference import InferenceError, InferenceService, RateLimited
from chunkscribe.services.prompts import SECTION_INSTRUCTIONS, build_section_prompt


logger = logging.getLogger("chunkscribe.summary")

SessionFactory = Callable[[], Session]
Sleep = Callable[[float], Awaitable[None]]

MAX_SECTION_ATTEMPTS = 5
NO_TRANSCRIPTS_MESSAGE = "No transcripts available for summarization"
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again in a few minutes."


class SummaryGenerationError(Exception):
    pass


def section_retry_delay(attempt: int) -> float:
    """2s, 4s, 8s, ... after the ``attempt``-th rate-limited call."""
    return 2.0 * (2 ** (attempt - 1))


class SummaryPipeline:
    """Generates the four summary sections for a session, one job per session.

    A request for a session whose job is still running is ignored. Sections
    are persisted one by one so readers see them fill in; a failure keeps
    whatever sections were already written.
    """

    def __init__(
        self,
        inference: InferenceService,
        session_factory: SessionFactory,
        events: Optional[ChangeHub] = None,
        sleep: Sleep = asyncio.sleep,
        max_attempts: int = MAX_SECTION_ATTEMPTS,
        max_chars: Optional[int] = None,
    ) -> None:
        self._inference = inference
        self._session_factory = session_factory
        self._events = events
        self._sleep = sleep
        self.max_attempts = max_attempts
        self._max_chars = max_chars
        self._jobs: Dict[int, asyncio.Task] = {}

    def generate(self, session_id: int) -> bool:
        """Start a job unless one is already running; returns whether one started."""
        existing = self._jobs.get(session_id)
        if existing is not None and not existing.done():
            logger.info("Summary already generating; ignoring request", extra={"session_id": session_id})
            return False
        task = asyncio.create_task(self._run(session_id), name=f"summary-{session_id}")
        self._jobs[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))
        return True

    def is_running(self, session_id: int) -> bool:
        task = self._jobs.get(session_id)
        return task is not None and not task.done()

    async def wait(self, session_id: int) -> None:
        task = self._jobs.get(session_id)
        if task is not None:
            await task

    def _forget(self, session_id: int, task: asyncio.Task) -> None:
        if self._jobs.get(session_id) is task:
            del self._jobs[session_id]

    async def _run(self, session_id: int) -> None:
        try:
            with self._session_factory() as s:
                SummariesRepository(s).mark_generating(session_id)
                transcripts = TranscriptsRepository(s).list_completed(session_id)
                max_chars = self._max_chars or int(get_app_settings(s)["summary"]["max_transcript_chars"])
            self._publish(session_id)

            if not transcripts:
                self._fail(session_id, NO_TRANSCRIPTS_MESSAGE)
                return

            text = "\n".join(t.text for t in transcripts)
            if len(text) > max_chars:
                # Most recent content wins
                text = text[-max_chars:]

            for completed, (section, instruction) in enumerate(SECTION_INSTRUCTIONS, start=1):
                value = await self._generate_section(build_section_prompt(instruction, text))
                with self._session_factory() as s:
                    saved = SummariesRepository(s).update_section(session_id, section.value, value, completed)
                if saved is None:
                    logger.info("Session deleted during summary; dropping result", extra={"session_id": session_id})
                    return
                self._publish(session_id)

            with self._session_factory() as s:
                SummariesRepository(s).mark_completed(session_id)
            self._publish(session_id)
            logger.info("Summary completed", extra={"session_id": session_id})
        except Exception as e:
            logger.exception("Summary generation failed", extra={"session_id": session_id})
            self._fail(session_id, str(e) or "Unknown error")

    async def _generate_section(self, prompt: str) -> str:
        attempt = 0
        while True:
            try:
                text = await self._inference.generate_text(prompt)
            except RateLimited as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    raise SummaryGenerationError(RATE_LIMIT_MESSAGE) from e
                delay = section_retry_delay(attempt)
                logger.warning("Summary rate limited, retrying in %.0fs (attempt %d/%d)", delay, attempt, self.max_attempts)
                await self._sleep(delay)
                continue
            except InferenceError as e:
                raise SummaryGenerationError(f"Failed to generate summary: {e}") from e
            text = (text or "").strip()
            if not text:
                raise SummaryGenerationError("Empty response from summary API")
            return text

    def _fail(self, session_id: int, message: str) -> None:
        with self._session_factory() as s:
            SummariesRepository(s).mark_failed(session_id, message)
        self._publish(session_id)

    def _publish(self, session_id: int) -> None:
        if self._events is not None:
            self._events.publish(EntityChange("summary", session_id, session_id))
