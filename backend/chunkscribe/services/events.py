"""Change notifications for session, chunk, transcript and summary rows.

Services publish an ``EntityChange`` after each committed mutation; API
streams subscribe and re-query. Delivery is best-effort: changes published
while a subscriber's queue is full are dropped for that subscriber.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Set


logger = logging.getLogger("chunkscribe.events")


@dataclass(frozen=True)
class EntityChange:
    kind: str  # session|chunk|transcript|summary
    session_id: int
    entity_id: Optional[int] = None


class ChangeHub:
    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    def publish(self, change: EntityChange) -> None:
        """Fan out ``change``; must be called on the event loop thread."""
        for q in list(self._subscribers):
            try:
                q.put_nowait(change)
            except asyncio.QueueFull:
                logger.debug("Dropping change for slow subscriber", extra={"kind": change.kind})

    async def subscribe(self, session_id: Optional[int] = None) -> AsyncIterator[EntityChange]:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(q)
        try:
            while True:
                change = await q.get()
                if session_id is None or change.session_id == session_id:
                    yield change
        finally:
            self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
