from __future__ import annotations

import asyncio

from chunkscribe.services.events import ChangeHub, EntityChange
from chunkscribe.services.summarization_service import SummaryPipeline

from conftest import FakeInference


def test_subscribers_see_only_their_session():
    async def scenario():
        hub = ChangeHub()
        stream = hub.subscribe(session_id=2)
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        hub.publish(EntityChange("chunk", 1, 10))
        hub.publish(EntityChange("transcript", 2, 20))
        change = await pending
        count = hub.subscriber_count
        await stream.aclose()
        return change, count, hub.subscriber_count

    change, during, after = asyncio.run(scenario())
    assert change == EntityChange("transcript", 2, 20)
    assert during == 1
    assert after == 0


def test_slow_subscriber_drops_instead_of_blocking():
    async def scenario():
        hub = ChangeHub(queue_size=1)
        stream = hub.subscribe()
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        hub.publish(EntityChange("session", 1))
        first = await pending
        hub.publish(EntityChange("session", 2))
        hub.publish(EntityChange("session", 3))
        second = await stream.__anext__()
        await stream.aclose()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.session_id == 1
    assert second.session_id == 2


def test_summary_progress_is_published(session_factory, sleep, make_chunk):
    from chunkscribe.repositories.transcripts import TranscriptsRepository

    chunk = make_chunk()
    with session_factory() as s:
        TranscriptsRepository(s).create_pending(chunk)
        TranscriptsRepository(s).mark_completed(chunk.session_id, chunk.id, "hello")

    async def scenario():
        hub = ChangeHub()
        seen = []

        async def collect():
            async for change in hub.subscribe(chunk.session_id):
                seen.append(change.kind)

        collector = asyncio.ensure_future(collect())
        await asyncio.sleep(0)
        pipeline = SummaryPipeline(FakeInference(), session_factory, events=hub, sleep=sleep)
        pipeline.generate(chunk.session_id)
        await pipeline.wait(chunk.session_id)
        await asyncio.sleep(0)
        collector.cancel()
        return seen

    seen = asyncio.run(scenario())
    # generating, four sections, completed
    assert seen == ["summary"] * 6
