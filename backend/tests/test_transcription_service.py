from __future__ import annotations

import asyncio
from pathlib import Path

from chunkscribe.repositories.transcripts import TranscriptsRepository
from chunkscribe.services.inference import Forbidden, InferenceError, RateLimited
from chunkscribe.services.transcription_service import (
    TranscriptionPipeline,
    transcription_retry_delay,
    upload_retry_delay,
)

from conftest import FakeInference


def _transcript(session_factory, chunk):
    with session_factory() as s:
        return TranscriptsRepository(s).get_for_chunk(chunk.session_id, chunk.id)


def _run(pipeline, chunk):
    async def scenario():
        pipeline.enqueue(chunk)
        await pipeline.drain()

    asyncio.run(scenario())


def test_backoff_schedules():
    assert [transcription_retry_delay(i) for i in range(5)] == [5.0, 10.0, 20.0, 30.0, 30.0]
    assert [upload_retry_delay(i) for i in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_successful_transcription(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    inference = FakeInference(transcripts=["  hello world \n"])
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    _run(pipeline, chunk)

    row = _transcript(session_factory, chunk)
    assert row.status == "completed"
    assert row.text == "hello world"
    assert row.error_message is None
    assert row.completed_at is not None
    assert inference.transcribe_calls == ["files/1"]
    assert sleep.delays == []


def test_transient_failures_are_retried(session_factory, make_chunk):
    chunk = make_chunk()
    observed = []

    async def sleep(delay):
        # Between attempts the row reports the retry in progress
        row = _transcript(session_factory, chunk)
        observed.append((delay, row.status, row.error_message))

    inference = FakeInference(transcripts=[InferenceError("boom"), InferenceError("boom"), "ok"])
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    _run(pipeline, chunk)

    assert observed == [
        (5.0, "failed", "Retrying... (1/3): boom"),
        (10.0, "failed", "Retrying... (2/3): boom"),
    ]
    row = _transcript(session_factory, chunk)
    assert row.status == "completed"
    assert row.text == "ok"
    assert row.error_message is None


def test_permanent_failure_after_three_retries(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    inference = FakeInference(transcripts=[InferenceError("boom")] * 4)
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    _run(pipeline, chunk)

    row = _transcript(session_factory, chunk)
    assert row.status == "failed"
    assert row.error_message == "Failed after 3 retries: boom"
    assert sleep.delays == [5.0, 10.0, 20.0]
    assert len(inference.transcribe_calls) == 4


def test_missing_chunk_file_fails(session_factory, sleep, make_chunk):
    chunk = make_chunk(write_file=False)
    inference = FakeInference()
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    _run(pipeline, chunk)

    row = _transcript(session_factory, chunk)
    assert row.status == "failed"
    assert row.error_message.startswith("Failed after 3 retries: Audio file not found")
    assert inference.upload_calls == 0


def test_upload_rate_limit_exhaustion_is_an_upload_failure(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    inference = FakeInference(uploads=[RateLimited("slow down")] * 12)
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    _run(pipeline, chunk)

    row = _transcript(session_factory, chunk)
    assert row.status == "failed"
    assert row.error_message == (
        "Failed after 3 retries: Failed to upload audio: rate limit exceeded after 3 attempts"
    )
    assert sleep.delays == [2.0, 4.0, 5.0, 2.0, 4.0, 10.0, 2.0, 4.0, 20.0, 2.0, 4.0]
    assert inference.transcribe_calls == []


def test_forbidden_upload_is_not_retried_inside_upload(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    inference = FakeInference(uploads=[Forbidden("no access"), "files/ok"])
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    _run(pipeline, chunk)

    # the outer envelope retried once and then succeeded
    assert sleep.delays == [5.0]
    assert inference.upload_calls == 2
    assert _transcript(session_factory, chunk).status == "completed"


def test_retry_failed_reruns_terminal_failures(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    inference = FakeInference(transcripts=[InferenceError("boom")])
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep, max_retries=0)

    async def scenario():
        pipeline.enqueue(chunk)
        await pipeline.drain()
        first = _transcript(session_factory, chunk)
        count = await pipeline.retry_failed(chunk.session_id)
        await pipeline.drain()
        return first, count

    first, count = asyncio.run(scenario())

    assert first.status == "failed"
    assert first.error_message == "Failed after 0 retries: boom"
    assert count == 1
    row = _transcript(session_factory, chunk)
    assert row.status == "completed"
    assert row.text == "transcribed text"


def test_recover_pending_restarts_unfinished_rows(session_factory, sleep, make_chunk):
    first = make_chunk()
    second = make_chunk(session_id=first.session_id, index=1)
    with session_factory() as s:
        repo = TranscriptsRepository(s)
        repo.create_pending(first)
        repo.create_pending(second)
        repo.mark_failed(second.session_id, second.id, "Retrying... (1/3): boom")

    pipeline = TranscriptionPipeline(FakeInference(), session_factory, sleep=sleep)

    async def scenario():
        count = await pipeline.recover_pending()
        await pipeline.drain()
        return count

    assert asyncio.run(scenario()) == 2
    assert _transcript(session_factory, first).status == "completed"
    assert _transcript(session_factory, second).status == "completed"


def test_enqueue_is_idempotent_per_chunk(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    inference = FakeInference()
    pipeline = TranscriptionPipeline(inference, session_factory, sleep=sleep)

    async def scenario():
        first = pipeline.enqueue(chunk)
        second = pipeline.enqueue(chunk)
        await pipeline.drain()
        return first is second

    assert asyncio.run(scenario())
    assert inference.upload_calls == 1
    with session_factory() as s:
        assert len(TranscriptsRepository(s).list_by_session(chunk.session_id)) == 1


def test_result_without_transcript_row_is_dropped(session_factory, sleep, make_chunk):
    chunk = make_chunk()
    pipeline = TranscriptionPipeline(FakeInference(), session_factory, sleep=sleep)

    async def scenario():
        pipeline.start(chunk)
        await pipeline.drain()

    # no pending row was ever created; completion must not resurrect one
    asyncio.run(scenario())
    assert _transcript(session_factory, chunk) is None
    assert Path(chunk.file_path).exists()
