from __future__ import annotations

import asyncio

from chunkscribe.repositories.summaries import SummariesRepository
from chunkscribe.repositories.transcripts import TranscriptsRepository
from chunkscribe.services.inference import AuthenticationFailed, RateLimited
from chunkscribe.services.summarization_service import (
    NO_TRANSCRIPTS_MESSAGE,
    RATE_LIMIT_MESSAGE,
    SummaryPipeline,
    section_retry_delay,
)

from conftest import FakeInference


def _add_transcripts(session_factory, make_chunk, texts, failed_index=None):
    session_id = None
    for i, text in enumerate(texts):
        chunk = make_chunk(session_id=session_id, index=i)
        session_id = chunk.session_id
        with session_factory() as s:
            repo = TranscriptsRepository(s)
            repo.create_pending(chunk)
            if i == failed_index:
                repo.mark_failed(session_id, chunk.id, "Failed after 3 retries: boom")
            else:
                repo.mark_completed(session_id, chunk.id, text)
    return session_id


def _summary(session_factory, session_id):
    with session_factory() as s:
        return SummariesRepository(s).get_by_session(session_id)


def _generate(pipeline, session_id):
    async def scenario():
        started = pipeline.generate(session_id)
        await pipeline.wait(session_id)
        return started

    return asyncio.run(scenario())


def test_section_retry_delays():
    assert [section_retry_delay(i) for i in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]


def test_generates_four_sections_in_order(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["first part", "lost", "second part"], failed_index=1)
    inference = FakeInference(generations=[" Weekly sync ", "We met.", "- Ship it", "- Decided X"])
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    assert _generate(pipeline, session_id) is True

    summary = _summary(session_factory, session_id)
    assert summary.status == "completed"
    assert summary.title == "Weekly sync"
    assert summary.summary == "We met."
    assert summary.action_items == "- Ship it"
    assert summary.key_points == "- Decided X"
    assert summary.sections_completed == 4
    assert summary.error_message is None

    assert len(inference.prompts) == 4
    assert "title" in inference.prompts[0]
    assert "Transcript:\nfirst part\nsecond part" in inference.prompts[0]
    assert all("lost" not in p for p in inference.prompts)


def test_no_completed_transcripts(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["x"], failed_index=0)
    inference = FakeInference()
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    _generate(pipeline, session_id)

    summary = _summary(session_factory, session_id)
    assert summary.status == "failed"
    assert summary.error_message == NO_TRANSCRIPTS_MESSAGE
    assert inference.prompts == []


def test_rate_limit_keeps_completed_sections(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["talk"])
    inference = FakeInference(generations=["Title"] + [RateLimited("slow down")] * 5)
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    _generate(pipeline, session_id)

    summary = _summary(session_factory, session_id)
    assert summary.status == "failed"
    assert summary.error_message == RATE_LIMIT_MESSAGE
    assert summary.title == "Title"
    assert summary.summary is None
    assert summary.sections_completed == 1
    assert sleep.delays == [2.0, 4.0, 8.0, 16.0]


def test_rate_limit_recovers_within_attempts(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["talk"])
    inference = FakeInference(generations=[RateLimited("slow"), RateLimited("slow"), "T", "S", "A", "K"])
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    _generate(pipeline, session_id)

    assert _summary(session_factory, session_id).status == "completed"
    assert sleep.delays == [2.0, 4.0]


def test_other_errors_fail_immediately(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["talk"])
    inference = FakeInference(generations=[AuthenticationFailed("bad key")])
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    _generate(pipeline, session_id)

    summary = _summary(session_factory, session_id)
    assert summary.status == "failed"
    assert summary.error_message == "Failed to generate summary: bad key"
    assert sleep.delays == []


def test_empty_response_fails(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["talk"])
    pipeline = SummaryPipeline(FakeInference(generations=["   "]), session_factory, sleep=sleep)

    _generate(pipeline, session_id)

    summary = _summary(session_factory, session_id)
    assert summary.status == "failed"
    assert summary.error_message == "Empty response from summary API"


def test_concurrent_requests_run_one_job(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["talk"])
    inference = FakeInference()
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    async def scenario():
        first = pipeline.generate(session_id)
        second = pipeline.generate(session_id)
        running = pipeline.is_running(session_id)
        await pipeline.wait(session_id)
        return first, second, running

    first, second, running = asyncio.run(scenario())

    assert (first, second, running) == (True, False, True)
    assert len(inference.prompts) == 4
    assert not pipeline.is_running(session_id)


def test_regeneration_clears_previous_sections(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["talk"])
    pipeline = SummaryPipeline(
        FakeInference(generations=["T", "S", "A", "K", "T2", AuthenticationFailed("gone")]),
        session_factory,
        sleep=sleep,
    )

    _generate(pipeline, session_id)
    _generate(pipeline, session_id)

    summary = _summary(session_factory, session_id)
    assert summary.status == "failed"
    assert summary.title == "T2"
    assert summary.summary is None
    assert summary.sections_completed == 1


def test_long_transcripts_keep_most_recent_text(session_factory, sleep, make_chunk):
    session_id = _add_transcripts(session_factory, make_chunk, ["x" * 500, "y" * 1000])
    inference = FakeInference()
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep, max_chars=1000)

    _generate(pipeline, session_id)

    prompt = inference.prompts[0]
    assert prompt.endswith("y" * 1000)
    assert "x" * 10 not in prompt


def test_max_chars_defaults_to_app_settings(session_factory, sleep, make_chunk):
    from chunkscribe.repositories.settings import save_app_settings

    session_id = _add_transcripts(session_factory, make_chunk, ["x" * 3000, "y" * 1000])
    with session_factory() as s:
        save_app_settings(s, {"summary": {"max_transcript_chars": 2000}})
    inference = FakeInference()
    pipeline = SummaryPipeline(inference, session_factory, sleep=sleep)

    _generate(pipeline, session_id)

    transcript = inference.prompts[0].split("Transcript:\n", 1)[1]
    assert len(transcript) == 2000
    assert transcript.endswith("\n" + "y" * 1000)
