import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import START_EPOCH, BrokenAttemptStore, FakeClock, RecordingSubmitter, build_quiz
from quiz_nexus.core.errors import StorageUnavailable, SubmissionError, ValidationError
from quiz_nexus.core.services.attempt_session import (
    AttemptPhase,
    AttemptSession,
    clamp_time_spent,
    score_answers,
)
from quiz_nexus.core.services.attempt_store import AttemptSnapshot, MemoryAttemptStore

USER_ID = "user-1"


def _session(submitter, clock, store=None, **kwargs) -> AttemptSession:
    return AttemptSession(submitter, store or MemoryAttemptStore(), USER_ID, clock=clock, **kwargs)


def test_score_counts_only_matching_recorded_answers():
    quiz = build_quiz(correct_answers=[0, 1, 2, 3, 0])

    assert score_answers(quiz.questions, {}) == 0
    assert score_answers(quiz.questions, {0: 0, 1: 3, 3: 3}) == 2
    assert score_answers(quiz.questions, {0: 0, 1: 1, 2: 2, 3: 3, 4: 0}) == 5


def test_time_spent_is_clamped_to_limit():
    assert clamp_time_spent(-4.0, 300) == 0
    assert clamp_time_spent(12.7, 300) == 12
    assert clamp_time_spent(999.0, 300) == 300


def test_start_rejects_unusable_quiz(submitter, clock):
    async def scenario():
        with pytest.raises(ValidationError):
            await _session(submitter, clock).start(None)
        with pytest.raises(ValidationError):
            await _session(submitter, clock).start(build_quiz(question_count=0))
        with pytest.raises(ValidationError):
            await _session(submitter, clock).start(build_quiz(time_limit=0))

    asyncio.run(scenario())


def test_full_attempt_submits_score_and_elapsed_time(submitter, clock):
    store = MemoryAttemptStore()

    async def scenario():
        quiz = build_quiz(correct_answers=[0, 1, 2, 3, 0], time_limit=300)
        session = _session(submitter, clock, store)
        await session.start(quiz)
        assert session.phase is AttemptPhase.ACTIVE
        assert (quiz.id, USER_ID) in store

        for option in (0, 1, 2, 0, 1):
            await session.select_answer(session.current_question_index, option)
            clock.advance(24)
            await session.advance()

        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.COMPLETED
    assert len(submitter.calls) == 1
    submission = submitter.calls[0]
    assert submission.score == 3
    assert submission.total_questions == 5
    assert submission.time_spent == 120
    assert submission.answers == [0, 1, 2, 0, 1]
    assert session.result is not None and session.result.score == 3
    assert ("quiz-1", USER_ID) not in store


def test_unanswered_questions_are_submitted_as_gaps(submitter, clock):
    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz(question_count=3, correct_answers=[1, 1, 1]))
        await session.select_answer(1, 1)
        return await session.finish()

    result = asyncio.run(scenario())

    assert result.answers == [None, 1, None]
    assert result.score == 1


def test_concurrent_finish_submits_once(submitter, clock):
    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz())
        submitter.gate = asyncio.Event()

        first = asyncio.create_task(session.finish())
        await asyncio.sleep(0)
        assert session.phase is AttemptPhase.FINISHING
        assert await session.finish() is None

        submitter.gate.set()
        result = await first
        assert await session.finish() is result
        return result

    result = asyncio.run(scenario())

    assert result is not None
    assert len(submitter.calls) == 1


def test_failed_submission_releases_latch_and_keeps_answers(clock):
    submitter = RecordingSubmitter(failures=1)

    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz())
        await session.select_answer(0, 0)

        with pytest.raises(SubmissionError):
            await session.finish()
        assert session.phase is AttemptPhase.ACTIVE
        assert session.answers == {0: 0}
        assert session.last_error is not None

        result = await session.finish()
        assert session.last_error is None
        return result

    result = asyncio.run(scenario())

    assert result.score == 1
    assert len(submitter.calls) == 2


def test_resume_restores_answers_position_and_clock(submitter, clock):
    store = MemoryAttemptStore()

    async def scenario():
        quiz = build_quiz()
        await store.save(
            quiz.id,
            USER_ID,
            AttemptSnapshot(answers={0: 2}, current_question_index=1, start_time=int(START_EPOCH * 1000)),
        )
        clock.advance(60)
        session = _session(submitter, clock, store)
        await session.start(quiz)
        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.ACTIVE
    assert session.current_question_index == 1
    assert session.answers == {0: 2}
    assert session.state().remaining_seconds == 240
    assert submitter.calls == []


def test_resume_after_deadline_finishes_immediately(submitter, clock):
    store = MemoryAttemptStore()

    async def scenario():
        quiz = build_quiz(time_limit=300)
        await store.save(
            quiz.id,
            USER_ID,
            AttemptSnapshot(answers={0: 0}, current_question_index=2, start_time=int(START_EPOCH * 1000)),
        )
        clock.advance(400)
        session = _session(submitter, clock, store)
        await session.start(quiz)
        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.COMPLETED
    assert len(submitter.calls) == 1
    assert submitter.calls[0].time_spent == 300


def test_resume_discards_answers_beyond_question_count(submitter, clock):
    async def scenario():
        session = _session(submitter, clock)
        restored = AttemptSnapshot(
            answers={0: 1, 7: 2}, current_question_index=9, start_time=int(START_EPOCH * 1000)
        )
        await session.start(build_quiz(question_count=3), restored=restored)
        return session

    session = asyncio.run(scenario())

    assert session.answers == {0: 1}
    assert session.current_question_index == 2


def test_tick_finishes_once_when_time_runs_out(clock):
    submitter = RecordingSubmitter(failures=1)

    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz(time_limit=60))
        clock.advance(30)
        await session.tick()
        assert session.phase is AttemptPhase.ACTIVE

        clock.advance(45)
        await session.tick()
        assert isinstance(session.last_error, SubmissionError)
        assert session.phase is AttemptPhase.ACTIVE

        await session.tick()
        assert len(submitter.calls) == 1

        result = await session.finish()
        assert result.time_spent == 60
        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.COMPLETED
    assert len(submitter.calls) == 2


def test_answers_after_completion_are_ignored(submitter, clock):
    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz(question_count=1, correct_answers=[3]))
        await session.select_answer(0, 3)
        await session.advance()
        await session.select_answer(0, 1)
        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.COMPLETED
    assert session.answers == {0: 3}
    assert session.result.score == 1


def test_select_answer_rejects_unknown_question(submitter, clock):
    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz(question_count=2))
        with pytest.raises(IndexError):
            await session.select_answer(2, 0)
        await session.select_answer(1, 0)
        await session.select_answer(1, 3)
        return session

    session = asyncio.run(scenario())

    assert session.answers == {1: 3}


def test_restart_resets_progress_and_clock(submitter, clock):
    store = MemoryAttemptStore()

    async def scenario():
        session = _session(submitter, clock, store)
        await session.start(build_quiz())
        await session.select_answer(0, 0)
        clock.advance(50)
        await session.finish()

        clock.advance(10)
        await session.restart()
        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.ACTIVE
    assert session.answers == {}
    assert session.current_question_index == 0
    assert session.result is None
    assert session.start_time_ms == int((START_EPOCH + 60) * 1000)
    assert ("quiz-1", USER_ID) in store


def test_restart_is_refused_while_submitting(submitter, clock):
    async def scenario():
        session = _session(submitter, clock)
        await session.start(build_quiz())
        submitter.gate = asyncio.Event()
        pending = asyncio.create_task(session.finish())
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            await session.restart()
        submitter.gate.set()
        await pending

    asyncio.run(scenario())


def test_storage_failure_degrades_to_memory_only(submitter, clock):
    async def scenario():
        session = _session(submitter, clock, BrokenAttemptStore())
        await session.start(build_quiz(question_count=2, correct_answers=[1, 1]))
        await session.select_answer(0, 1)
        await session.advance()
        await session.select_answer(1, 1)
        await session.advance()
        return session

    session = asyncio.run(scenario())

    assert session.storage_available is False
    assert session.state().storage_available is False
    assert session.phase is AttemptPhase.COMPLETED
    assert session.result.score == 2


def test_close_stops_the_timer(submitter):
    clock = FakeClock()

    async def scenario():
        session = _session(submitter, clock, tick_interval=0.01)
        await session.start(build_quiz(time_limit=5))
        session.start_timer()
        session.close()
        clock.advance(10)
        await asyncio.sleep(0.05)
        with pytest.raises(RuntimeError):
            await session.finish()
        return session

    session = asyncio.run(scenario())

    assert session.is_closed
    assert submitter.calls == []


def test_running_timer_auto_finishes(submitter):
    clock = FakeClock()

    async def scenario():
        session = _session(submitter, clock, tick_interval=0.01)
        await session.start(build_quiz(time_limit=5))
        session.start_timer()
        clock.advance(6)
        for _ in range(50):
            if session.phase is AttemptPhase.COMPLETED:
                break
            await asyncio.sleep(0.01)
        session.close()
        return session

    session = asyncio.run(scenario())

    assert session.phase is AttemptPhase.COMPLETED
    assert len(submitter.calls) == 1
    assert submitter.calls[0].time_spent == 5


def test_store_failure_midway_stops_further_writes(submitter, clock):
    store = AsyncMock(spec=MemoryAttemptStore)
    store.load.return_value = None
    store.save.side_effect = [None, StorageUnavailable("read-only file system")]

    async def scenario():
        session = _session(submitter, clock, store)
        await session.start(build_quiz(question_count=2))
        await session.select_answer(0, 1)
        await session.select_answer(1, 2)
        await session.finish()
        return session

    session = asyncio.run(scenario())

    assert session.storage_available is False
    assert session.phase is AttemptPhase.COMPLETED
    assert store.save.await_count == 2
    store.clear.assert_not_awaited()


def test_timer_stops_after_completion_and_restart_resumes_it(submitter, clock):
    async def scenario():
        session = _session(submitter, clock, tick_interval=0.01)
        await session.start(build_quiz())
        session.start_timer()
        assert session.timer_running

        await session.finish()
        await asyncio.sleep(0.05)
        assert not session.timer_running

        await session.restart()
        assert session.timer_running
        session.close()
        return session

    session = asyncio.run(scenario())

    assert not session.timer_running
    assert len(submitter.calls) == 1


def test_restart_without_timer_leaves_it_off(submitter, clock):
    async def scenario():
        session = _session(submitter, clock, tick_interval=0.01)
        await session.start(build_quiz())
        await session.finish()
        await session.restart()
        running = session.timer_running
        session.close()
        return running

    assert asyncio.run(scenario()) is False
