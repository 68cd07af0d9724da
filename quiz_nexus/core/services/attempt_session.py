"""Service driving a single timed quiz attempt through to one submitted result."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from quiz_nexus.constants.quiz_constants import OPTION_COUNT, TIMER_TICK_INTERVAL_SECONDS
from quiz_nexus.core.errors import StorageUnavailable, SubmissionError, ValidationError
from quiz_nexus.core.models import Question, Quiz, Result, ResultSubmission
from quiz_nexus.core.services.attempt_store import AttemptSnapshot, AttemptStore
from quiz_nexus.core.services.quiz_backend import ResultSubmitter

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class AttemptPhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    FINISHING = "finishing"
    COMPLETED = "completed"


@dataclass(slots=True, frozen=True)
class AttemptState:
    """Read-only view of a session handed to the rendering layer."""

    phase: AttemptPhase
    quiz_id: str | None
    current_question_index: int
    answers: dict[int, int]
    remaining_seconds: int
    elapsed_seconds: int
    time_limit: int
    result: Result | None
    error: str | None
    storage_available: bool


def validate_quiz(quiz: Quiz | None) -> Quiz:
    """Reject quiz data that cannot be attempted."""
    if quiz is None:
        raise ValidationError("Quiz data is missing.")
    if not quiz.questions:
        raise ValidationError(f"Quiz '{quiz.id}' has no questions to attempt.")
    if quiz.time_limit <= 0:
        raise ValidationError(f"Quiz '{quiz.id}' has no usable time limit.")
    for position, question in enumerate(quiz.questions):
        if len(question.options) != OPTION_COUNT:
            raise ValidationError(
                f"Question {position + 1} of quiz '{quiz.id}' must have exactly {OPTION_COUNT} options."
            )
        if not 0 <= question.correct_answer < len(question.options):
            raise ValidationError(
                f"Question {position + 1} of quiz '{quiz.id}' has an out-of-range correct answer."
            )
    return quiz


def score_answers(questions: list[Question], answers: dict[int, int]) -> int:
    """Count recorded answers matching the correct option; gaps never score."""
    return sum(
        1
        for index, question in enumerate(questions)
        if index in answers and answers[index] == question.correct_answer
    )


def answers_in_order(question_count: int, answers: dict[int, int]) -> list[int | None]:
    return [answers.get(index) for index in range(question_count)]


def clamp_time_spent(elapsed_seconds: float, time_limit: int) -> int:
    return int(min(max(elapsed_seconds, 0.0), float(time_limit)))


class AttemptSession:
    """Owns one attempt: timer, question pointer, answers, and exactly-once submission.

    Remaining time is always derived from the absolute start timestamp, so a
    throttled or suspended tick never makes the clock drift. The completion
    latch (``_finished``) is taken before the first await in :meth:`finish`,
    which keeps a timer-driven finish from racing a manual one.
    """

    def __init__(
        self,
        backend: ResultSubmitter,
        store: AttemptStore,
        user_id: str,
        *,
        clock: Clock = time.time,
        tick_interval: float = TIMER_TICK_INTERVAL_SECONDS,
    ) -> None:
        self._backend = backend
        self._store = store
        self._user_id = user_id
        self._clock = clock
        self._tick_interval = tick_interval

        self._phase = AttemptPhase.IDLE
        self._quiz: Quiz | None = None
        self._answers: dict[int, int] = {}
        self._current_index: int = 0
        self._start_time_ms: int = 0

        self._finished: bool = False
        self._auto_finish_fired: bool = False
        self._result: Result | None = None
        self._last_error: Exception | None = None
        self._storage_available: bool = True

        self._timer_task: asyncio.Task[None] | None = None
        self._timer_requested: bool = False
        self._closed: bool = False

    # --- State ---

    @property
    def phase(self) -> AttemptPhase:
        return self._phase

    @property
    def quiz(self) -> Quiz | None:
        return self._quiz

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def current_question_index(self) -> int:
        return self._current_index

    @property
    def current_question(self) -> Question | None:
        if self._quiz is None:
            return None
        return self._quiz.questions[self._current_index]

    @property
    def answers(self) -> dict[int, int]:
        return dict(self._answers)

    @property
    def start_time_ms(self) -> int:
        return self._start_time_ms

    @property
    def result(self) -> Result | None:
        return self._result

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def storage_available(self) -> bool:
        return self._storage_available

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def timer_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def is_last_question(self) -> bool:
        return self._quiz is not None and self._current_index >= len(self._quiz.questions) - 1

    @property
    def elapsed_seconds(self) -> float:
        if self._phase is AttemptPhase.IDLE:
            return 0.0
        return max(0.0, self._clock() - self._start_time_ms / 1000)

    @property
    def remaining_seconds(self) -> float:
        if self._quiz is None:
            return 0.0
        return max(0.0, self._quiz.time_limit - self.elapsed_seconds)

    def state(self) -> AttemptState:
        return AttemptState(
            phase=self._phase,
            quiz_id=self._quiz.id if self._quiz else None,
            current_question_index=self._current_index,
            answers=dict(self._answers),
            remaining_seconds=math.ceil(self.remaining_seconds),
            elapsed_seconds=int(self.elapsed_seconds),
            time_limit=self._quiz.time_limit if self._quiz else 0,
            result=self._result,
            error=str(self._last_error) if self._last_error else None,
            storage_available=self._storage_available,
        )

    def snapshot(self) -> AttemptSnapshot:
        return AttemptSnapshot(
            answers=dict(self._answers),
            current_question_index=self._current_index,
            start_time=self._start_time_ms,
        )

    # --- Lifecycle ---

    async def start(self, quiz: Quiz | None, restored: AttemptSnapshot | None = None) -> None:
        """Begin or resume the attempt for ``quiz``.

        ``restored`` overrides whatever the attempt store holds for this
        quiz and user. An attempt whose time already ran out while the
        session was away is finished straight away.
        """
        self._ensure_open()
        if self._phase is not AttemptPhase.IDLE:
            raise RuntimeError("Attempt has already been started.")
        quiz = validate_quiz(quiz)
        self._quiz = quiz

        if restored is None:
            restored = await self._load_snapshot()

        if restored is not None:
            question_count = len(quiz.questions)
            self._answers = {
                index: option for index, option in restored.answers.items() if 0 <= index < question_count
            }
            self._current_index = min(restored.current_question_index, question_count - 1)
            self._start_time_ms = restored.start_time
            self._phase = AttemptPhase.ACTIVE
            logger.info(
                "Resumed attempt on quiz %s for user %s at question %s",
                quiz.id,
                self._user_id,
                self._current_index,
            )
        else:
            self._reset_progress()
            self._phase = AttemptPhase.ACTIVE
            await self._persist()
            logger.info("Started attempt on quiz %s for user %s", quiz.id, self._user_id)

        await self.tick()

    async def select_answer(self, question_index: int, option_index: int) -> None:
        self._ensure_open()
        if self._phase is not AttemptPhase.ACTIVE or self._quiz is None:
            logger.debug("Ignoring answer while attempt is %s", self._phase.value)
            return
        if not 0 <= question_index < len(self._quiz.questions):
            raise IndexError(f"Question index {question_index} out of range")
        self._answers = {**self._answers, question_index: option_index}
        await self._persist()

    async def advance(self) -> Result | None:
        """Move to the next question, or finish when already on the last one."""
        self._ensure_open()
        if self._phase is not AttemptPhase.ACTIVE or self._quiz is None:
            return self._result
        if not self.is_last_question:
            self._current_index += 1
            await self._persist()
            return None
        return await self.finish()

    async def finish(self) -> Result | None:
        """Score and submit the attempt once.

        Calls made while a submission is in flight, or after it succeeded,
        are no-ops that return the current result (``None`` while in flight).
        A failed submission releases the latch and raises ``SubmissionError``.
        """
        self._ensure_open()
        if self._finished or self._phase is not AttemptPhase.ACTIVE or self._quiz is None:
            return self._result
        self._finished = True
        self._phase = AttemptPhase.FINISHING

        submission = self.build_submission()
        try:
            result = await self._backend.submit_result(submission)
        except asyncio.CancelledError:
            self._release_latch()
            raise
        except Exception as exc:
            error = SubmissionError(f"Failed to submit quiz results: {exc}")
            self._release_latch()
            self._last_error = error
            logger.warning("Submitting attempt on quiz %s failed: %s", submission.quiz_id, exc)
            raise error from exc

        self._result = result
        self._last_error = None
        self._phase = AttemptPhase.COMPLETED
        logger.info(
            "Submitted attempt on quiz %s for user %s: %s/%s in %ss",
            submission.quiz_id,
            self._user_id,
            result.score,
            result.total_questions,
            result.time_spent,
        )
        await self._clear_snapshot()
        return result

    async def restart(self) -> None:
        """Throw away progress and run the same quiz again from a fresh clock."""
        self._ensure_open()
        if self._quiz is None:
            raise RuntimeError("Attempt has not been started.")
        if self._phase is AttemptPhase.FINISHING:
            raise RuntimeError("Cannot restart while results are being submitted.")
        self._reset_progress()
        self._finished = False
        self._auto_finish_fired = False
        self._result = None
        self._last_error = None
        self._phase = AttemptPhase.ACTIVE
        await self._persist()
        if self._timer_requested:
            self.start_timer()
        logger.info("Restarted attempt on quiz %s for user %s", self._quiz.id, self._user_id)

    def build_submission(self) -> ResultSubmission:
        if self._quiz is None:
            raise RuntimeError("Attempt has not been started.")
        questions = self._quiz.questions
        return ResultSubmission(
            quiz_id=self._quiz.id,
            user_id=self._user_id,
            answers=answers_in_order(len(questions), self._answers),
            score=score_answers(questions, self._answers),
            total_questions=len(questions),
            time_spent=clamp_time_spent(self.elapsed_seconds, self._quiz.time_limit),
        )

    # --- Timer ---

    async def tick(self) -> None:
        """Recompute the remaining time and finish automatically once it runs out."""
        if self._closed or self._phase is not AttemptPhase.ACTIVE:
            return
        if self.remaining_seconds > 0 or self._auto_finish_fired:
            return
        self._auto_finish_fired = True
        logger.info("Time is up on quiz %s for user %s", self._quiz.id if self._quiz else None, self._user_id)
        try:
            await self.finish()
        except SubmissionError:
            # Recorded in last_error; the user retries the finish by hand.
            pass

    def start_timer(self) -> None:
        """Tick in the background until the attempt completes or the session closes."""
        self._ensure_open()
        self._timer_requested = True
        if self.timer_running:
            return
        self._timer_task = asyncio.get_running_loop().create_task(
            self._run_timer(), name=f"attempt-timer-{self._user_id}"
        )

    def close(self) -> None:
        """Stop ticking and detach; the session can no longer change state."""
        self._closed = True
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None

    async def _run_timer(self) -> None:
        while not self._closed and self._phase is not AttemptPhase.COMPLETED:
            await asyncio.sleep(self._tick_interval)
            await self.tick()

    # --- Helpers ---

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Attempt session is closed.")

    def _reset_progress(self) -> None:
        self._answers = {}
        self._current_index = 0
        self._start_time_ms = int(self._clock() * 1000)

    def _release_latch(self) -> None:
        self._finished = False
        self._phase = AttemptPhase.ACTIVE

    def _degrade_storage(self, exc: StorageUnavailable) -> None:
        self._storage_available = False
        logger.warning("Attempt state storage unavailable, continuing in memory only: %s", exc)

    async def _load_snapshot(self) -> AttemptSnapshot | None:
        if self._quiz is None or not self._storage_available:
            return None
        try:
            return await self._store.load(self._quiz.id, self._user_id)
        except StorageUnavailable as exc:
            self._degrade_storage(exc)
            return None

    async def _persist(self) -> None:
        if self._quiz is None or not self._storage_available:
            return
        try:
            await self._store.save(self._quiz.id, self._user_id, self.snapshot())
        except StorageUnavailable as exc:
            self._degrade_storage(exc)

    async def _clear_snapshot(self) -> None:
        if self._quiz is None or not self._storage_available:
            return
        try:
            await self._store.clear(self._quiz.id, self._user_id)
        except StorageUnavailable as exc:
            self._degrade_storage(exc)
