"""Persistence collaborator: remote CRUD plus a per-table change feed.

``QuizBackend`` is the contract the client components are written against.
``InMemoryQuizBackend`` fulfils it inside the process so the application and
the tests can run without a hosted store. Change notifications are delivered
on the running event loop with ``call_soon``, in the order writes happen.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Protocol
from uuid import uuid4

from quiz_nexus.constants.quiz_constants import (
    DEFAULT_CATEGORY,
    DEFAULT_DIFFICULTY,
    DIFFICULTIES,
    OPTION_COUNT,
    QUIZZES_TABLE,
    RESULTS_TABLE,
)
from quiz_nexus.core.errors import NotFoundError, ValidationError
from quiz_nexus.core.models import (
    ChangeEvent,
    ChangeKind,
    Question,
    Quiz,
    Result,
    ResultSubmission,
    utc_now,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]

_UPDATABLE_QUIZ_FIELDS = frozenset(
    {"title", "description", "questions", "time_limit", "difficulty", "category", "is_published"}
)


class ChangeFeed(Protocol):
    def subscribe(
        self,
        table: str,
        on_event: EventHandler,
        on_subscribed: Callable[[], None] | None = None,
    ) -> Unsubscribe: ...


class ResultSubmitter(Protocol):
    async def submit_result(self, submission: ResultSubmission) -> Result: ...


class QuizBackend(ChangeFeed, ResultSubmitter, Protocol):
    async def list_quizzes(self, published_only: bool) -> list[Quiz]: ...

    async def get_quiz(self, quiz_id: str) -> Quiz: ...

    async def create_quiz(self, data: dict[str, Any], author_id: str) -> Quiz: ...

    async def update_quiz(self, quiz_id: str, partial: dict[str, Any]) -> Quiz: ...

    async def delete_quiz(self, quiz_id: str) -> None: ...

    async def list_results_for_user(self, user_id: str) -> list[Result]: ...

    async def list_all_results(self) -> list[Result]: ...


class _Subscription:
    __slots__ = ("table", "on_event", "on_subscribed")

    def __init__(
        self,
        table: str,
        on_event: EventHandler,
        on_subscribed: Callable[[], None] | None,
    ) -> None:
        self.table = table
        self.on_event = on_event
        self.on_subscribed = on_subscribed


class InMemoryQuizBackend:
    """Process-local backend with the same contract as the hosted store."""

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._quizzes: dict[str, dict[str, Any]] = {}
        self._results: dict[str, dict[str, Any]] = {}
        self._sequence: dict[str, int] = {}
        self._counter: int = 0
        self._subscriptions: list[_Subscription] = []

    # --- Quizzes ---

    async def list_quizzes(self, published_only: bool) -> list[Quiz]:
        rows = [row for row in self._quizzes.values() if row["is_published"] or not published_only]
        return [Quiz.from_row(copy.deepcopy(row)) for row in self._newest_first(rows, "created_at")]

    async def get_quiz(self, quiz_id: str) -> Quiz:
        row = self._quizzes.get(quiz_id)
        if row is None:
            raise NotFoundError("Quiz", quiz_id)
        return Quiz.from_row(copy.deepcopy(row))

    async def create_quiz(self, data: dict[str, Any], author_id: str) -> Quiz:
        unknown = set(data) - _UPDATABLE_QUIZ_FIELDS
        if unknown:
            raise ValidationError(f"Unknown quiz fields: {', '.join(sorted(unknown))}")
        if not str(data.get("title") or "").strip():
            raise ValidationError("Quiz title is required.")
        if "questions" not in data:
            raise ValidationError("Quiz questions are required.")

        row = {
            "id": uuid4().hex,
            "title": str(data["title"]).strip(),
            "description": str(data.get("description") or "").strip(),
            "questions": self._prepare_questions(data["questions"]),
            "time_limit": self._validate_time_limit(data.get("time_limit")),
            "difficulty": self._validate_difficulty(data.get("difficulty", DEFAULT_DIFFICULTY)),
            "category": str(data.get("category") or DEFAULT_CATEGORY).strip() or DEFAULT_CATEGORY,
            "created_at": self._clock().isoformat(),
            "is_published": bool(data.get("is_published", False)),
            "created_by": author_id,
        }
        self._quizzes[row["id"]] = row
        self._stamp(row["id"])
        self._emit(ChangeEvent(QUIZZES_TABLE, ChangeKind.INSERT, new=row))
        return Quiz.from_row(copy.deepcopy(row))

    async def update_quiz(self, quiz_id: str, partial: dict[str, Any]) -> Quiz:
        existing = self._quizzes.get(quiz_id)
        if existing is None:
            raise NotFoundError("Quiz", quiz_id)
        unknown = set(partial) - _UPDATABLE_QUIZ_FIELDS
        if unknown:
            raise ValidationError(f"Unknown quiz fields: {', '.join(sorted(unknown))}")

        changes: dict[str, Any] = {}
        if "title" in partial:
            title = str(partial["title"] or "").strip()
            if not title:
                raise ValidationError("Quiz title is required.")
            changes["title"] = title
        if "description" in partial:
            changes["description"] = str(partial["description"] or "").strip()
        if "questions" in partial:
            changes["questions"] = self._prepare_questions(partial["questions"])
        if "time_limit" in partial:
            changes["time_limit"] = self._validate_time_limit(partial["time_limit"])
        if "difficulty" in partial:
            changes["difficulty"] = self._validate_difficulty(partial["difficulty"])
        if "category" in partial:
            changes["category"] = str(partial["category"] or DEFAULT_CATEGORY).strip() or DEFAULT_CATEGORY
        if "is_published" in partial:
            changes["is_published"] = bool(partial["is_published"])

        old = copy.deepcopy(existing)
        existing.update(changes)
        self._emit(ChangeEvent(QUIZZES_TABLE, ChangeKind.UPDATE, new=existing, old=old))
        return Quiz.from_row(copy.deepcopy(existing))

    async def delete_quiz(self, quiz_id: str) -> None:
        row = self._quizzes.pop(quiz_id, None)
        if row is None:
            raise NotFoundError("Quiz", quiz_id)
        self._sequence.pop(quiz_id, None)
        self._emit(ChangeEvent(QUIZZES_TABLE, ChangeKind.DELETE, old=row))

    # --- Results ---

    async def submit_result(self, submission: ResultSubmission) -> Result:
        if not submission.quiz_id or not submission.user_id:
            raise ValidationError("Results require a quiz id and a user id.")
        if submission.quiz_id not in self._quizzes:
            raise NotFoundError("Quiz", submission.quiz_id)
        if submission.total_questions < 0 or not 0 <= submission.score <= submission.total_questions:
            raise ValidationError("Score must be between 0 and the total question count.")
        if submission.time_spent < 0:
            raise ValidationError("Time spent cannot be negative.")

        row = submission.to_row()
        row["id"] = uuid4().hex
        row["completed_at"] = self._clock().isoformat()
        self._results[row["id"]] = row
        self._stamp(row["id"])
        self._emit(ChangeEvent(RESULTS_TABLE, ChangeKind.INSERT, new=row))
        logger.info(
            "Stored result %s for quiz %s (%s/%s)",
            row["id"],
            row["quiz_id"],
            row["score"],
            row["total_questions"],
        )
        return Result.from_row(copy.deepcopy(row))

    async def list_results_for_user(self, user_id: str) -> list[Result]:
        rows = [row for row in self._results.values() if row["user_id"] == user_id]
        return [Result.from_row(copy.deepcopy(row)) for row in self._newest_first(rows, "completed_at")]

    async def list_all_results(self) -> list[Result]:
        rows = list(self._results.values())
        return [Result.from_row(copy.deepcopy(row)) for row in self._newest_first(rows, "completed_at")]

    # --- Change feed ---

    def subscribe(
        self,
        table: str,
        on_event: EventHandler,
        on_subscribed: Callable[[], None] | None = None,
    ) -> Unsubscribe:
        subscription = _Subscription(table, on_event, on_subscribed)
        self._subscriptions.append(subscription)
        if on_subscribed is not None:
            asyncio.get_running_loop().call_soon(self._notify_subscribed, subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    def reconnect(self) -> None:
        """Re-announce every live channel, as a transport does after a reconnect."""
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            if subscription.on_subscribed is not None:
                loop.call_soon(self._notify_subscribed, subscription)

    def subscriber_count(self, table: str | None = None) -> int:
        return sum(1 for s in self._subscriptions if table is None or s.table == table)

    def _notify_subscribed(self, subscription: _Subscription) -> None:
        if subscription in self._subscriptions and subscription.on_subscribed is not None:
            subscription.on_subscribed()

    def _emit(self, event: ChangeEvent) -> None:
        payload = ChangeEvent(
            table=event.table,
            kind=event.kind,
            new=copy.deepcopy(event.new) if event.new is not None else None,
            old=copy.deepcopy(event.old) if event.old is not None else None,
        )
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            if subscription.table == event.table:
                loop.call_soon(self._deliver, subscription, payload)

    def _deliver(self, subscription: _Subscription, event: ChangeEvent) -> None:
        # Handlers detached after the write was emitted must not see it.
        if subscription in self._subscriptions:
            subscription.on_event(event)

    # --- Helpers ---

    def _stamp(self, row_id: str) -> None:
        self._counter += 1
        self._sequence[row_id] = self._counter

    def _newest_first(self, rows: list[dict[str, Any]], timestamp_field: str) -> list[dict[str, Any]]:
        return sorted(
            rows,
            key=lambda row: (row.get(timestamp_field) or "", self._sequence.get(row["id"], 0)),
            reverse=True,
        )

    def _prepare_questions(self, questions: object) -> list[dict[str, Any]]:
        if not isinstance(questions, list):
            raise ValidationError("Quiz questions must be a list.")
        return [self._prepare_question(question) for question in questions]

    def _prepare_question(self, question: object) -> dict[str, Any]:
        """Validate and normalize a question before storage."""
        if isinstance(question, Question):
            question = question.to_row()
        if not isinstance(question, dict):
            raise ValidationError("Each question must be an object.")

        cleaned_text = str(question.get("question") or "").strip()
        if not cleaned_text:
            raise ValidationError("Question text must not be empty.")
        options = self._validate_options(question.get("options"))
        correct = question.get("correctAnswer", question.get("correct_answer"))
        if not isinstance(correct, int) or isinstance(correct, bool) or not 0 <= correct < OPTION_COUNT:
            raise ValidationError(f"Correct answer must be between 0 and {OPTION_COUNT - 1}.")

        return {
            "id": str(question.get("id") or uuid4().hex),
            "question": cleaned_text,
            "options": options,
            "correctAnswer": correct,
        }

    @staticmethod
    def _validate_options(options: object) -> list[str]:
        if not isinstance(options, list) or len(options) != OPTION_COUNT:
            raise ValidationError(f"Each question must have exactly {OPTION_COUNT} options.")
        cleaned = [str(option).strip() for option in options]
        if any(not option for option in cleaned):
            raise ValidationError("Option text cannot be empty.")
        return cleaned

    @staticmethod
    def _validate_time_limit(time_limit: object) -> int:
        if not isinstance(time_limit, int) or isinstance(time_limit, bool):
            raise ValidationError("Time limit must be provided as an integer number of seconds.")
        if time_limit <= 0:
            raise ValidationError("Time limit must be a positive integer.")
        return time_limit

    @staticmethod
    def _validate_difficulty(difficulty: object) -> str:
        value = getattr(difficulty, "value", difficulty)
        if value not in DIFFICULTIES:
            raise ValidationError(f"Difficulty must be one of {', '.join(DIFFICULTIES)}.")
        return str(value)
