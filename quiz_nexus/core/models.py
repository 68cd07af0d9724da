"""Domain models for the quiz application."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from quiz_nexus.constants.quiz_constants import (
    DEFAULT_CATEGORY,
    DEFAULT_DIFFICULTY,
    DEFAULT_QUIZ_TITLE,
)


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"

    @classmethod
    def coerce(cls, value: object) -> Difficulty:
        """Map any raw value onto a known difficulty, falling back to Easy."""
        if isinstance(value, Difficulty):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls(DEFAULT_DIFFICULTY)


class ViewerRole(str, Enum):
    ADMIN = "admin"
    USER = "user"

    @property
    def is_elevated(self) -> bool:
        return self is ViewerRole.ADMIN


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """Single change-feed notification carrying raw rows."""

    table: str
    kind: str
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def _format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True, frozen=True)
class Question:
    """Multiple-choice question with exactly four options."""

    id: str
    question: str
    options: list[str]
    correct_answer: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Question:
        options = row.get("options")
        correct = row.get("correctAnswer", row.get("correct_answer", 0))
        return cls(
            id=str(row.get("id", "")),
            question=str(row.get("question", "")),
            options=[str(option) for option in options] if isinstance(options, list) else [],
            correct_answer=correct if isinstance(correct, int) else 0,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "options": list(self.options),
            "correctAnswer": self.correct_answer,
        }


@dataclass(slots=True, frozen=True)
class Quiz:
    """A published or draft quiz as seen by the client."""

    id: str
    title: str
    description: str
    questions: list[Question]
    time_limit: int
    difficulty: Difficulty
    category: str
    created_at: datetime | None
    is_published: bool
    created_by: str | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Quiz:
        """Coerce a raw backend row into a Quiz, tolerating missing or odd fields."""
        questions = row.get("questions")
        time_limit = row.get("time_limit")
        return cls(
            id=str(row["id"]),
            title=row.get("title") or DEFAULT_QUIZ_TITLE,
            description=row.get("description") or "",
            questions=[Question.from_row(q) for q in questions if isinstance(q, dict)]
            if isinstance(questions, list)
            else [],
            time_limit=int(time_limit) if isinstance(time_limit, (int, float)) and not isinstance(time_limit, bool) else 0,
            difficulty=Difficulty.coerce(row.get("difficulty")),
            category=row.get("category") or DEFAULT_CATEGORY,
            created_at=_parse_timestamp(row.get("created_at")),
            is_published=bool(row.get("is_published")),
            created_by=row.get("created_by"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "questions": [q.to_row() for q in self.questions],
            "time_limit": self.time_limit,
            "difficulty": self.difficulty.value,
            "category": self.category,
            "created_at": _format_timestamp(self.created_at),
            "is_published": self.is_published,
            "created_by": self.created_by,
        }

    def with_updates(self, **changes: Any) -> Quiz:
        return replace(self, **changes)


@dataclass(slots=True, frozen=True)
class Result:
    """Persisted outcome of a finished attempt."""

    id: str
    quiz_id: str
    user_id: str
    answers: list[int | None]
    score: int
    total_questions: int
    time_spent: int
    completed_at: datetime | None = None

    @property
    def percent(self) -> float:
        if self.total_questions <= 0:
            return 0.0
        return (self.score / self.total_questions) * 100

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Result:
        answers = row.get("answers")
        return cls(
            id=str(row["id"]),
            quiz_id=str(row.get("quiz_id", "")),
            user_id=str(row.get("user_id", "")),
            answers=[a if isinstance(a, int) else None for a in answers] if isinstance(answers, list) else [],
            score=int(row.get("score") or 0),
            total_questions=int(row.get("total_questions") or 0),
            time_spent=int(row.get("time_spent") or 0),
            completed_at=_parse_timestamp(row.get("completed_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "quiz_id": self.quiz_id,
            "user_id": self.user_id,
            "answers": list(self.answers),
            "score": self.score,
            "total_questions": self.total_questions,
            "time_spent": self.time_spent,
            "completed_at": _format_timestamp(self.completed_at),
        }


@dataclass(slots=True)
class ResultSubmission:
    """Payload handed to the backend when an attempt finishes."""

    quiz_id: str
    user_id: str
    answers: list[int | None]
    score: int
    total_questions: int
    time_spent: int

    def to_row(self) -> dict[str, Any]:
        return {
            "quiz_id": self.quiz_id,
            "user_id": self.user_id,
            "answers": list(self.answers),
            "score": self.score,
            "total_questions": self.total_questions,
            "time_spent": self.time_spent,
        }
