from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from quiz_nexus.core.errors import StorageUnavailable
from quiz_nexus.core.models import Difficulty, Question, Quiz, Result, ResultSubmission
from quiz_nexus.core.services.attempt_store import AttemptSnapshot

START_EPOCH = 1_700_000_000.0


class FakeClock:
    """Wall clock in epoch seconds that only moves when told to."""

    def __init__(self, now: float = START_EPOCH) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSubmitter:
    """Result submitter that can fail on demand or hold a submission in flight."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[ResultSubmission] = []
        self.stored: list[Result] = []
        self.gate: asyncio.Event | None = None

    async def submit_result(self, submission: ResultSubmission) -> Result:
        self.calls.append(submission)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("backend unreachable")
        result = Result(
            id=f"result-{len(self.stored) + 1}",
            quiz_id=submission.quiz_id,
            user_id=submission.user_id,
            answers=list(submission.answers),
            score=submission.score,
            total_questions=submission.total_questions,
            time_spent=submission.time_spent,
            completed_at=datetime.now(timezone.utc),
        )
        self.stored.append(result)
        return result


class BrokenAttemptStore:
    async def load(self, quiz_id: str, user_id: str) -> AttemptSnapshot | None:
        raise StorageUnavailable("disk quota exceeded")

    async def save(self, quiz_id: str, user_id: str, snapshot: AttemptSnapshot) -> None:
        raise StorageUnavailable("disk quota exceeded")

    async def clear(self, quiz_id: str, user_id: str) -> None:
        raise StorageUnavailable("disk quota exceeded")


def build_quiz(
    quiz_id: str = "quiz-1",
    *,
    question_count: int = 5,
    correct_answers: list[int] | None = None,
    time_limit: int = 300,
    is_published: bool = True,
) -> Quiz:
    correct_answers = correct_answers or [index % 4 for index in range(question_count)]
    questions = [
        Question(
            id=f"{quiz_id}-q{index}",
            question=f"Question {index + 1}?",
            options=["Alpha", "Bravo", "Charlie", "Delta"],
            correct_answer=correct_answers[index],
        )
        for index in range(question_count)
    ]
    return Quiz(
        id=quiz_id,
        title=f"Quiz {quiz_id}",
        description="",
        questions=questions,
        time_limit=time_limit,
        difficulty=Difficulty.MEDIUM,
        category="General",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        is_published=is_published,
        created_by="admin-1",
    )


def quiz_payload(title: str = "Ports", *, published: bool = True, question_count: int = 2) -> dict:
    return {
        "title": title,
        "description": "Harbour basics",
        "time_limit": 120,
        "difficulty": "Easy",
        "category": "Maritime",
        "is_published": published,
        "questions": [
            {
                "question": f"{title} question {index + 1}",
                "options": ["One", "Two", "Three", "Four"],
                "correctAnswer": index % 4,
            }
            for index in range(question_count)
        ],
    }


async def drain() -> None:
    """Let every change notification already scheduled on the loop run."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def submitter() -> RecordingSubmitter:
    return RecordingSubmitter()
