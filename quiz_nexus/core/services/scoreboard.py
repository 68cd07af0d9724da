"""Service aggregating submitted results into scores and statistics."""

from __future__ import annotations

import statistics
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from quiz_nexus.constants.quiz_constants import PASS_THRESHOLD_PERCENT, QUIZ_SCORE_BANDS, SCORE_BANDS
from quiz_nexus.core.errors import ValidationError
from quiz_nexus.core.models import Result


@dataclass(slots=True)
class ScoreEntry:
    """Mutable per-user accumulator used internally."""

    user_id: str
    percents: list[float] = field(default_factory=list)
    total_time: int = 0
    last_completed: datetime | None = None


@dataclass(slots=True)
class UserAggregate:
    """Immutable per-user snapshot returned to consumers."""

    user_id: str
    attempts: int
    average_percent: int
    best_percent: int
    passed_attempts: int
    pass_rate: int
    total_time: int
    last_completed: datetime | None


@dataclass(slots=True)
class ResultSummary:
    attempts: int = 0
    average_percent: int = 0
    average_time: int = 0
    unique_users: int = 0
    pass_rate: int = 0
    most_attempted_quiz_id: str | None = None
    most_attempted_quiz_title: str | None = None


@dataclass(slots=True)
class QuizBreakdown:
    """Score analytics for every attempt on one quiz."""

    quiz_id: str
    quiz_title: str
    attempts: int
    unique_users: int
    average_percent: int
    highest_percent: int
    lowest_percent: int
    median_percent: int
    pass_rate: int
    distribution: dict[str, int]


def score_band_for(percent: float) -> str:
    for label, floor in reversed(QUIZ_SCORE_BANDS):
        if percent >= floor:
            return label
    return QUIZ_SCORE_BANDS[0][0]


def filter_results(
    results: Iterable[Result],
    *,
    quiz_id: str | None = None,
    score_band: str | None = None,
    search: str | None = None,
    quiz_titles: dict[str, str] | None = None,
) -> list[Result]:
    """Narrow results by quiz, by breakdown band, and by free text.

    ``search`` matches case-insensitively against the quiz title and the user id.
    """
    if score_band and score_band not in dict(QUIZ_SCORE_BANDS):
        raise ValidationError(f"Unknown score band '{score_band}'")
    quiz_titles = quiz_titles or {}
    needle = (search or "").strip().lower()
    selected = []
    for result in results:
        if quiz_id and result.quiz_id != quiz_id:
            continue
        if score_band and score_band_for(result.percent) != score_band:
            continue
        if needle:
            haystack = f"{quiz_titles.get(result.quiz_id, '')} {result.user_id}".lower()
            if needle not in haystack:
                continue
        selected.append(result)
    return selected


class Scoreboard:
    """Computes summaries over a list of results."""

    def __init__(self, pass_threshold: float = PASS_THRESHOLD_PERCENT) -> None:
        self._pass_threshold = pass_threshold

    def summarize(self, results: Iterable[Result], quiz_titles: dict[str, str] | None = None) -> ResultSummary:
        """Overall attempt count, averages, pass rate, and most attempted quiz."""
        results = list(results)
        if not results:
            return ResultSummary()
        quiz_titles = quiz_titles or {}
        percents = [r.percent for r in results]
        passed = sum(1 for p in percents if p >= self._pass_threshold)

        # Counter keeps first-seen order, so ties go to the earliest quiz in the list.
        attempt_counts = Counter(r.quiz_id for r in results)
        top_quiz_id, _ = attempt_counts.most_common(1)[0]

        return ResultSummary(
            attempts=len(results),
            average_percent=round(sum(percents) / len(percents)),
            average_time=round(sum(r.time_spent for r in results) / len(results)),
            unique_users=len({r.user_id for r in results}),
            pass_rate=round(passed / len(results) * 100),
            most_attempted_quiz_id=top_quiz_id,
            most_attempted_quiz_title=quiz_titles.get(top_quiz_id, top_quiz_id),
        )

    def user_aggregates(self, results: Iterable[Result]) -> list[UserAggregate]:
        """Per-user statistics sorted by best percent, then by attempt count."""
        entries: dict[str, ScoreEntry] = {}
        for result in results:
            entry = entries.get(result.user_id)
            if entry is None:
                entry = ScoreEntry(user_id=result.user_id)
                entries[result.user_id] = entry
            entry.percents.append(result.percent)
            entry.total_time += result.time_spent
            if result.completed_at is not None and (
                entry.last_completed is None or result.completed_at > entry.last_completed
            ):
                entry.last_completed = result.completed_at

        rows = [self._to_row(entry) for entry in entries.values()]
        rows.sort(key=lambda row: (-row.best_percent, -row.attempts))
        return rows

    def quiz_breakdown(
        self, results: Iterable[Result], quiz_titles: dict[str, str] | None = None
    ) -> list[QuizBreakdown]:
        """One analytics row per quiz that has attempts.

        Rows follow the order of ``quiz_titles``; quizzes missing from it come
        after, in the order their first result appears.
        """
        quiz_titles = quiz_titles or {}
        grouped: dict[str, list[Result]] = {quiz_id: [] for quiz_id in quiz_titles}
        for result in results:
            grouped.setdefault(result.quiz_id, []).append(result)
        return [
            self._to_breakdown(quiz_id, quiz_titles.get(quiz_id, quiz_id), quiz_results)
            for quiz_id, quiz_results in grouped.items()
            if quiz_results
        ]

    @staticmethod
    def score_distribution(results: Iterable[Result]) -> dict[str, int]:
        distribution = {label: 0 for label, _ in SCORE_BANDS}
        for result in results:
            percent = result.percent
            for label, floor in SCORE_BANDS:
                if percent >= floor:
                    distribution[label] += 1
                    break
        return distribution

    def _to_row(self, entry: ScoreEntry) -> UserAggregate:
        attempts = len(entry.percents)
        passed = sum(1 for p in entry.percents if p >= self._pass_threshold)
        return UserAggregate(
            user_id=entry.user_id,
            attempts=attempts,
            average_percent=round(sum(entry.percents) / attempts),
            best_percent=round(max(entry.percents)),
            passed_attempts=passed,
            pass_rate=round(passed / attempts * 100),
            total_time=entry.total_time,
            last_completed=entry.last_completed,
        )

    def _to_breakdown(self, quiz_id: str, title: str, results: list[Result]) -> QuizBreakdown:
        percents = [r.percent for r in results]
        passed = sum(1 for p in percents if p >= self._pass_threshold)
        distribution = {label: 0 for label, _ in QUIZ_SCORE_BANDS}
        for percent in percents:
            distribution[score_band_for(percent)] += 1
        return QuizBreakdown(
            quiz_id=quiz_id,
            quiz_title=title,
            attempts=len(results),
            unique_users=len({r.user_id for r in results}),
            average_percent=round(sum(percents) / len(percents)),
            highest_percent=round(max(percents)),
            lowest_percent=round(min(percents)),
            median_percent=round(statistics.median(percents)),
            pass_rate=round(passed / len(results) * 100),
            distribution=distribution,
        )
