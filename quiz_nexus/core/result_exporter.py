"""Utilities for exporting submitted results as CSV."""

from __future__ import annotations

import csv
import io
from pathlib import Path

from quiz_nexus.core.models import Result

CSV_COLUMNS = (
    "result_id",
    "quiz_id",
    "quiz_title",
    "user_id",
    "score",
    "total_questions",
    "percent",
    "time_spent_seconds",
    "completed_at",
)


def save_results_to_file(file_path: Path, results: list[Result], quiz_titles: dict[str, str]) -> None:
    """Persist the provided results to disk as a CSV document."""

    file_path = file_path.resolve()
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(results_to_csv(results, quiz_titles), encoding="utf-8")


def results_to_csv(results: list[Result], quiz_titles: dict[str, str]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for result in results:
        writer.writerow(_serialize_result(result, quiz_titles))
    return buffer.getvalue()


def _serialize_result(result: Result, quiz_titles: dict[str, str]) -> list[object]:
    return [
        result.id,
        result.quiz_id,
        quiz_titles.get(result.quiz_id, ""),
        result.user_id,
        result.score,
        result.total_questions,
        f"{result.percent:.2f}",
        result.time_spent,
        result.completed_at.isoformat() if result.completed_at else "",
    ]
