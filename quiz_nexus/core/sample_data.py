"""Bundled demo quizzes used to seed an empty backend."""

from __future__ import annotations

import logging
from pathlib import Path

from quiz_nexus.core.quiz_importer import load_quizzes_from_file
from quiz_nexus.core.services.quiz_backend import QuizBackend

logger = logging.getLogger(__name__)

SAMPLE_QUIZZES_PATH = Path(__file__).resolve().parents[1] / "data" / "sample_quizzes.txt"
SEED_AUTHOR_ID = "seed-admin"


async def seed_backend(backend: QuizBackend, file_path: Path = SAMPLE_QUIZZES_PATH) -> int:
    """Create every quiz from ``file_path`` unless the backend already has quizzes."""
    if await backend.list_quizzes(published_only=False):
        logger.info("Backend already holds quizzes; skipping sample seed")
        return 0
    imported = load_quizzes_from_file(file_path)
    for quiz in imported:
        await backend.create_quiz(quiz.to_payload(), SEED_AUTHOR_ID)
    logger.info("Seeded %d sample quizzes from %s", len(imported), file_path.name)
    return len(imported)
