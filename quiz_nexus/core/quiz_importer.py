"""Utilities for importing quizzes from a human-friendly text file.

File format (quizzes separated by a line containing only '==='):

    TITLE: Quiz title
    DESCRIPTION: Optional one-line description
    CATEGORY: Optional category (defaults to General)
    DIFFICULTY: Easy|Medium|Hard (optional, defaults to Easy)
    TIMELIMIT: seconds for the whole quiz
    PUBLISHED: yes|no (optional, defaults to no)

    Q: Question text. Additional lines until the next marker are treated
       as part of the question.
    A: First option text
    B: Second option text
    C: Third option text
    D: Fourth option text
    CORRECT: A|B|C|D

Question blocks are separated by blank lines or '---'.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from quiz_nexus.constants.quiz_constants import (
    DEFAULT_CATEGORY,
    DEFAULT_DIFFICULTY,
    DEFAULT_TIME_LIMIT_SECONDS,
    DIFFICULTIES,
    OPTION_LETTERS,
)


class QuizImportError(Exception):
    """Raised when a quiz definition cannot be parsed."""


@dataclass(slots=True)
class ImportedQuestion:
    question: str
    options: list[str]
    correct_answer: int


@dataclass(slots=True)
class ImportedQuiz:
    """Container for imported quiz metadata and questions."""

    title: str
    description: str
    category: str
    difficulty: str
    time_limit: int
    is_published: bool
    questions: list[ImportedQuestion]

    def to_payload(self) -> dict[str, Any]:
        """Shape the quiz as the data dict accepted by ``create_quiz``."""
        return {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "difficulty": self.difficulty,
            "time_limit": self.time_limit,
            "is_published": self.is_published,
            "questions": [
                {"question": q.question, "options": list(q.options), "correctAnswer": q.correct_answer}
                for q in self.questions
            ],
        }


_QUIZ_SEPARATOR = "==="
_HEADER_KEYS = ("TITLE", "DESCRIPTION", "CATEGORY", "DIFFICULTY", "TIMELIMIT", "PUBLISHED")


def load_quizzes_from_file(file_path: Path) -> list[ImportedQuiz]:
    text = file_path.read_text(encoding="utf-8")
    quizzes = parse_quizzes_text(text)
    if not quizzes:
        raise QuizImportError(f"{file_path.name} did not contain any quizzes.")
    return quizzes


def parse_quizzes_text(text: str) -> list[ImportedQuiz]:
    documents: list[list[str]] = [[]]
    for raw_line in text.splitlines():
        if raw_line.strip() == _QUIZ_SEPARATOR:
            documents.append([])
        else:
            documents[-1].append(raw_line)
    return [_parse_quiz(lines) for lines in documents if any(line.strip() for line in lines)]


def _parse_quiz(lines: list[str]) -> ImportedQuiz:
    header: dict[str, str] = {}
    body_start = len(lines)
    for position, raw_line in enumerate(lines):
        line = raw_line.strip()
        if not line:
            continue
        key, separator, value = line.partition(":")
        key = key.strip().upper()
        if key == "Q":
            body_start = position
            break
        if key not in _HEADER_KEYS or not separator:
            raise QuizImportError(f"Unexpected line in quiz header: '{line}'.")
        header[key] = value.strip()

    title = header.get("TITLE", "")
    if not title:
        raise QuizImportError("Each quiz needs a TITLE.")

    difficulty = header.get("DIFFICULTY", DEFAULT_DIFFICULTY).capitalize()
    if difficulty not in DIFFICULTIES:
        raise QuizImportError(f"DIFFICULTY must be one of {', '.join(DIFFICULTIES)}.")

    questions = [_parse_block(block) for block in _split_blocks(lines[body_start:])]
    if not questions:
        raise QuizImportError(f"Quiz '{title}' does not contain any questions.")

    return ImportedQuiz(
        title=title,
        description=header.get("DESCRIPTION", ""),
        category=header.get("CATEGORY") or DEFAULT_CATEGORY,
        difficulty=difficulty,
        time_limit=_parse_time_limit(header.get("TIMELIMIT")),
        is_published=header.get("PUBLISHED", "no").lower() in {"yes", "true", "1"},
        questions=questions,
    )


def _split_blocks(lines: list[str]) -> list[str]:
    blocks: list[str] = []
    current_block: list[str] = []
    for raw_line in lines:
        stripped = raw_line.strip()
        if stripped == "---":
            if current_block:
                blocks.append("\n".join(current_block).strip())
                current_block = []
            continue
        if stripped:
            current_block.append(raw_line)
        elif current_block:
            # Blank line encountered after content - finalize current block
            blocks.append("\n".join(current_block).strip())
            current_block = []
    if current_block:
        blocks.append("\n".join(current_block).strip())
    return [block for block in blocks if block]


def _parse_block(block: str) -> ImportedQuestion:
    question_lines: list[str] = []
    options: dict[str, str] = {}
    correct_letter: str | None = None
    current_section: str | None = None

    for raw_line in block.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        upper = line.upper()
        if upper.startswith("Q:"):
            question_lines = [line[2:].strip()]
            current_section = "Q"
            continue

        if upper.startswith("CORRECT:"):
            correct_letter = line.split(":", 1)[1].strip().upper()
            current_section = None
            continue

        if len(line) > 2 and line[0].upper() in OPTION_LETTERS and line[1] == ":":
            letter = line[0].upper()
            options[letter] = line[2:].strip()
            current_section = letter
            continue

        if current_section == "Q":
            question_lines.append(line)
        elif current_section in OPTION_LETTERS:
            options[current_section] = options[current_section] + f"\n{line}"
        else:
            raise QuizImportError(f"Encountered text outside of a known section: '{line}'.")

    question_text = "\n".join(question_lines).strip()
    if not question_text:
        raise QuizImportError("Question text missing (Q: ...)")
    if len(options) != len(OPTION_LETTERS):
        raise QuizImportError("Each question must define exactly four options (A-D).")

    option_list = [options.get(letter, "").strip() for letter in OPTION_LETTERS]
    if any(not opt for opt in option_list):
        raise QuizImportError("Option text cannot be empty.")

    if correct_letter is None:
        raise QuizImportError(f"Question '{question_text}' is missing CORRECT.")
    if correct_letter not in OPTION_LETTERS:
        raise QuizImportError("CORRECT must be one of A, B, C, or D.")

    return ImportedQuestion(
        question=question_text,
        options=option_list,
        correct_answer=OPTION_LETTERS.index(correct_letter),
    )


def _parse_time_limit(raw_value: str | None) -> int:
    if raw_value is None:
        return DEFAULT_TIME_LIMIT_SECONDS
    try:
        parsed_value = int(raw_value)
    except ValueError as exc:
        raise QuizImportError("TIMELIMIT must be an integer number of seconds.") from exc
    if parsed_value <= 0:
        raise QuizImportError("TIMELIMIT must be a positive integer.")
    return parsed_value
