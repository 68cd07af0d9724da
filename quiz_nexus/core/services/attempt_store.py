"""Durable local state for in-progress attempts, keyed by quiz and user."""

from __future__ import annotations

import asyncio
import logging
import re
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from quiz_nexus.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class AttemptSnapshot(BaseModel):
    """Progress written on every answer and navigation so a reload can resume."""

    model_config = ConfigDict(populate_by_name=True)

    answers: dict[int, int] = Field(default_factory=dict)
    current_question_index: int = Field(default=0, ge=0, alias="currentQuestionIndex")
    start_time: int = Field(alias="startTime", description="Epoch milliseconds.")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload: str) -> AttemptSnapshot:
        return cls.model_validate_json(payload)


class AttemptStore(Protocol):
    async def load(self, quiz_id: str, user_id: str) -> AttemptSnapshot | None: ...

    async def save(self, quiz_id: str, user_id: str, snapshot: AttemptSnapshot) -> None: ...

    async def clear(self, quiz_id: str, user_id: str) -> None: ...


def _parse_snapshot(payload: str, key: str) -> AttemptSnapshot | None:
    try:
        return AttemptSnapshot.from_json(payload)
    except PydanticValidationError as exc:
        logger.warning("Discarding unreadable attempt state %s: %s", key, exc.error_count())
        return None


class MemoryAttemptStore:
    """Keeps serialized snapshots in a dict; survives session objects, not processes."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], str] = {}

    async def load(self, quiz_id: str, user_id: str) -> AttemptSnapshot | None:
        payload = self._entries.get((quiz_id, user_id))
        if payload is None:
            return None
        return _parse_snapshot(payload, f"{quiz_id}/{user_id}")

    async def save(self, quiz_id: str, user_id: str, snapshot: AttemptSnapshot) -> None:
        self._entries[(quiz_id, user_id)] = snapshot.to_json()

    async def clear(self, quiz_id: str, user_id: str) -> None:
        self._entries.pop((quiz_id, user_id), None)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._entries


class JsonFileAttemptStore:
    """One JSON document per attempt under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._locks: dict[Path, asyncio.Lock] = {}

    def path_for(self, quiz_id: str, user_id: str) -> Path:
        safe_quiz = _UNSAFE_KEY_CHARS.sub("_", quiz_id)
        safe_user = _UNSAFE_KEY_CHARS.sub("_", user_id)
        return self._directory / f"attempt-{safe_quiz}--{safe_user}.json"

    async def load(self, quiz_id: str, user_id: str) -> AttemptSnapshot | None:
        path = self.path_for(quiz_id, user_id)
        try:
            payload = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageUnavailable(f"Cannot read attempt state at {path}: {exc}") from exc
        return _parse_snapshot(payload, path.name)

    async def save(self, quiz_id: str, user_id: str, snapshot: AttemptSnapshot) -> None:
        """Write the snapshot; overlapping writes for one key land in call order."""
        path = self.path_for(quiz_id, user_id)
        document = snapshot.to_json()
        async with self._lock_for(path):
            try:
                await asyncio.to_thread(self._write, path, document)
            except OSError as exc:
                raise StorageUnavailable(f"Cannot write attempt state at {path}: {exc}") from exc

    async def clear(self, quiz_id: str, user_id: str) -> None:
        path = self.path_for(quiz_id, user_id)
        async with self._lock_for(path):
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as exc:
                raise StorageUnavailable(f"Cannot remove attempt state at {path}: {exc}") from exc

    def _lock_for(self, path: Path) -> asyncio.Lock:
        return self._locks.setdefault(path, asyncio.Lock())

    @staticmethod
    def _write(path: Path, document: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f"{path.stem}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(document)
            tmp_path = Path(handle.name)
        try:
            tmp_path.replace(path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
