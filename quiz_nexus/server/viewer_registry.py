"""Per-viewer state owned by the HTTP layer: data managers and open attempts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from quiz_nexus.constants.quiz_constants import TIMER_TICK_INTERVAL_SECONDS
from quiz_nexus.core.models import Quiz, ViewerRole
from quiz_nexus.core.quiz_manager import QuizManager
from quiz_nexus.core.services.attempt_session import AttemptSession, Clock
from quiz_nexus.core.services.attempt_store import AttemptStore
from quiz_nexus.core.services.quiz_backend import QuizBackend

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Viewer:
    user_id: str
    role: ViewerRole


class ViewerRegistry:
    """Mounts one QuizManager per viewer and one AttemptSession per viewer and quiz."""

    def __init__(
        self,
        backend: QuizBackend,
        store: AttemptStore,
        *,
        clock: Clock = time.time,
        tick_interval: float = TIMER_TICK_INTERVAL_SECONDS,
    ) -> None:
        self._backend = backend
        self._store = store
        self._clock = clock
        self._tick_interval = tick_interval
        self._managers: dict[Viewer, QuizManager] = {}
        self._attempts: dict[tuple[str, str], AttemptSession] = {}
        self._mount_locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def manager_for(self, viewer: Viewer) -> QuizManager:
        manager = self._managers.get(viewer)
        if manager is None:
            manager = QuizManager(self._backend, user_id=viewer.user_id, role=viewer.role)
            self._managers[viewer] = manager
            await manager.open()
            logger.info("Mounted data manager for %s (%s)", viewer.user_id, viewer.role.value)
        return manager

    def get_attempt(self, viewer: Viewer, quiz_id: str) -> AttemptSession | None:
        return self._attempts.get((viewer.user_id, quiz_id))

    async def open_attempt(self, viewer: Viewer, quiz: Quiz) -> AttemptSession:
        """Return the mounted attempt for this quiz, or start/resume one.

        Mounting is serialized per user and quiz, so overlapping requests share
        one session and one timer.
        """
        key = (viewer.user_id, quiz.id)
        lock = self._mount_locks.setdefault(key, asyncio.Lock())
        async with lock:
            session = self._attempts.get(key)
            if session is not None and not session.is_closed:
                return session

            manager = await self.manager_for(viewer)
            session = AttemptSession(
                manager,
                self._store,
                viewer.user_id,
                clock=self._clock,
                tick_interval=self._tick_interval,
            )
            await session.start(quiz)
            superseded = self._attempts.get(key)
            if superseded is not None:
                superseded.close()
            self._attempts[key] = session
            session.start_timer()
            return session

    def close_attempt(self, viewer: Viewer, quiz_id: str) -> bool:
        session = self._attempts.pop((viewer.user_id, quiz_id), None)
        if session is None:
            return False
        session.close()
        return True

    def close_all(self) -> None:
        for session in self._attempts.values():
            session.close()
        self._attempts.clear()
        self._mount_locks.clear()
        for manager in self._managers.values():
            manager.close()
        self._managers.clear()
