"""Per-viewer data access shared by the quiz list, authoring, and results views."""

from __future__ import annotations

import logging
from typing import Any

from quiz_nexus.constants.quiz_constants import QUIZZES_TABLE, RESULTS_TABLE
from quiz_nexus.core.errors import NotFoundError
from quiz_nexus.core.models import Quiz, Result, ResultSubmission, ViewerRole
from quiz_nexus.core.services.live_collection import LiveCollectionReconciler
from quiz_nexus.core.services.quiz_backend import QuizBackend
from quiz_nexus.core.visibility import quiz_visibility, result_visibility

logger = logging.getLogger(__name__)


class QuizManager:
    """Facade for one viewer: live quiz and result lists plus the writes behind them.

    Every write goes to the backend first and is then merged into the local
    list with the same visibility rules the change feed uses, so the later
    feed echo of that write is a no-op.
    """

    def __init__(self, backend: QuizBackend, *, user_id: str, role: ViewerRole) -> None:
        self._backend = backend
        self._user_id = user_id
        self._role = role
        self._quiz_visible = quiz_visibility(role)
        self._result_visible = result_visibility(role, user_id)

        self._quizzes: LiveCollectionReconciler[Quiz] = LiveCollectionReconciler(
            table=QUIZZES_TABLE,
            feed=backend,
            fetch=self._fetch_quizzes,
            parse_row=Quiz.from_row,
            is_visible=self._quiz_visible,
            refetch_on_subscribe=role.is_elevated,
        )
        self._results: LiveCollectionReconciler[Result] = LiveCollectionReconciler(
            table=RESULTS_TABLE,
            feed=backend,
            fetch=self._fetch_results,
            parse_row=Result.from_row,
            is_visible=self._result_visible,
            refetch_on_subscribe=role.is_elevated,
        )

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def role(self) -> ViewerRole:
        return self._role

    @property
    def quizzes(self) -> list[Quiz]:
        return self._quizzes.items

    @property
    def results(self) -> list[Result]:
        return self._results.items

    async def open(self) -> None:
        await self._quizzes.open()
        await self._results.open()

    def close(self) -> None:
        self._quizzes.close()
        self._results.close()

    # --- Quizzes ---

    def get_quiz_by_id(self, quiz_id: str) -> Quiz | None:
        return self._quizzes.get(quiz_id)

    async def fetch_quiz(self, quiz_id: str) -> Quiz:
        """Return a quiz this viewer may see, asking the backend when it is not cached."""
        cached = self._quizzes.get(quiz_id)
        if cached is not None:
            return cached
        quiz = await self._backend.get_quiz(quiz_id)
        if not self._quiz_visible(quiz):
            raise NotFoundError("Quiz", quiz_id)
        return quiz

    async def refresh_quizzes(self) -> None:
        await self._quizzes.refresh()

    async def create_quiz(self, data: dict[str, Any]) -> Quiz:
        self._require_admin("create quizzes")
        quiz = await self._backend.create_quiz(data, self._user_id)
        self._quizzes.upsert_local(quiz)
        logger.info("Quiz %s created by %s", quiz.id, self._user_id)
        return quiz

    async def update_quiz(self, quiz_id: str, partial: dict[str, Any]) -> Quiz:
        self._require_admin("update quizzes")
        try:
            quiz = await self._backend.update_quiz(quiz_id, partial)
        except NotFoundError:
            self._quizzes.remove_local(quiz_id)
            raise
        self._quizzes.upsert_local(quiz)
        return quiz

    async def set_published(self, quiz_id: str, published: bool) -> Quiz:
        return await self.update_quiz(quiz_id, {"is_published": published})

    async def delete_quiz(self, quiz_id: str) -> None:
        self._require_admin("delete quizzes")
        try:
            await self._backend.delete_quiz(quiz_id)
        except NotFoundError:
            self._quizzes.remove_local(quiz_id)
            raise
        self._quizzes.remove_local(quiz_id)
        logger.info("Quiz %s deleted by %s", quiz_id, self._user_id)

    # --- Results ---

    async def refresh_results(self) -> None:
        await self._results.refresh()

    async def submit_result(self, submission: ResultSubmission) -> Result:
        result = await self._backend.submit_result(submission)
        self._results.upsert_local(result)
        return result

    def results_for_quiz(self, quiz_id: str) -> list[Result]:
        return [result for result in self._results.items if result.quiz_id == quiz_id]

    # --- Helpers ---

    async def _fetch_quizzes(self) -> list[Quiz]:
        return await self._backend.list_quizzes(published_only=not self._role.is_elevated)

    async def _fetch_results(self) -> list[Result]:
        if self._role.is_elevated:
            return await self._backend.list_all_results()
        return await self._backend.list_results_for_user(self._user_id)

    def _require_admin(self, action: str) -> None:
        if not self._role.is_elevated:
            raise PermissionError(f"Only administrators may {action}.")
