"""FastAPI server that exposes quiz, attempt, and result endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import uvicorn

from quiz_nexus.constants.about import APP_ABOUT_TEXT, APP_LICENSE, APP_NAME, APP_VERSION
from quiz_nexus.constants.network_constants import USER_ID_HEADER, USER_ROLE_HEADER
from quiz_nexus.constants.quiz_constants import DEFAULT_CATEGORY, OPTION_COUNT
from quiz_nexus.core.config import Settings, settings
from quiz_nexus.core.errors import (
    NotFoundError,
    StorageUnavailable,
    SubmissionError,
    ValidationError,
)
from quiz_nexus.core.models import Difficulty, Quiz, Result, ViewerRole
from quiz_nexus.core.prompt_renderer import renderer
from quiz_nexus.core.result_exporter import results_to_csv
from quiz_nexus.core.sample_data import seed_backend
from quiz_nexus.core.services.attempt_session import AttemptSession, Clock
from quiz_nexus.core.services.attempt_store import AttemptStore, JsonFileAttemptStore, MemoryAttemptStore
from quiz_nexus.core.services.quiz_backend import InMemoryQuizBackend, QuizBackend
from quiz_nexus.core.services.scoreboard import Scoreboard, filter_results
from quiz_nexus.server.viewer_registry import Viewer, ViewerRegistry

logger = logging.getLogger(__name__)


class QuestionPayload(BaseModel):
    """Payload schema for one authored question."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    question: str
    options: list[str]
    correct_answer: int = Field(alias="correctAnswer")


class QuizCreatePayload(BaseModel):
    """Payload schema for creating a quiz."""

    title: str
    description: str = ""
    questions: list[QuestionPayload]
    time_limit: int
    difficulty: Difficulty = Difficulty.EASY
    category: str = DEFAULT_CATEGORY
    is_published: bool = False


class QuizUpdatePayload(BaseModel):
    """Payload schema for partial quiz updates; omitted fields stay untouched."""

    title: str | None = None
    description: str | None = None
    questions: list[QuestionPayload] | None = None
    time_limit: int | None = None
    difficulty: Difficulty | None = None
    category: str | None = None
    is_published: bool | None = None


class PublishPayload(BaseModel):
    is_published: bool


class AnswerPayload(BaseModel):
    """Payload schema for a selected option."""

    question_index: int = Field(ge=0)
    option_index: int = Field(ge=0, lt=OPTION_COUNT)


def _quiz_data(payload: BaseModel) -> dict[str, object]:
    data = payload.model_dump(exclude_unset=True, by_alias=True)
    if "difficulty" in data and isinstance(data["difficulty"], Difficulty):
        data["difficulty"] = data["difficulty"].value
    return data


def _quiz_payload(quiz: Quiz, include_answers: bool) -> dict[str, object]:
    row = quiz.to_row()
    row["question_count"] = len(quiz.questions)
    if not include_answers:
        for question in row["questions"]:
            question.pop("correctAnswer", None)
    return row


def _result_payload(result: Result) -> dict[str, object]:
    row = result.to_row()
    row["percent"] = round(result.percent, 2)
    return row


def _attempt_payload(session: AttemptSession) -> dict[str, object]:
    state = session.state()
    quiz = session.quiz
    question = session.current_question
    question_payload = None
    if question is not None:
        question_payload = {
            "id": question.id,
            "prompt_html": renderer.render_prompt(question.question),
            "options": list(question.options),
            "options_html": [renderer.render_option(option) for option in question.options],
        }
    return {
        "phase": state.phase.value,
        "quiz_id": state.quiz_id,
        "title": quiz.title if quiz else None,
        "question_count": len(quiz.questions) if quiz else 0,
        "current_question_index": state.current_question_index,
        "is_last_question": session.is_last_question,
        "question": question_payload,
        "selected_option": state.answers.get(state.current_question_index),
        "answers": {str(index): option for index, option in state.answers.items()},
        "remaining_seconds": state.remaining_seconds,
        "elapsed_seconds": state.elapsed_seconds,
        "time_limit": state.time_limit,
        "result": _result_payload(state.result) if state.result else None,
        "error": state.error,
        "storage_available": state.storage_available,
    }


def _viewer_dependency(
    user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
    role: str | None = Header(default=None, alias=USER_ROLE_HEADER),
) -> Viewer:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail=f"Missing {USER_ID_HEADER} header")
    try:
        viewer_role = ViewerRole((role or ViewerRole.USER.value).strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown role '{role}'") from exc
    return Viewer(user_id=user_id.strip(), role=viewer_role)


def _require_admin(viewer: Viewer) -> None:
    if not viewer.role.is_elevated:
        raise HTTPException(status_code=403, detail="Administrator role required")


@dataclass(slots=True, frozen=True)
class ResultFilter:
    """Query parameters narrowing the result endpoints."""

    quiz_id: str | None = None
    score_band: str | None = None
    search: str | None = None

    def apply(self, results: list[Result], quiz_titles: dict[str, str]) -> list[Result]:
        return filter_results(
            results,
            quiz_id=self.quiz_id,
            score_band=self.score_band,
            search=self.search,
            quiz_titles=quiz_titles,
        )


def _result_filter(
    quiz_id: str | None = None,
    score_band: str | None = None,
    search: str | None = None,
) -> ResultFilter:
    return ResultFilter(quiz_id=quiz_id, score_band=score_band, search=search)


def _build_attempt_store(app_settings: Settings) -> AttemptStore:
    if app_settings.attempt_state_dir is None:
        return MemoryAttemptStore()
    return JsonFileAttemptStore(app_settings.attempt_state_dir)


def create_api_app(
    backend: QuizBackend | None = None,
    store: AttemptStore | None = None,
    *,
    app_settings: Settings = settings,
    clock: Clock = time.time,
) -> FastAPI:
    """Create a FastAPI application wired to the provided backend and attempt store."""
    backend = backend if backend is not None else InMemoryQuizBackend()
    store = store if store is not None else _build_attempt_store(app_settings)
    registry = ViewerRegistry(
        backend,
        store,
        clock=clock,
        tick_interval=app_settings.timer_tick_seconds,
    )
    scoreboard = Scoreboard(pass_threshold=app_settings.pass_threshold_percent)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if app_settings.seed_sample_quizzes:
            await seed_backend(backend)
        yield
        logger.info("Shutting down; closing mounted attempts and change-feed subscriptions")
        registry.close_all()

    app = FastAPI(
        title=f"{APP_NAME} API",
        version=APP_VERSION,
        description=APP_ABOUT_TEXT,
        license_info={"name": APP_LICENSE},
        lifespan=lifespan,
    )
    app.state.registry = registry

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PermissionError)
    async def permission_handler(request: Request, exc: PermissionError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(SubmissionError)
    async def submission_error_handler(request: Request, exc: SubmissionError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

    @app.exception_handler(StorageUnavailable)
    async def storage_error_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {"ok": True, "app": APP_NAME, "version": APP_VERSION}

    # --- Quizzes ---

    @app.get("/quizzes")
    async def list_quizzes(viewer: Viewer = Depends(_viewer_dependency)) -> list[dict[str, object]]:
        manager = await registry.manager_for(viewer)
        include_answers = viewer.role.is_elevated
        return [_quiz_payload(quiz, include_answers) for quiz in manager.quizzes]

    @app.get("/quizzes/{quiz_id}")
    async def get_quiz(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, object]:
        manager = await registry.manager_for(viewer)
        quiz = await manager.fetch_quiz(quiz_id)
        payload = _quiz_payload(quiz, viewer.role.is_elevated)
        payload["description_html"] = renderer.render_description(quiz.description)
        return payload

    @app.post("/quizzes", status_code=201)
    async def create_quiz(
        payload: QuizCreatePayload,
        viewer: Viewer = Depends(_viewer_dependency),
    ) -> dict[str, object]:
        manager = await registry.manager_for(viewer)
        quiz = await manager.create_quiz(_quiz_data(payload))
        return _quiz_payload(quiz, include_answers=True)

    @app.patch("/quizzes/{quiz_id}")
    async def update_quiz(
        quiz_id: str,
        payload: QuizUpdatePayload,
        viewer: Viewer = Depends(_viewer_dependency),
    ) -> dict[str, object]:
        manager = await registry.manager_for(viewer)
        quiz = await manager.update_quiz(quiz_id, _quiz_data(payload))
        return _quiz_payload(quiz, include_answers=True)

    @app.post("/quizzes/{quiz_id}/publish")
    async def publish_quiz(
        quiz_id: str,
        payload: PublishPayload,
        viewer: Viewer = Depends(_viewer_dependency),
    ) -> dict[str, object]:
        manager = await registry.manager_for(viewer)
        quiz = await manager.set_published(quiz_id, payload.is_published)
        return _quiz_payload(quiz, include_answers=True)

    @app.delete("/quizzes/{quiz_id}", status_code=204)
    async def delete_quiz(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> Response:
        manager = await registry.manager_for(viewer)
        await manager.delete_quiz(quiz_id)
        return Response(status_code=204)

    # --- Attempts ---

    def _mounted_attempt(viewer: Viewer, quiz_id: str) -> AttemptSession:
        session = registry.get_attempt(viewer, quiz_id)
        if session is None or session.is_closed:
            raise HTTPException(status_code=404, detail="No attempt in progress for this quiz")
        return session

    @app.post("/quizzes/{quiz_id}/attempt")
    async def open_attempt(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, object]:
        manager = await registry.manager_for(viewer)
        quiz = await manager.fetch_quiz(quiz_id)
        session = await registry.open_attempt(viewer, quiz)
        return _attempt_payload(session)

    @app.get("/quizzes/{quiz_id}/attempt")
    async def get_attempt(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, object]:
        session = _mounted_attempt(viewer, quiz_id)
        await session.tick()
        return _attempt_payload(session)

    @app.post("/quizzes/{quiz_id}/attempt/answer")
    async def answer_question(
        quiz_id: str,
        payload: AnswerPayload,
        viewer: Viewer = Depends(_viewer_dependency),
    ) -> dict[str, object]:
        session = _mounted_attempt(viewer, quiz_id)
        try:
            await session.select_answer(payload.question_index, payload.option_index)
        except IndexError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return _attempt_payload(session)

    @app.post("/quizzes/{quiz_id}/attempt/advance")
    async def advance_question(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, object]:
        session = _mounted_attempt(viewer, quiz_id)
        await session.advance()
        return _attempt_payload(session)

    @app.post("/quizzes/{quiz_id}/attempt/finish")
    async def finish_attempt(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, object]:
        session = _mounted_attempt(viewer, quiz_id)
        await session.finish()
        return _attempt_payload(session)

    @app.post("/quizzes/{quiz_id}/attempt/restart")
    async def restart_attempt(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, object]:
        session = _mounted_attempt(viewer, quiz_id)
        try:
            await session.restart()
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _attempt_payload(session)

    @app.delete("/quizzes/{quiz_id}/attempt", status_code=204)
    async def close_attempt(quiz_id: str, viewer: Viewer = Depends(_viewer_dependency)) -> Response:
        registry.close_attempt(viewer, quiz_id)
        return Response(status_code=204)

    # --- Results ---

    async def _selected_results(viewer: Viewer, selection: ResultFilter) -> tuple[list[Result], dict[str, str]]:
        manager = await registry.manager_for(viewer)
        titles = {quiz.id: quiz.title for quiz in manager.quizzes}
        return selection.apply(manager.results, titles), titles

    @app.post("/refresh")
    async def refresh(viewer: Viewer = Depends(_viewer_dependency)) -> dict[str, int]:
        """Refetch quizzes and results, for when a change notification was missed."""
        manager = await registry.manager_for(viewer)
        await manager.refresh_quizzes()
        await manager.refresh_results()
        logger.info("Refreshed quizzes and results for %s", viewer.user_id)
        return {"quizzes": len(manager.quizzes), "results": len(manager.results)}

    @app.get("/results")
    async def list_results(
        viewer: Viewer = Depends(_viewer_dependency),
        selection: ResultFilter = Depends(_result_filter),
    ) -> list[dict[str, object]]:
        results, _ = await _selected_results(viewer, selection)
        return [_result_payload(result) for result in results]

    @app.get("/results/summary")
    async def results_summary(
        viewer: Viewer = Depends(_viewer_dependency),
        selection: ResultFilter = Depends(_result_filter),
    ) -> dict[str, object]:
        results, titles = await _selected_results(viewer, selection)
        summary = scoreboard.summarize(results, titles)
        return {
            "attempts": summary.attempts,
            "average_percent": summary.average_percent,
            "average_time": summary.average_time,
            "unique_users": summary.unique_users,
            "pass_rate": summary.pass_rate,
            "most_attempted_quiz_id": summary.most_attempted_quiz_id,
            "most_attempted_quiz_title": summary.most_attempted_quiz_title,
            "distribution": scoreboard.score_distribution(results),
        }

    @app.get("/results/by-user")
    async def results_by_user(
        viewer: Viewer = Depends(_viewer_dependency),
        selection: ResultFilter = Depends(_result_filter),
    ) -> list[dict[str, object]]:
        _require_admin(viewer)
        results, _ = await _selected_results(viewer, selection)
        return [
            {
                "user_id": row.user_id,
                "attempts": row.attempts,
                "average_percent": row.average_percent,
                "best_percent": row.best_percent,
                "passed_attempts": row.passed_attempts,
                "pass_rate": row.pass_rate,
                "total_time": row.total_time,
                "last_completed": row.last_completed.isoformat() if row.last_completed else None,
            }
            for row in scoreboard.user_aggregates(results)
        ]

    @app.get("/results/by-quiz")
    async def results_by_quiz(
        viewer: Viewer = Depends(_viewer_dependency),
        selection: ResultFilter = Depends(_result_filter),
    ) -> list[dict[str, object]]:
        _require_admin(viewer)
        results, titles = await _selected_results(viewer, selection)
        return [
            {
                "quiz_id": row.quiz_id,
                "quiz_title": row.quiz_title,
                "attempts": row.attempts,
                "unique_users": row.unique_users,
                "average_percent": row.average_percent,
                "highest_percent": row.highest_percent,
                "lowest_percent": row.lowest_percent,
                "median_percent": row.median_percent,
                "pass_rate": row.pass_rate,
                "distribution": row.distribution,
            }
            for row in scoreboard.quiz_breakdown(results, titles)
        ]

    @app.get("/results/export.csv")
    async def export_results(
        viewer: Viewer = Depends(_viewer_dependency),
        selection: ResultFilter = Depends(_result_filter),
    ) -> Response:
        _require_admin(viewer)
        results, titles = await _selected_results(viewer, selection)
        document = results_to_csv(results, titles)
        return Response(
            content=document,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="quiz_results.csv"'},
        )

    return app


def run_api_server(app: FastAPI, host: str, port: int, log_level: str = "info") -> None:
    """Serve the FastAPI application with uvicorn until interrupted."""
    config = uvicorn.Config(app=app, host=host, port=port, log_level=log_level)
    server = uvicorn.Server(config)
    server.run()
