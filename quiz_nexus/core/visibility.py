"""Row visibility rules shared by every fetch, feed, and local-write path."""

from __future__ import annotations

from typing import Callable, TypeVar

from quiz_nexus.core.models import Quiz, Result, ViewerRole

T = TypeVar("T")

VisibilityPolicy = Callable[[T], bool]


def quiz_visibility(role: ViewerRole) -> VisibilityPolicy[Quiz]:
    """Admins see every quiz; everyone else only sees published ones."""
    if role.is_elevated:
        return lambda quiz: True
    return lambda quiz: quiz.is_published


def result_visibility(role: ViewerRole, user_id: str) -> VisibilityPolicy[Result]:
    """Admins see all results; users only see their own."""
    if role.is_elevated:
        return lambda result: True
    return lambda result: result.user_id == user_id
