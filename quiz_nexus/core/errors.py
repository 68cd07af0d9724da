"""Exception types raised by the quiz core and its collaborators."""

from __future__ import annotations


class QuizNexusError(Exception):
    """Base class for errors surfaced to the controller layer."""


class ValidationError(QuizNexusError):
    """Required fields are missing or malformed; nothing was committed."""


class NotFoundError(QuizNexusError):
    """The referenced quiz or result no longer exists."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class SubmissionError(QuizNexusError):
    """Submitting a result failed. The attempt stays intact and can be retried."""


class StorageUnavailable(QuizNexusError):
    """Durable local attempt state could not be read or written."""
