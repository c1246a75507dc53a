"""Session and utterance persistence."""

from pcit_pipeline.store.base import (
    IMMUTABLE_SESSION_FIELDS,
    SessionNotFoundError,
    SessionRepository,
    StatusTransitionError,
)
from pcit_pipeline.store.files import JsonFileSessionRepository
from pcit_pipeline.store.memory import InMemorySessionRepository

__all__ = [
    "IMMUTABLE_SESSION_FIELDS",
    "InMemorySessionRepository",
    "JsonFileSessionRepository",
    "SessionNotFoundError",
    "SessionRepository",
    "StatusTransitionError",
]
