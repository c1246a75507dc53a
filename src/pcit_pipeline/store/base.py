"""Persistence collaborator interface consumed by the pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

from pcit_pipeline.schemas import (
    AnalysisStatus,
    ChildInfo,
    ChildMilestone,
    ChildProfilingRecord,
    MilestoneDefinition,
    Session,
    SpeakerRole,
    TranscriptSegment,
    Utterance,
)


class SessionNotFoundError(KeyError):
    """Raised when a session id is unknown to the repository."""


class StatusTransitionError(RuntimeError):
    """Raised when a status update would violate the session state machine."""


IMMUTABLE_SESSION_FIELDS = frozenset({"session_id", "mode", "status", "created_at"})


class SessionRepository(Protocol):
    """Async session/utterance store.

    Every batch update is applied atomically: readers observe either the state
    before the batch or after it, never a mix.
    """

    async def create_session(self, session: Session) -> Session:
        """Insert a new session record."""

    async def get_session(self, session_id: str) -> Session:
        """Return a copy of the session or raise `SessionNotFoundError`."""

    async def list_sessions(self, *, status: AnalysisStatus | None = None) -> list[Session]:
        """Return sessions, optionally filtered by status, oldest first."""

    async def list_child_sessions(
        self,
        child_id: str,
        *,
        exclude_session_id: str | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        """Return the child's completed sessions, newest first."""

    async def claim_session(self, session_id: str) -> bool:
        """Move PENDING to PROCESSING; return False if the session was not PENDING."""

    async def update_session_status(
        self,
        session_id: str,
        status: AnalysisStatus,
        **fields: Any,
    ) -> Session:
        """Apply a status transition plus field updates in one write."""

    async def update_session_fields(self, session_id: str, **fields: Any) -> Session:
        """Update non-status session fields."""

    async def create_utterances(
        self,
        session_id: str,
        segments: list[TranscriptSegment],
    ) -> list[Utterance]:
        """Replace the session's utterances; order index equals list position."""

    async def get_utterances(self, session_id: str) -> list[Utterance]:
        """Return utterances sorted by order index."""

    async def update_utterance_roles(
        self,
        session_id: str,
        roles: Mapping[str, SpeakerRole],
    ) -> int:
        """Set roles by speaker id in one batch; return the number of utterances touched."""

    async def update_utterance_tags(
        self,
        session_id: str,
        tags: Mapping[str, str],
        *,
        codes: Mapping[str, str] | None = None,
        feedback: Mapping[str, str] | None = None,
    ) -> int:
        """Set tags by utterance id in one batch; return the number of utterances touched."""

    async def update_utterance_feedback(
        self,
        session_id: str,
        revised_feedback: Mapping[str, str],
        *,
        additional_tips: Mapping[str, str] | None = None,
    ) -> int:
        """Store review-step feedback by utterance id in one batch."""

    async def get_child(self, child_id: str) -> ChildInfo | None:
        """Return child details, or None when unknown."""

    async def save_child(self, child: ChildInfo) -> ChildInfo:
        """Insert or replace child details."""

    async def get_milestone_library(self) -> list[MilestoneDefinition]:
        """Return the milestone library."""

    async def get_child_milestones(self, child_id: str) -> list[ChildMilestone]:
        """Return the child's milestone states."""

    async def upsert_child_milestones(
        self,
        child_id: str,
        milestones: list[ChildMilestone],
    ) -> None:
        """Insert or replace milestone states by milestone key."""

    async def save_child_profiling(self, record: ChildProfilingRecord) -> None:
        """Record one profiling result for a child (one per session)."""

    async def count_child_profilings(
        self,
        child_id: str,
        *,
        since: datetime | None = None,
    ) -> int:
        """Count stored profiling results, optionally at or after `since`."""
