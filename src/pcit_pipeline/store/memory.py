"""In-memory session repository."""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

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
    can_transition,
)
from pcit_pipeline.store.base import (
    IMMUTABLE_SESSION_FIELDS,
    SessionNotFoundError,
    StatusTransitionError,
)

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InMemorySessionRepository:
    """Repository backed by process memory.

    Mutations take a per-session `asyncio.Lock` and swap in a fully built
    replacement, so concurrent readers never see a half-applied batch.
    """

    def __init__(
        self,
        *,
        milestone_library: list[MilestoneDefinition] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._utterances: dict[str, list[Utterance]] = {}
        self._children: dict[str, ChildInfo] = {}
        self._child_milestones: dict[str, dict[str, ChildMilestone]] = defaultdict(dict)
        self._profilings: dict[str, dict[str, ChildProfilingRecord]] = defaultdict(dict)
        self._milestone_library = list(milestone_library or [])
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._child_locks: dict[str, asyncio.Lock] = {}

    def now(self) -> datetime:
        return self._clock()

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    def _child_lock(self, child_id: str) -> asyncio.Lock:
        return self._child_locks.setdefault(child_id, asyncio.Lock())

    def _require_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session


    async def _persist_session(self, session_id: str) -> None:
        """Hook for durable subclasses; called after every session/utterance write."""

    async def _persist_child(self, child_id: str) -> None:
        """Hook for durable subclasses; called after every child-scoped write."""

    async def _write_session(self, session_id: str, mutate: Callable[[], T]) -> T:
        """Run `mutate` under the session lock, then persist the session document."""

        async with self._session_lock(session_id):
            result = mutate()
            await self._persist_session(session_id)
        return result

    # Sessions

    async def create_session(self, session: Session) -> Session:
        def _create() -> None:
            if session.session_id in self._sessions:
                raise ValueError(f"Session '{session.session_id}' already exists.")
            self._sessions[session.session_id] = session.model_copy(deep=True)
            self._utterances.setdefault(session.session_id, [])

        await self._write_session(session.session_id, _create)
        return session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Session:
        return self._require_session(session_id).model_copy(deep=True)

    async def list_sessions(self, *, status: AnalysisStatus | None = None) -> list[Session]:
        sessions = [
            session
            for session in self._sessions.values()
            if status is None or session.status == status
        ]
        sessions.sort(key=lambda session: session.created_at)
        return [session.model_copy(deep=True) for session in sessions]

    async def list_child_sessions(
        self,
        child_id: str,
        *,
        exclude_session_id: str | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        sessions = [
            session
            for session in self._sessions.values()
            if session.child_id == child_id
            and session.status == AnalysisStatus.COMPLETED
            and session.session_id != exclude_session_id
        ]
        sessions.sort(key=lambda session: session.created_at, reverse=True)
        if limit is not None:
            sessions = sessions[: max(0, limit)]
        return [session.model_copy(deep=True) for session in sessions]

    async def claim_session(self, session_id: str) -> bool:
        def _claim() -> bool:
            session = self._require_session(session_id)
            if session.status != AnalysisStatus.PENDING:
                return False
            now = self._clock()
            self._sessions[session_id] = session.model_copy(
                update={
                    "status": AnalysisStatus.PROCESSING,
                    "processing_started_at": now,
                    "updated_at": now,
                }
            )
            return True

        return await self._write_session(session_id, _claim)

    async def update_session_status(
        self,
        session_id: str,
        status: AnalysisStatus,
        **fields: Any,
    ) -> Session:
        blocked = IMMUTABLE_SESSION_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"Fields cannot be updated: {sorted(blocked)}.")

        def _transition() -> Session:
            session = self._require_session(session_id)
            if not can_transition(session.status, status):
                raise StatusTransitionError(
                    f"Session '{session_id}' cannot move from {session.status} to {status}."
                )
            updated = Session.model_validate(
                {
                    **session.model_dump(),
                    **fields,
                    "status": status,
                    "updated_at": self._clock(),
                }
            )
            self._sessions[session_id] = updated
            return updated

        updated = await self._write_session(session_id, _transition)
        return updated.model_copy(deep=True)

    async def update_session_fields(self, session_id: str, **fields: Any) -> Session:
        blocked = IMMUTABLE_SESSION_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"Fields cannot be updated: {sorted(blocked)}.")

        def _update() -> Session:
            session = self._require_session(session_id)
            updated = Session.model_validate(
                {**session.model_dump(), **fields, "updated_at": self._clock()}
            )
            self._sessions[session_id] = updated
            return updated

        updated = await self._write_session(session_id, _update)
        return updated.model_copy(deep=True)

    # Utterances

    async def create_utterances(
        self,
        session_id: str,
        segments: list[TranscriptSegment],
    ) -> list[Utterance]:
        def _create() -> list[Utterance]:
            self._require_session(session_id)
            utterances = [
                Utterance(
                    utterance_id=f"u{order:04d}_{uuid.uuid4().hex[:8]}",
                    session_id=session_id,
                    order=order,
                    speaker=segment.speaker,
                    text=segment.text,
                    start=segment.start,
                    end=segment.end,
                )
                for order, segment in enumerate(segments)
            ]
            self._utterances[session_id] = utterances
            return utterances

        utterances = await self._write_session(session_id, _create)
        return [utterance.model_copy() for utterance in utterances]

    async def get_utterances(self, session_id: str) -> list[Utterance]:
        self._require_session(session_id)
        utterances = sorted(self._utterances.get(session_id, []), key=lambda item: item.order)
        return [utterance.model_copy() for utterance in utterances]

    async def _apply_utterance_updates(
        self,
        session_id: str,
        build_update: Callable[[Utterance], dict[str, Any] | None],
    ) -> int:
        def _apply() -> int:
            self._require_session(session_id)
            touched = 0
            replacement: list[Utterance] = []
            for utterance in self._utterances.get(session_id, []):
                update = build_update(utterance)
                if update:
                    touched += 1
                    replacement.append(utterance.model_copy(update=update))
                else:
                    replacement.append(utterance)
            self._utterances[session_id] = replacement
            return touched

        return await self._write_session(session_id, _apply)

    async def update_utterance_roles(
        self,
        session_id: str,
        roles: Mapping[str, SpeakerRole],
    ) -> int:
        def _update(utterance: Utterance) -> dict[str, Any] | None:
            role = roles.get(utterance.speaker)
            return {"role": SpeakerRole(role)} if role is not None else None

        return await self._apply_utterance_updates(session_id, _update)

    async def update_utterance_tags(
        self,
        session_id: str,
        tags: Mapping[str, str],
        *,
        codes: Mapping[str, str] | None = None,
        feedback: Mapping[str, str] | None = None,
    ) -> int:
        codes = codes or {}
        feedback = feedback or {}

        def _update(utterance: Utterance) -> dict[str, Any] | None:
            tag = tags.get(utterance.utterance_id)
            if tag is None:
                return None
            return {
                "tag": tag,
                "code": codes.get(utterance.utterance_id),
                "feedback": feedback.get(utterance.utterance_id),
            }

        return await self._apply_utterance_updates(session_id, _update)

    async def update_utterance_feedback(
        self,
        session_id: str,
        revised_feedback: Mapping[str, str],
        *,
        additional_tips: Mapping[str, str] | None = None,
    ) -> int:
        additional_tips = additional_tips or {}

        def _update(utterance: Utterance) -> dict[str, Any] | None:
            key = utterance.utterance_id
            if key not in revised_feedback and key not in additional_tips:
                return None
            return {
                "revised_feedback": revised_feedback.get(key, utterance.revised_feedback),
                "additional_tip": additional_tips.get(key, utterance.additional_tip),
            }

        return await self._apply_utterance_updates(session_id, _update)

    # Children and milestones

    async def get_child(self, child_id: str) -> ChildInfo | None:
        child = self._children.get(child_id)
        return child.model_copy() if child else None

    async def save_child(self, child: ChildInfo) -> ChildInfo:
        async with self._child_lock(child.child_id):
            self._children[child.child_id] = child.model_copy()
            await self._persist_child(child.child_id)
        return child.model_copy()

    async def get_milestone_library(self) -> list[MilestoneDefinition]:
        return [definition.model_copy() for definition in self._milestone_library]

    async def get_child_milestones(self, child_id: str) -> list[ChildMilestone]:
        return [item.model_copy() for item in self._child_milestones.get(child_id, {}).values()]

    async def upsert_child_milestones(
        self,
        child_id: str,
        milestones: list[ChildMilestone],
    ) -> None:
        async with self._child_lock(child_id):
            current = dict(self._child_milestones.get(child_id, {}))
            for milestone in milestones:
                current[milestone.milestone_key] = milestone.model_copy()
            self._child_milestones[child_id] = current
            await self._persist_child(child_id)

    async def save_child_profiling(self, record: ChildProfilingRecord) -> None:
        async with self._child_lock(record.child_id):
            self._profilings[record.child_id][record.session_id] = record.model_copy(deep=True)
            await self._persist_child(record.child_id)

    async def count_child_profilings(
        self,
        child_id: str,
        *,
        since: datetime | None = None,
    ) -> int:
        records = self._profilings.get(child_id, {}).values()
        return sum(1 for record in records if since is None or record.created_at >= since)
