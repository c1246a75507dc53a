"""JSON-file session repository for local runs."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from pcit_pipeline.io import ensure_directory, file_lock, load_json, save_json
from pcit_pipeline.schemas import (
    ChildInfo,
    ChildMilestone,
    ChildProfilingRecord,
    MilestoneDefinition,
    Session,
    Utterance,
)
from pcit_pipeline.store.memory import InMemorySessionRepository, _utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JsonFileSessionRepository(InMemorySessionRepository):
    """Repository persisted as one JSON document per session and per child.

    Layout under `data_dir`:
    - `sessions/<session_id>.json`: `{"session": ..., "utterances": [...]}`
    - `children/<child_id>.json`: `{"child": ..., "milestones": [...], "profilings": [...]}`
    - `locks/<session_id>.lock`: held while a session document is read and rewritten

    Every write replaces the whole document atomically (temp file + rename).
    """

    def __init__(
        self,
        data_dir: str | Path,
        *,
        milestone_library: list[MilestoneDefinition] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        super().__init__(milestone_library=milestone_library, clock=clock)
        self._data_dir = Path(data_dir)
        self._sessions_dir = ensure_directory(self._data_dir / "sessions")
        self._children_dir = ensure_directory(self._data_dir / "children")
        self._locks_dir = ensure_directory(self._data_dir / "locks")
        self._load_all()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _session_path(self, session_id: str) -> Path:
        return self._sessions_dir / f"{session_id}.json"

    def _child_path(self, child_id: str) -> Path:
        return self._children_dir / f"{child_id}.json"

    def _load_session_file(self, path: Path) -> None:
        payload = load_json(path)
        if not isinstance(payload, dict) or "session" not in payload:
            logger.warning("Skipping malformed session file: %s", path)
            return
        session = Session.model_validate(payload["session"])
        self._sessions[session.session_id] = session
        self._utterances[session.session_id] = [
            Utterance.model_validate(item) for item in payload.get("utterances", [])
        ]

    def _load_child_file(self, path: Path) -> None:
        payload = load_json(path)
        if not isinstance(payload, dict):
            logger.warning("Skipping malformed child file: %s", path)
            return
        child_id = path.stem
        if payload.get("child"):
            self._children[child_id] = ChildInfo.model_validate(payload["child"])
        self._child_milestones[child_id] = {
            item.milestone_key: item
            for item in (ChildMilestone.model_validate(row) for row in payload.get("milestones", []))
        }
        self._profilings[child_id] = {
            item.session_id: item
            for item in (
                ChildProfilingRecord.model_validate(row) for row in payload.get("profilings", [])
            )
        }

    def _load_all(self) -> None:
        for path in sorted(self._sessions_dir.glob("*.json")):
            try:
                self._load_session_file(path)
            except (OSError, json.JSONDecodeError, ValueError):
                logger.warning("Failed to load session file %s", path, exc_info=True)
        for path in sorted(self._children_dir.glob("*.json")):
            try:
                self._load_child_file(path)
            except (OSError, json.JSONDecodeError, ValueError):
                logger.warning("Failed to load child file %s", path, exc_info=True)

    def _session_document(self, session_id: str) -> dict:
        return {
            "session": self._sessions[session_id].model_dump(mode="json"),
            "utterances": [
                utterance.model_dump(mode="json")
                for utterance in self._utterances.get(session_id, [])
            ],
        }

    def _child_document(self, child_id: str) -> dict:
        child = self._children.get(child_id)
        return {
            "child": child.model_dump(mode="json") if child else None,
            "milestones": [
                item.model_dump(mode="json")
                for item in self._child_milestones.get(child_id, {}).values()
            ],
            "profilings": [
                item.model_dump(mode="json")
                for item in self._profilings.get(child_id, {}).values()
            ],
        }

    async def _persist_child(self, child_id: str) -> None:
        document = self._child_document(child_id)
        await asyncio.to_thread(save_json, self._child_path(child_id), document)

    def _reload_session(self, session_id: str) -> None:
        path = self._session_path(session_id)
        if path.exists():
            self._load_session_file(path)

    def _write_session_on_disk(self, session_id: str, mutate: Callable[[], T]) -> T:
        with file_lock(self._locks_dir / f"{session_id}.lock"):
            self._reload_session(session_id)
            result = mutate()
            save_json(self._session_path(session_id), self._session_document(session_id))
        return result

    async def _write_session(self, session_id: str, mutate: Callable[[], T]) -> T:
        """Reload the session document under a lock file shared across processes, then write.

        Status checks inside `mutate` see what other processes last wrote, so a
        session failed by a sweeper cannot be moved back by a slower run.
        """

        async with self._session_lock(session_id):
            return await asyncio.to_thread(self._write_session_on_disk, session_id, mutate)

    async def get_session(self, session_id: str) -> Session:
        async with self._session_lock(session_id):
            await asyncio.to_thread(self._reload_session, session_id)
        return await super().get_session(session_id)
