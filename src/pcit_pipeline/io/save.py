"""Atomic file writes and locking for the JSON session store."""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def ensure_directory(path: str | Path) -> Path:
    """Create a directory if it does not exist and return it."""

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _fsync_directory(path: Path) -> None:
    """Best-effort fsync for a directory."""

    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        logger.debug("fsync: unable to open directory %s", path)
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("fsync: sync failed for directory %s", path)
    finally:
        os.close(fd)


def atomic_write_text(path: str | Path, content: str) -> Path:
    """Replace file contents via temp-write + rename so readers never see a partial file."""

    file_path = Path(path)
    ensure_directory(file_path.parent)
    temp_path = file_path.parent / f".{file_path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, file_path)
        _fsync_directory(file_path.parent)
    finally:
        if temp_path.exists():
            with suppress(OSError):
                temp_path.unlink()
    return file_path


def _to_jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, list):
        return [_to_jsonable(item) for item in payload]
    return payload


def save_json(path: str | Path, payload: dict[str, Any] | list[Any] | BaseModel) -> Path:
    """Save a JSON document to disk atomically."""

    content = json.dumps(_to_jsonable(payload), ensure_ascii=True, indent=2) + "\n"
    return atomic_write_text(path, content)


class FileLockError(RuntimeError):
    """Raised when a lock file cannot be acquired in time."""


def _load_lock_payload(lock_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


@contextmanager
def file_lock(
    lock_path: str | Path,
    *,
    timeout_seconds: float = 10.0,
    poll_seconds: float = 0.05,
) -> Iterator[Path]:
    """Hold an exclusive lock file (O_CREAT | O_EXCL) for the duration of the block."""

    path = Path(lock_path)
    ensure_directory(path.parent)
    payload = {
        "pid": os.getpid(),
        "acquired_at_utc": datetime.now(UTC).isoformat(),
    }
    deadline = time.monotonic() + timeout_seconds

    while True:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            break
        except FileExistsError as exc:
            if time.monotonic() >= deadline:
                existing = _load_lock_payload(path)
                raise FileLockError(
                    f"Lock is held: {path}. "
                    f"Owner pid: {existing.get('pid')!r}. "
                    f"Acquired at: {existing.get('acquired_at_utc')!r}. "
                    "If this is stale, remove the lock file manually."
                ) from exc
            time.sleep(poll_seconds)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=True) + "\n")
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove lock file: %s", path, exc_info=True)
