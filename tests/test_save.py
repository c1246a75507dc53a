"""Tests for save/lock filesystem helpers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pcit_pipeline.io import FileLockError, atomic_write_text, file_lock, save_json
from pcit_pipeline.schemas import TranscriptSegment


def test_save_json_overwrites_atomically(tmp_path: Path):
    json_path = tmp_path / "nested" / "record.json"
    save_json(json_path, {"value": 1})
    assert json.loads(json_path.read_text(encoding="utf-8"))["value"] == 1

    save_json(json_path, {"value": 2})
    assert json.loads(json_path.read_text(encoding="utf-8"))["value"] == 2
    assert [path.name for path in json_path.parent.iterdir()] == ["record.json"]


def test_save_json_accepts_models(tmp_path: Path):
    path = tmp_path / "segment.json"
    save_json(path, TranscriptSegment(speaker="speaker_0", text="Hi", start=0.0, end=1.0))
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["speaker"] == "speaker_0"


def test_atomic_write_text(tmp_path: Path):
    path = atomic_write_text(tmp_path / "note.txt", "hello")
    assert path.read_text(encoding="utf-8") == "hello"


def test_file_lock_prevents_double_acquire(tmp_path: Path):
    lock_path = tmp_path / "locks" / "session.lock"

    with file_lock(lock_path), pytest.raises(FileLockError):
        with file_lock(lock_path, timeout_seconds=0.05, poll_seconds=0.01):
            pass

    assert not lock_path.exists()
    with file_lock(lock_path):
        assert lock_path.exists()
