"""Loaders for transcripts and the milestone library."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from pcit_pipeline.schemas import MilestoneDefinition, TranscriptSegment


class InputFileError(ValueError):
    """Raised when an input file fails schema or integrity checks."""


def load_json(path: str | Path) -> Any:
    """Read a JSON document, or None when the file does not exist."""

    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open(encoding="utf-8") as handle:
        return json.load(handle)


def load_transcript_json(path: str | Path) -> list[TranscriptSegment]:
    """Load a diarized transcript.

    Accepts either a JSON list of `{speaker, text, start, end}` objects or an
    object with an `utterances` list in that shape.
    """

    file_path = Path(path)
    if not file_path.exists():
        raise InputFileError(f"Transcript file does not exist: {file_path}")

    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InputFileError(f"Invalid JSON in {file_path}: {exc.msg}") from exc

    if isinstance(payload, dict):
        payload = payload.get("utterances")
    if not isinstance(payload, list):
        raise InputFileError(
            f"Expected a list of utterances in {file_path}, got {type(payload).__name__}."
        )

    segments: list[TranscriptSegment] = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise InputFileError(f"Utterance {index} in {file_path} is not an object.")
        try:
            segments.append(
                TranscriptSegment.model_validate(
                    {
                        "speaker": str(item.get("speaker", "")),
                        "text": item.get("text", ""),
                        "start": item.get("start", 0.0),
                        "end": item.get("end", item.get("start", 0.0)),
                    }
                )
            )
        except Exception as exc:
            raise InputFileError(f"Utterance {index} in {file_path} is invalid: {exc}") from exc
    return segments


def load_milestone_library(path: str | Path) -> list[MilestoneDefinition]:
    """Load milestone definitions from a YAML file with a top-level `milestones` list."""

    file_path = Path(path)
    if not file_path.exists():
        raise InputFileError(f"Milestone library does not exist: {file_path}")

    with file_path.open(encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}

    items = payload.get("milestones") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise InputFileError(f"Milestone library {file_path} has no 'milestones' list.")

    definitions: list[MilestoneDefinition] = []
    seen_keys: set[str] = set()
    for item in items:
        try:
            definition = MilestoneDefinition.model_validate(item)
        except Exception as exc:
            raise InputFileError(f"Invalid milestone entry in {file_path}: {exc}") from exc
        if definition.key in seen_keys:
            raise InputFileError(f"Duplicate milestone key '{definition.key}' in {file_path}.")
        seen_keys.add(definition.key)
        definitions.append(definition)
    return definitions
