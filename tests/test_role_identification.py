"""Tests for the role identification stage."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime

import pytest

from pcit_pipeline.errors import ConsistencyError, ParseError
from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.pipeline.role_identification import NoAdultSpeakerError, identify_roles
from pcit_pipeline.schemas import Session, SessionMode, SpeakerRole, TranscriptSegment
from pcit_pipeline.store import InMemorySessionRepository

NOW = datetime(2025, 3, 1, tzinfo=UTC)


class _FakeJsonBackend:
    provider_name = "fake"

    def __init__(self, payload):
        self.payload = payload
        self.user_prompts: list[str] = []

    async def complete(self, *, user_prompt: str, **kwargs) -> str:
        self.user_prompts.append(user_prompt)
        return self.payload if isinstance(self.payload, str) else json.dumps(self.payload)


def _speaker(role: str, confidence: float = 0.95) -> dict:
    return {"role": role, "confidence": confidence, "utterance_count": 1, "reasoning": "style"}


def _identify(payload, threshold: float = 0.70):
    backend = _FakeJsonBackend(payload)

    async def _run():
        repo = InMemorySessionRepository(clock=lambda: NOW)
        await repo.create_session(
            Session(session_id="s1", mode=SessionMode.CDI, created_at=NOW, updated_at=NOW)
        )
        await repo.create_utterances(
            "s1",
            [
                TranscriptSegment(speaker="speaker_0", text="What are you making?", start=0, end=1),
                TranscriptSegment(speaker="speaker_1", text="A rocket!", start=1, end=2),
                TranscriptSegment(speaker="speaker_2", text="Wow, a rocket.", start=2, end=3),
                TranscriptSegment(speaker="speaker_0", text="It's big.", start=3, end=4),
            ],
        )
        identification = await identify_roles(
            session_id="s1",
            repository=repo,
            gateway=ProviderGateway(backend),
            confidence_threshold=threshold,
        )
        return identification, await repo.get_utterances("s1"), await repo.get_session("s1")

    return backend, asyncio.run(_run())


def test_every_speaker_is_classified_and_written():
    payload = {
        "speaker_identification": {
            "speaker_0": _speaker("ADULT"),
            "speaker_1": _speaker("CHILD"),
            "speaker_2": _speaker("PARENT", 0.8),
        }
    }
    backend, (identification, utterances, session) = _identify(payload)

    assert "speaker_ids: speaker_0, speaker_1, speaker_2" in backend.user_prompts[0]
    assert identification.adult_speaker_ids() == ["speaker_0", "speaker_2"]
    assert identification.speakers["speaker_0"].utterance_count == 2
    assert [item.role for item in utterances] == [
        SpeakerRole.ADULT,
        SpeakerRole.CHILD,
        SpeakerRole.ADULT,
        SpeakerRole.ADULT,
    ]
    assert session.role_identification == identification


def test_low_confidence_is_marked_ambiguous(caplog):
    payload = {
        "speaker_identification": {
            "speaker_0": _speaker("ADULT", 0.55),
            "speaker_1": _speaker("CHILD"),
            "speaker_2": _speaker("ADULT"),
        }
    }
    with caplog.at_level(logging.WARNING):
        _, (identification, _, _) = _identify(payload)

    assert identification.speakers["speaker_0"].ambiguous is True
    assert identification.speakers["speaker_2"].ambiguous is False
    assert "low confidence" in caplog.text


def test_missing_speaker_is_inconsistent():
    payload = {
        "speaker_identification": {
            "speaker_0": _speaker("ADULT"),
            "speaker_1": _speaker("CHILD"),
        }
    }
    with pytest.raises(ConsistencyError, match="omitted"):
        _identify(payload)


def test_unknown_speaker_is_inconsistent():
    payload = {
        "speaker_identification": {
            "speaker_0": _speaker("ADULT"),
            "speaker_1": _speaker("CHILD"),
            "speaker_2": _speaker("CHILD"),
            "speaker_9": _speaker("CHILD"),
        }
    }
    with pytest.raises(ConsistencyError, match="unknown speaker"):
        _identify(payload)


def test_unknown_role_is_inconsistent():
    payload = {
        "speaker_identification": {
            "speaker_0": _speaker("ADULT"),
            "speaker_1": _speaker("TEACHER"),
            "speaker_2": _speaker("CHILD"),
        }
    }
    with pytest.raises(ConsistencyError, match="unknown role"):
        _identify(payload)


def test_zero_adults_is_fatal():
    payload = {
        "speaker_identification": {
            "speaker_0": _speaker("CHILD"),
            "speaker_1": _speaker("CHILD"),
            "speaker_2": _speaker("CHILD"),
        }
    }
    with pytest.raises(NoAdultSpeakerError):
        _identify(payload)


def test_malformed_output_is_parse_error():
    with pytest.raises(ParseError):
        _identify("I think speaker_0 is the parent.")
