"""Tests for the behavior coding stage."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import pytest

from pcit_pipeline.errors import ConsistencyError, ParseError
from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.pipeline.behavior_coding import (
    _CodingPayload,
    apply_coding_payload,
    code_behaviors,
)
from pcit_pipeline.schemas import Session, SessionMode, SpeakerRole, TranscriptSegment, Utterance
from pcit_pipeline.store import InMemorySessionRepository
from pcit_pipeline.taxonomy import CDI_SCHEMA, PDI_SCHEMA

NOW = datetime(2025, 3, 1, tzinfo=UTC)

CODES_BY_TEXT = {
    "You said red.": ["RF", "DC"],
    "Great job stacking!": ["LP"],
    "Put it here.": ["DC"],
    "What is that?": ["Q"],
    "Okay.": ["AK"],
}


def _requested_ids(user_prompt: str) -> list[str]:
    return json.loads(user_prompt.rsplit("\n", 2)[-2])


def _rows(user_prompt: str) -> dict[str, str]:
    block = user_prompt.split("Transcript:\n", 1)[1].split("\n\nRequested ids", 1)[0]
    return {row["id"]: row["text"] for row in json.loads(block)}


class _CodingBackend:
    """Answers coding requests from CODES_BY_TEXT, optionally misbehaving per round."""

    provider_name = "fake"

    def __init__(
        self,
        *,
        drop_first: int = 0,
        unknown_id_once: bool = False,
        always_drop: bool = False,
        invalid_json_once: bool = False,
        delay: float = 0.0,
    ):
        self.drop_first = drop_first
        self.unknown_id_once = unknown_id_once
        self.always_drop = always_drop
        self.invalid_json_once = invalid_json_once
        self.delay = delay
        self.requests: list[list[str]] = []
        self.answered = 0

    async def complete(self, *, user_prompt: str, **kwargs) -> str:
        ids = _requested_ids(user_prompt)
        texts = _rows(user_prompt)
        self.requests.append(ids)
        if self.invalid_json_once:
            self.invalid_json_once = False
            return "{\"codes\": [truncated"
        if self.delay:
            await asyncio.sleep(self.delay)
        self.answered += 1
        items = [
            {"id": utterance_id, "codes": CODES_BY_TEXT[texts[utterance_id]], "feedback": "ok"}
            for utterance_id in ids
        ]
        if self.always_drop:
            items = items[1:]
        elif self.drop_first:
            self.drop_first -= 1
            items = items[1:]
        if self.unknown_id_once:
            self.unknown_id_once = False
            items.append({"id": "u9999_invented", "codes": ["DC"]})
        return json.dumps({"codes": items})


def _code(
    backend: _CodingBackend,
    *,
    batch_size: int = 40,
    max_rounds: int = 3,
    still_running: list | None = None,
):
    async def _run():
        repo = InMemorySessionRepository(clock=lambda: NOW)
        await repo.create_session(
            Session(session_id="s1", mode=SessionMode.CDI, created_at=NOW, updated_at=NOW)
        )
        segments = [
            TranscriptSegment(speaker="p", text="You said red.", start=0, end=1),
            TranscriptSegment(speaker="c", text="Red!", start=1, end=2),
            TranscriptSegment(speaker="p", text="Great job stacking!", start=2, end=3),
            TranscriptSegment(speaker="p", text="Put it here.", start=3, end=4),
            TranscriptSegment(speaker="p", text="What is that?", start=4, end=5),
            TranscriptSegment(speaker="p", text="Okay.", start=5, end=6),
        ]
        await repo.create_utterances("s1", segments)
        await repo.update_utterance_roles("s1", {"p": SpeakerRole.ADULT, "c": SpeakerRole.CHILD})
        assignments = await code_behaviors(
            session_id="s1",
            mode=SessionMode.CDI,
            repository=repo,
            gateway=ProviderGateway(backend),
            batch_size=batch_size,
            max_rounds=max_rounds,
        )
        if still_running is not None:
            current = asyncio.current_task()
            still_running.extend(task for task in asyncio.all_tasks() if task is not current)
        return assignments, await repo.get_utterances("s1")

    return asyncio.run(_run())


def test_every_adult_utterance_gets_one_tag():
    backend = _CodingBackend()
    assignments, utterances = _code(backend)

    assert len(assignments) == 5
    by_text = {item.text: item for item in utterances}
    assert by_text["You said red."].tag == "echo"
    assert by_text["You said red."].code == "RF"
    assert by_text["Great job stacking!"].tag == "labeled_praise"
    assert by_text["Put it here."].tag == "direct_command"
    assert by_text["What is that?"].tag == "question"
    assert by_text["Okay."].tag == "neutral"
    assert by_text["Red!"].tag is None
    assert by_text["Okay."].feedback == "ok"


def test_batches_are_sent_concurrently_by_size():
    backend = _CodingBackend()
    _code(backend, batch_size=2)
    assert sorted(len(ids) for ids in backend.requests) == [1, 2, 2]


def test_omitted_ids_are_re_requested():
    backend = _CodingBackend(drop_first=1)
    assignments, _ = _code(backend)
    assert len(assignments) == 5
    assert len(backend.requests) == 2
    assert len(backend.requests[1]) == 1


def test_still_untagged_after_rounds_fails():
    with pytest.raises(ConsistencyError, match="untagged"):
        _code(_CodingBackend(always_drop=True), max_rounds=2)


def test_unknown_ids_reject_the_whole_response():
    with pytest.raises(ConsistencyError, match="unknown utterance ids"):
        _code(_CodingBackend(unknown_id_once=True), max_rounds=1)


def test_rejected_response_is_re_requested_next_round():
    backend = _CodingBackend(unknown_id_once=True)
    assignments, _ = _code(backend)
    assert len(assignments) == 5
    assert backend.requests[1] == backend.requests[0]


def test_invalid_json_batch_is_retried_while_siblings_finish():
    backend = _CodingBackend(invalid_json_once=True, delay=0.01)
    still_running: list = []
    assignments, utterances = _code(backend, batch_size=2, still_running=still_running)

    assert len(assignments) == 5
    assert [len(ids) for ids in backend.requests] == [2, 2, 1, 2]
    assert backend.requests[3] == backend.requests[0]
    assert backend.answered == 3
    assert still_running == []
    assert all(item.tag for item in utterances if item.speaker == "p")


def test_batch_failing_every_round_raises_its_error():
    class _AlwaysInvalid(_CodingBackend):
        async def complete(self, *, user_prompt: str, **kwargs) -> str:
            self.requests.append(_requested_ids(user_prompt))
            return "not json"

    backend = _AlwaysInvalid()
    with pytest.raises(ParseError):
        _code(backend, max_rounds=2)
    assert len(backend.requests) == 2


class TestApplyCodingPayload:
    def _targets(self) -> list[Utterance]:
        return [
            Utterance(utterance_id=f"u{index}", session_id="s1", order=index, speaker="p", text="t")
            for index in range(3)
        ]

    def test_echo_beats_direct_command(self):
        payload = _CodingPayload.model_validate({"codes": [{"id": "u0", "codes": ["DC", "RF"]}]})
        assignments, _ = apply_coding_payload(payload, self._targets()[:1], CDI_SCHEMA)
        assert assignments["u0"].tag == "echo"
        assert assignments["u0"].code == "RF"

    def test_error_records_for_duplicates_invalid_and_missing(self):
        payload = _CodingPayload.model_validate(
            {
                "codes": [
                    {"id": "u0", "codes": ["LP"]},
                    {"id": "u0", "codes": ["DC"]},
                    {"id": "u1", "codes": ["ZZ"]},
                ]
            }
        )
        assignments, errors = apply_coding_payload(payload, self._targets(), CDI_SCHEMA)
        assert list(assignments) == ["u0"]
        assert sorted(item["error_type"] for item in errors) == [
            "DuplicateUtteranceIdInBatchOutput",
            "InvalidCodeInBatchOutput",
            "MissingUtteranceInBatchOutput",
        ]

    def test_pdi_vocabulary(self):
        payload = _CodingPayload.model_validate(
            {"codes": [{"id": "u0", "code": "cw"}, {"id": "u1", "codes": ["RF"]}]}
        )
        assignments, errors = apply_coding_payload(payload, self._targets()[:2], PDI_SCHEMA)
        assert assignments["u0"].tag == "correct_warning"
        assert errors[0]["error_type"] == "InvalidCodeInBatchOutput"
