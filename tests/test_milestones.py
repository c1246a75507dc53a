"""Tests for milestone detection and promotion."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.pipeline.milestones import detect_milestones
from pcit_pipeline.schemas import (
    ChildInfo,
    ChildMilestone,
    ChildProfilingRecord,
    DevelopmentalObservation,
    MilestoneDefinition,
    MilestoneStatus,
)
from pcit_pipeline.store import InMemorySessionRepository

NOW = datetime(2025, 3, 10, tzinfo=UTC)
CHILD = ChildInfo(child_id="c1", name="Sam", age_months=30)
OBSERVATION = DevelopmentalObservation(summary="Sam used two-word phrases.", domains=[])

LIBRARY = [
    MilestoneDefinition(
        key="lang_two_word_phrases",
        category="Language",
        title="Uses two-word phrases",
        threshold_value=2,
        action_tip="Expand on Sam's phrases.",
    ),
    MilestoneDefinition(
        key="cog_pretend_play",
        category="Cognitive",
        title="Engages in pretend play",
        threshold_value=2,
    ),
]


class _FakeBackend:
    provider_name = "fake"

    def __init__(self, payload: dict):
        self.payload = payload
        self.calls = 0

    async def complete(self, **kwargs) -> str:
        self.calls += 1
        return json.dumps(self.payload)


def _match(key: str) -> dict:
    return {"milestone_key": key, "evidence_summary": "seen this session"}


def _detect(payload: dict, *, library=LIBRARY, existing=(), profilings: int = 0):
    backend = _FakeBackend(payload)

    async def _run():
        repo = InMemorySessionRepository(clock=lambda: NOW, milestone_library=library)
        if existing:
            await repo.upsert_child_milestones("c1", list(existing))
        for index in range(profilings):
            await repo.save_child_profiling(
                ChildProfilingRecord(
                    child_id="c1",
                    session_id=f"s{index}",
                    created_at=NOW - timedelta(days=index),
                    observation=OBSERVATION,
                )
            )
        celebrations = await detect_milestones(
            session_id="s-now",
            child=CHILD,
            observation=OBSERVATION,
            repository=repo,
            gateway=ProviderGateway(backend),
            detected_at=NOW,
        )
        stored = {item.milestone_key: item for item in await repo.get_child_milestones("c1")}
        return celebrations, stored

    celebrations, stored = asyncio.run(_run())
    return backend, celebrations, stored


def _emerging(key: str, days_ago: int) -> ChildMilestone:
    return ChildMilestone(
        child_id="c1",
        milestone_key=key,
        status=MilestoneStatus.EMERGING,
        first_observed_at=NOW - timedelta(days=days_ago),
    )


def test_first_profiling_records_emerging_and_baseline():
    _, celebrations, stored = _detect(
        {
            "detected_milestones": [_match("lang_two_word_phrases")],
            "baseline_achieved": [_match("cog_pretend_play")],
        }
    )

    assert stored["lang_two_word_phrases"].status == MilestoneStatus.EMERGING
    assert stored["lang_two_word_phrases"].first_observed_at == NOW
    assert stored["cog_pretend_play"].status == MilestoneStatus.ACHIEVED
    assert stored["cog_pretend_play"].achieved_at == NOW
    assert {(item.title, item.status) for item in celebrations} == {
        ("Uses two-word phrases", MilestoneStatus.EMERGING),
        ("Engages in pretend play", MilestoneStatus.ACHIEVED),
    }
    emerging = next(item for item in celebrations if item.status == MilestoneStatus.EMERGING)
    assert emerging.action_tip == "Expand on Sam's phrases."


def test_emerging_promoted_after_enough_sessions():
    _, celebrations, stored = _detect(
        {"detected_milestones": [_match("lang_two_word_phrases")]},
        existing=[_emerging("lang_two_word_phrases", days_ago=5)],
        profilings=3,
    )
    assert stored["lang_two_word_phrases"].status == MilestoneStatus.ACHIEVED
    assert stored["lang_two_word_phrases"].achieved_at == NOW
    assert [item.status for item in celebrations] == [MilestoneStatus.ACHIEVED]


def test_emerging_stays_emerging_at_threshold():
    _, celebrations, stored = _detect(
        {"detected_milestones": [_match("lang_two_word_phrases")]},
        existing=[_emerging("lang_two_word_phrases", days_ago=5)],
        profilings=2,
    )
    assert stored["lang_two_word_phrases"].status == MilestoneStatus.EMERGING
    assert celebrations == []


def test_baseline_ignored_after_first_profiling():
    _, celebrations, stored = _detect(
        {"baseline_achieved": [_match("cog_pretend_play")]},
        existing=[_emerging("lang_two_word_phrases", days_ago=1)],
    )
    assert "cog_pretend_play" not in stored
    assert celebrations == []


def test_unknown_keys_skipped():
    _, celebrations, stored = _detect({"detected_milestones": [_match("walks_on_moon")]})
    assert celebrations == []
    assert stored == {}


def test_empty_library_makes_no_call():
    backend, celebrations, _ = _detect({"detected_milestones": []}, library=[])
    assert celebrations == []
    assert backend.calls == 0


def test_achieved_is_never_downgraded():
    achieved = ChildMilestone(
        child_id="c1",
        milestone_key="lang_two_word_phrases",
        status=MilestoneStatus.ACHIEVED,
        first_observed_at=NOW - timedelta(days=30),
        achieved_at=NOW - timedelta(days=10),
    )
    _, celebrations, stored = _detect(
        {"detected_milestones": [_match("lang_two_word_phrases")]},
        existing=[achieved],
        profilings=5,
    )
    assert stored["lang_two_word_phrases"].achieved_at == NOW - timedelta(days=10)
    assert celebrations == []
