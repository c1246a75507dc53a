"""End-to-end tests for the pipeline orchestrator with a scripted backend."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

from pcit_pipeline.config import Settings
from pcit_pipeline.errors import USER_FACING_FAILURE_MESSAGE
from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.pipeline import PipelineOrchestrator, RecordingInput, build_status_report
from pcit_pipeline.prompts import (
    CDI_COACHING_SYSTEM_PROMPT,
    COACHING_FORMAT_SYSTEM_PROMPT,
    COMPETENCY_SYSTEM_PROMPT,
    DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT,
    FEEDBACK_REVIEW_SYSTEM_PROMPT,
    MILESTONE_DETECTION_SYSTEM_PROMPT,
    PDI_TWO_CHOICES_SYSTEM_PROMPT,
    ROLE_IDENTIFICATION_SYSTEM_PROMPT,
    build_coding_system_prompt,
)
from pcit_pipeline.schemas import (
    AnalysisStatus,
    ChildInfo,
    MilestoneDefinition,
    MilestoneStatus,
    Session,
    SessionMode,
    TranscriptSegment,
)
from pcit_pipeline.store import InMemorySessionRepository
from pcit_pipeline.taxonomy import CDI_SCHEMA, PDI_SCHEMA

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

CODES_BY_TEXT = {
    "You built a tall tower.": "BD",
    "A castle.": "RF",
    "Great job stacking the blocks!": "LP",
    "Put the block in the box.": "DC",
    "Thank you for listening.": "LP",
    "Okay then.": "N",
}

CDI_SEGMENTS = [
    TranscriptSegment(speaker="p", text="You built a tall tower.", start=0, end=1),
    TranscriptSegment(speaker="c", text="It's a castle!", start=1, end=2),
    TranscriptSegment(speaker="p", text="A castle.", start=2, end=3),
    TranscriptSegment(speaker="p", text="Great job stacking the blocks!", start=3, end=4),
]

PDI_SEGMENTS = [
    TranscriptSegment(speaker="p", text="Put the block in the box.", start=0, end=1),
    TranscriptSegment(speaker="c", text="Done!", start=1, end=2),
    TranscriptSegment(speaker="p", text="Thank you for listening.", start=2, end=3),
    TranscriptSegment(speaker="p", text="Okay then.", start=3, end=4),
]

LIBRARY = [
    MilestoneDefinition(
        key="cog_pretend_play",
        category="Cognitive",
        title="Engages in pretend play",
        threshold_value=2,
    )
]

ROLES = "roles"
CODING = "coding"

_ROUTES = {
    ROLE_IDENTIFICATION_SYSTEM_PROMPT: ROLES,
    build_coding_system_prompt(CDI_SCHEMA): CODING,
    build_coding_system_prompt(PDI_SCHEMA): CODING,
    COMPETENCY_SYSTEM_PROMPT: "competency",
    FEEDBACK_REVIEW_SYSTEM_PROMPT: "review",
    PDI_TWO_CHOICES_SYSTEM_PROMPT: "two_choices",
    DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT: "profiling",
    CDI_COACHING_SYSTEM_PROMPT: "coaching_report",
    COACHING_FORMAT_SYSTEM_PROMPT: "coaching_format",
    MILESTONE_DETECTION_SYSTEM_PROMPT: "milestones",
}


def _speaker(role: str) -> dict:
    return {"role": role, "confidence": 0.95, "utterance_count": 1, "reasoning": "style"}


def _coding_response(user_prompt: str) -> dict:
    block = user_prompt.split("Transcript:\n", 1)[1].split("\n\nRequested ids", 1)[0]
    texts = {row["id"]: row["text"] for row in json.loads(block)}
    ids = json.loads(user_prompt.rsplit("\n", 2)[-2])
    return {
        "codes": [
            {"id": utterance_id, "codes": [CODES_BY_TEXT[texts[utterance_id]]], "feedback": "ok"}
            for utterance_id in ids
        ]
    }


class _RoutingBackend:
    """Answers each stage's request by its system prompt."""

    provider_name = "fake"

    def __init__(self, *, malformed: dict[str, int] | None = None, child_only: bool = False):
        self.malformed = dict(malformed or {})
        self.child_only = child_only
        self.routes: list[str] = []

    def _respond(self, route: str, user_prompt: str):
        if route == ROLES:
            adult = "CHILD" if self.child_only else "ADULT"
            return {"speaker_identification": {"p": _speaker(adult), "c": _speaker("CHILD")}}
        if route == CODING:
            return _coding_response(user_prompt)
        if route == "competency":
            return {
                "top_moment": {"quote": "You built a tall tower.", "utterance_number": 0},
                "feedback": "Warm, descriptive play.",
            }
        if route == "review":
            return {"reviews": [{"id": 0, "feedback": "Nice narration.", "additional_tip": None}]}
        if route == "two_choices":
            return {"skills": [{"skill": "Effective command", "rating": "strong", "feedback": "Clear."}]}
        if route == "profiling":
            return {
                "summary": "Sam used pretend play.",
                "domains": [{"domain": "Cognitive", "observation": "Called a tower a castle."}],
            }
        if route == "coaching_report":
            return "Sam loved building today."
        if route == "coaching_format":
            return {"sections": [{"title": "Highlights", "content": "Great narration."}]}
        if route == "milestones":
            return {"detected_milestones": [{"milestone_key": "cog_pretend_play", "evidence_summary": "castle"}]}
        raise AssertionError(f"unexpected route {route}")

    async def complete(self, *, system_prompt: str, user_prompt: str, **kwargs) -> str:
        route = _ROUTES[system_prompt]
        self.routes.append(route)
        if self.malformed.get(route, 0) > 0:
            self.malformed[route] -= 1
            return "this is not json"
        response = self._respond(route, user_prompt)
        return response if isinstance(response, str) else json.dumps(response)


class _BlockingBackend(_RoutingBackend):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()

    async def complete(self, *, system_prompt: str, user_prompt: str, **kwargs) -> str:
        self.started.set()
        await asyncio.Event().wait()
        return ""


class _Harness:
    def __init__(self, backend, *, mode=SessionMode.CDI, child_id: str | None = "c1", clock=None):
        self.backend = backend
        self.mode = mode
        self.child_id = child_id
        self.stage_sleeps: list[float] = []
        self.repo = InMemorySessionRepository(clock=lambda: NOW, milestone_library=LIBRARY)

        async def _stage_sleep(delay: float) -> None:
            self.stage_sleeps.append(delay)

        async def _gateway_sleep(delay: float) -> None:
            return None

        self.orchestrator = PipelineOrchestrator(
            repository=self.repo,
            gateway=ProviderGateway(backend, sleep=_gateway_sleep),
            settings=Settings(),
            sleep=_stage_sleep,
            clock=clock or (lambda: NOW),
        )

    async def create(self, session_id: str = "s1") -> Session:
        if self.child_id:
            await self.repo.save_child(ChildInfo(child_id=self.child_id, name="Sam", age_months=36))
        return await self.repo.create_session(
            Session(
                session_id=session_id,
                mode=self.mode,
                child_id=self.child_id,
                created_at=NOW,
                updated_at=NOW,
            )
        )

    def segments(self) -> RecordingInput:
        return RecordingInput(segments=CDI_SEGMENTS if self.mode == SessionMode.CDI else PDI_SEGMENTS)


def test_full_cdi_run_completes_with_enrichments():
    harness = _Harness(_RoutingBackend())

    async def _run():
        await harness.create()
        session = await harness.orchestrator.run("s1", harness.segments())
        return session, await harness.repo.get_utterances("s1")

    session, utterances = asyncio.run(_run())

    assert session.status == AnalysisStatus.COMPLETED
    assert session.tag_counts["narration"] == 1
    assert session.tag_counts["echo"] == 1
    assert session.tag_counts["labeled_praise"] == 1
    assert sum(session.tag_counts.values()) == 3
    assert isinstance(session.score, int)
    assert session.passed is False
    assert session.competency_analysis.top_moment == "You built a tall tower."
    assert session.coaching_cards.sections[0].title == "Highlights"
    assert session.coaching_cards.summary == "Sam loved building today."
    assert session.developmental_observation.summary == "Sam used pretend play."
    assert [item.status for item in session.milestone_celebrations] == [MilestoneStatus.EMERGING]
    assert utterances[0].revised_feedback == "Nice narration."
    assert utterances[1].tag is None

    report = build_status_report(session, utterances)
    assert report["status"] == "completed"
    assert report["tagCounts"]["labeled_praise"] == 1
    assert report["competencyAnalysis"]["topMoment"] == "You built a tall tower."
    assert report["coachingCards"]["sections"][0]["content"] == "Great narration."
    assert report["milestoneCelebrations"][0]["actionTip"] == ""
    assert report["transcript"][0]["revisedFeedback"] == "Nice narration."


def test_profiling_failure_still_completes():
    harness = _Harness(_RoutingBackend(malformed={"profiling": 99}))

    async def _run():
        await harness.create()
        return await harness.orchestrator.run("s1", harness.segments())

    session = asyncio.run(_run())

    assert session.status == AnalysisStatus.COMPLETED
    assert session.developmental_observation is None
    assert session.milestone_celebrations is None
    assert session.competency_analysis is not None
    assert session.coaching_cards is not None
    assert "milestones" not in harness.backend.routes
    report = build_status_report(session)
    assert "developmentalObservation" not in report
    assert "milestoneCelebrations" not in report


def test_no_adult_speaker_fails_session():
    harness = _Harness(_RoutingBackend(child_only=True))

    async def _run():
        await harness.create()
        return await harness.orchestrator.run("s1", harness.segments())

    session = asyncio.run(_run())

    assert session.status == AnalysisStatus.FAILED
    assert session.error_message == USER_FACING_FAILURE_MESSAGE
    assert session.error_code == "role_identification"
    assert session.failed_at == NOW
    assert harness.backend.routes == ["roles"]
    assert harness.stage_sleeps == []
    assert build_status_report(session) == {"status": "failed", "error": USER_FACING_FAILURE_MESSAGE}


def test_stage_retry_is_recorded():
    harness = _Harness(_RoutingBackend(malformed={"roles": 1}))

    async def _run():
        await harness.create()
        return await harness.orchestrator.run("s1", harness.segments())

    session = asyncio.run(_run())

    assert session.status == AnalysisStatus.COMPLETED
    assert session.retry_count == 1
    assert session.last_retried_at == NOW
    assert harness.stage_sleeps == [5.0]
    assert harness.backend.routes[:2] == ["roles", "roles"]


def test_second_trigger_is_a_no_op():
    harness = _Harness(_RoutingBackend())

    async def _run():
        await harness.create()
        first = await harness.orchestrator.trigger("s1", harness.segments())
        second = await harness.orchestrator.trigger("s1", harness.segments())
        session = await harness.orchestrator.wait("s1")
        third = await harness.orchestrator.trigger("s1", harness.segments())
        return first, second, third, session

    first, second, third, session = asyncio.run(_run())

    assert (first, second, third) == (True, False, False)
    assert session.status == AnalysisStatus.COMPLETED
    assert harness.backend.routes.count("roles") == 1


def test_concurrent_triggers_start_one_run():
    harness = _Harness(_RoutingBackend())

    async def _run():
        await harness.create()
        started = await asyncio.gather(
            harness.orchestrator.trigger("s1", harness.segments()),
            harness.orchestrator.trigger("s1", harness.segments()),
        )
        return started, await harness.orchestrator.wait("s1")

    started, session = asyncio.run(_run())

    assert sorted(started) == [False, True]
    assert session.status == AnalysisStatus.COMPLETED
    assert harness.backend.routes.count("roles") == 1


def test_mandatory_stage_exhausting_retries_fails_session():
    harness = _Harness(_RoutingBackend(malformed={"coding": 99}))

    async def _run():
        await harness.create()
        session = await harness.orchestrator.run("s1", harness.segments())
        return session, await harness.repo.get_utterances("s1")

    session, utterances = asyncio.run(_run())

    assert session.status == AnalysisStatus.FAILED
    assert session.error_code == "behavior_coding"
    assert session.error_message == USER_FACING_FAILURE_MESSAGE
    assert session.retry_count == 2
    assert harness.stage_sleeps == [5.0, 15.0]
    rounds = Settings().coding_max_rounds
    assert harness.backend.routes.count("coding") == 3 * rounds
    assert "competency" not in harness.backend.routes
    assert all(item.tag is None for item in utterances)
    assert session.score is None


def test_pdi_run_skips_coaching():
    harness = _Harness(_RoutingBackend(), mode=SessionMode.PDI)

    async def _run():
        await harness.create()
        return await harness.orchestrator.run("s1", harness.segments())

    session = asyncio.run(_run())

    assert session.status == AnalysisStatus.COMPLETED
    assert session.tag_counts["direct_command"] == 1
    assert session.tag_counts["labeled_praise"] == 1
    assert session.tag_counts["neutral"] == 1
    assert session.coaching_cards is None
    assert session.competency_analysis.pdi_two_choices.skills[0].rating == "strong"
    assert "coaching_report" not in harness.backend.routes
    assert "two_choices" in harness.backend.routes


def test_stale_sessions_are_failed():
    later = NOW + timedelta(seconds=Settings().processing_stale_after_seconds + 60)
    harness = _Harness(_RoutingBackend(), clock=lambda: later)

    async def _run():
        await harness.create("stuck")
        await harness.create("lazy")
        await harness.create("fresh")
        await harness.repo.claim_session("stuck")
        await harness.repo.claim_session("lazy")
        swept = await harness.orchestrator.sweep_stale_sessions()
        return swept

    swept = asyncio.run(_run())
    assert sorted(swept) == ["lazy", "stuck"]


def test_status_query_expires_stale_session():
    later = NOW + timedelta(seconds=Settings().processing_stale_after_seconds + 60)
    harness = _Harness(_RoutingBackend(), clock=lambda: later)

    async def _run():
        await harness.create()
        await harness.repo.claim_session("s1")
        return await harness.orchestrator.get_status("s1")

    session = asyncio.run(_run())
    assert session.status == AnalysisStatus.FAILED
    assert session.error_code == "stale"


def test_recent_processing_session_is_not_expired():
    harness = _Harness(_RoutingBackend())

    async def _run():
        await harness.create()
        await harness.repo.claim_session("s1")
        return await harness.orchestrator.get_status("s1"), await harness.orchestrator.sweep_stale_sessions()

    session, swept = asyncio.run(_run())
    assert session.status == AnalysisStatus.PROCESSING
    assert swept == []


def test_shutdown_marks_in_flight_runs_cancelled():
    async def _run():
        backend = _BlockingBackend()
        harness = _Harness(backend)
        await harness.create()
        assert await harness.orchestrator.trigger("s1", harness.segments())
        await backend.started.wait()
        assert harness.orchestrator.is_active("s1")
        await harness.orchestrator.shutdown()
        return harness, await harness.repo.get_session("s1")

    harness, session = asyncio.run(_run())
    assert session.status == AnalysisStatus.FAILED
    assert session.error_code == "cancelled"
    assert not harness.orchestrator.is_active("s1")


def test_in_flight_session_reports_status_only():
    harness = _Harness(_RoutingBackend())

    async def _run():
        await harness.create()
        await harness.repo.claim_session("s1")
        return await harness.repo.get_session("s1")

    session = asyncio.run(_run())
    assert build_status_report(session) == {"status": "processing"}
