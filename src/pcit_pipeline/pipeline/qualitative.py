"""Qualitative analysis branch: optional enrichments run concurrently after scoring."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pcit_pipeline.config import Settings
from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.pipeline.coaching import generate_coaching_cards
from pcit_pipeline.pipeline.competency import analyze_competency
from pcit_pipeline.pipeline.milestones import detect_milestones
from pcit_pipeline.pipeline.profiling import profile_development
from pcit_pipeline.pipeline.scoring import skill_totals
from pcit_pipeline.schemas import (
    ChildInfo,
    ChildProfilingRecord,
    CoachingCards,
    CompetencyAnalysis,
    DevelopmentalObservation,
    MilestoneCelebration,
    ScoreResult,
    Session,
    Utterance,
)
from pcit_pipeline.store.base import SessionRepository
from pcit_pipeline.taxonomy import (
    STAGE_COACHING,
    STAGE_COMPETENCY,
    STAGE_MILESTONES,
    STAGE_PROFILING,
    profile_for,
)

logger = logging.getLogger(__name__)


@dataclass
class QualitativeResults:
    """Outputs of the branch; None means skipped or failed."""

    competency_analysis: CompetencyAnalysis | None = None
    developmental_observation: DevelopmentalObservation | None = None
    coaching_cards: CoachingCards | None = None
    milestone_celebrations: list[MilestoneCelebration] | None = None
    failures: dict[str, str] = field(default_factory=dict)

    def session_fields(self) -> dict[str, Any]:
        return {
            "competency_analysis": self.competency_analysis,
            "developmental_observation": self.developmental_observation,
            "coaching_cards": self.coaching_cards,
            "milestone_celebrations": self.milestone_celebrations,
        }


async def resolve_child(repository: SessionRepository, session: Session) -> ChildInfo:
    """Child details for prompts; a placeholder when the session has no known child."""

    if session.child_id:
        child = await repository.get_child(session.child_id)
        if child is not None:
            return child
        return ChildInfo(child_id=session.child_id)
    return ChildInfo(child_id=f"session-{session.session_id}")


def _record_failure(
    results: QualitativeResults,
    *,
    session_id: str,
    stage: str,
    exc: BaseException,
) -> None:
    results.failures[stage] = type(exc).__name__
    logger.warning(
        "Optional stage %s failed for session %s: %s: %s",
        stage,
        session_id,
        type(exc).__name__,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )


async def run_qualitative_branch(
    *,
    session: Session,
    utterances: list[Utterance],
    score: ScoreResult,
    repository: SessionRepository,
    gateway: ProviderGateway,
    settings: Settings,
    now: datetime,
) -> QualitativeResults:
    """Run the mode's optional stages concurrently and settle all of them.

    A failing stage leaves its field None and never cancels the others.
    Milestone detection consumes profiling output, so it runs chained after
    profiling and only when profiling succeeded for a known child.
    """

    profile = profile_for(session.mode)
    results = QualitativeResults()
    totals = skill_totals(session.mode, score.tag_counts)
    child = await resolve_child(repository, session)
    history: list[Session] = []
    if session.child_id:
        history = await repository.list_child_sessions(
            session.child_id,
            exclude_session_id=session.session_id,
            limit=settings.history_session_limit,
        )

    feedback_model = settings.resolved_feedback_model() or None
    coding_model = settings.resolved_openai_model() or None

    async def _profiling_chain() -> None:
        observation = await profile_development(
            session_id=session.session_id,
            utterances=utterances,
            skill_totals=totals,
            child=child,
            history=history,
            gateway=gateway,
            model=feedback_model,
            temperature=settings.profiling_temperature,
        )
        results.developmental_observation = observation

        if not profile.runs_stage(STAGE_MILESTONES):
            return
        if not session.child_id:
            logger.info("Session %s has no child; skipping milestone detection.", session.session_id)
            return
        try:
            await repository.save_child_profiling(
                ChildProfilingRecord(
                    child_id=session.child_id,
                    session_id=session.session_id,
                    created_at=now,
                    observation=observation,
                )
            )
            results.milestone_celebrations = await detect_milestones(
                session_id=session.session_id,
                child=child,
                observation=observation,
                repository=repository,
                gateway=gateway,
                detected_at=now,
                model=coding_model,
                temperature=settings.milestone_temperature,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _record_failure(results, session_id=session.session_id, stage=STAGE_MILESTONES, exc=exc)

    async def _competency() -> None:
        results.competency_analysis = await analyze_competency(
            session_id=session.session_id,
            mode=session.mode,
            utterances=utterances,
            skill_totals=totals,
            child=child,
            repository=repository,
            gateway=gateway,
            analyzed_at=now,
            model=feedback_model,
            temperature=settings.feedback_temperature,
        )

    async def _coaching() -> None:
        results.coaching_cards = await generate_coaching_cards(
            session_id=session.session_id,
            utterances=utterances,
            skill_totals=totals,
            child=child,
            history=history,
            gateway=gateway,
            model=feedback_model,
            report_temperature=settings.profiling_temperature,
            report_timeout_seconds=settings.report_timeout_seconds,
        )

    stages: dict[str, Awaitable[None]] = {}
    if profile.runs_stage(STAGE_COMPETENCY):
        stages[STAGE_COMPETENCY] = _competency()
    if profile.runs_stage(STAGE_PROFILING):
        stages[STAGE_PROFILING] = _profiling_chain()
    if profile.runs_stage(STAGE_COACHING):
        stages[STAGE_COACHING] = _coaching()

    outcomes = await asyncio.gather(*stages.values(), return_exceptions=True)
    for stage, outcome in zip(stages, outcomes, strict=True):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            _record_failure(results, session_id=session.session_id, stage=stage, exc=outcome)

    logger.info(
        "Session %s qualitative branch settled: %d stage(s) run, failures=%s.",
        session.session_id,
        len(stages),
        sorted(results.failures) or "none",
    )
    return results
