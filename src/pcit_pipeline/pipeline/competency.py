"""Competency narrative: top moment, opening feedback, and per-utterance review."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pcit_pipeline.models.gateway import PromptSpec, ProviderGateway
from pcit_pipeline.prompts import (
    COMPETENCY_SYSTEM_PROMPT,
    FEEDBACK_REVIEW_SYSTEM_PROMPT,
    PDI_TWO_CHOICES_SYSTEM_PROMPT,
    build_competency_user_prompt,
    build_feedback_review_user_prompt,
    build_pdi_two_choices_user_prompt,
)
from pcit_pipeline.schemas import (
    ChildInfo,
    CompetencyAnalysis,
    PdiSkillRating,
    PdiTwoChoicesAnalysis,
    SessionMode,
    SpeakerRole,
    Utterance,
)
from pcit_pipeline.store.base import SessionRepository
from pcit_pipeline.taxonomy import profile_for

logger = logging.getLogger(__name__)


class _TopMomentPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quote: str = Field(min_length=1)
    utterance_number: int | None = None


class _CompetencyPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    top_moment: _TopMomentPayload | None = None
    feedback: str = Field(min_length=1)
    example_utterance_number: int | None = None
    activity: str | None = None
    child_reaction: str | None = None
    reminder: str | None = None


class _ReviewItemPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int
    feedback: str = ""
    additional_tip: str | None = None


class _ReviewPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reviews: list[_ReviewItemPayload]


class _PdiSkillPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    skill: str = Field(min_length=1)
    rating: str = Field(min_length=1)
    feedback: str = ""


class _PdiTwoChoicesPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    skills: list[_PdiSkillPayload] = Field(min_length=1)
    command_sequences: list[dict] = Field(default_factory=list)
    tomorrow_goal: str | None = None
    encouragement: str | None = None
    summary: str | None = None


def _valid_order(value: int | None, orders: set[int]) -> int | None:
    return value if value is not None and value in orders else None


async def review_feedback(
    *,
    session_id: str,
    utterances: list[Utterance],
    skill_totals: Mapping[str, int],
    repository: SessionRepository,
    gateway: ProviderGateway,
    model: str | None = None,
    temperature: float = 0.5,
) -> int:
    """Revise per-utterance feedback and store it; returns the number of utterances updated."""

    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_feedback_review_user_prompt(
                utterances=utterances,
                skill_totals=skill_totals,
            ),
            system_prompt=FEEDBACK_REVIEW_SYSTEM_PROMPT,
            model=model,
            temperature=temperature,
            max_output_tokens=4096,
            caller="competency",
            purpose="feedback_review",
        ),
        _ReviewPayload,
    )

    adults_by_order = {
        utterance.order: utterance
        for utterance in utterances
        if utterance.role == SpeakerRole.ADULT
    }
    revised: dict[str, str] = {}
    tips: dict[str, str] = {}
    for item in payload.reviews:
        utterance = adults_by_order.get(item.id)
        if utterance is None:
            logger.warning("Session %s review referenced non-parent utterance %d.", session_id, item.id)
            continue
        if item.feedback.strip():
            revised[utterance.utterance_id] = item.feedback.strip()
        if item.additional_tip and item.additional_tip.strip():
            tips[utterance.utterance_id] = item.additional_tip.strip()

    if not revised and not tips:
        return 0
    return await repository.update_utterance_feedback(
        session_id,
        revised,
        additional_tips=tips,
    )


async def analyze_two_choices_flow(
    *,
    utterances: list[Utterance],
    child_name: str,
    gateway: ProviderGateway,
    model: str | None = None,
    temperature: float = 0.7,
) -> PdiTwoChoicesAnalysis:
    """Rate the parent's discipline sequence against the two-choices flow."""

    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_pdi_two_choices_user_prompt(
                utterances=utterances,
                child_name=child_name,
            ),
            system_prompt=PDI_TWO_CHOICES_SYSTEM_PROMPT,
            model=model,
            temperature=temperature,
            max_output_tokens=4096,
            caller="competency",
            purpose="pdi_two_choices",
        ),
        _PdiTwoChoicesPayload,
    )
    return PdiTwoChoicesAnalysis(
        skills=[PdiSkillRating(**item.model_dump()) for item in payload.skills],
        command_sequences=payload.command_sequences,
        tomorrow_goal=payload.tomorrow_goal,
        encouragement=payload.encouragement,
        summary=payload.summary,
    )


async def analyze_competency(
    *,
    session_id: str,
    mode: SessionMode,
    utterances: list[Utterance],
    skill_totals: Mapping[str, int],
    child: ChildInfo,
    repository: SessionRepository,
    gateway: ProviderGateway,
    analyzed_at: datetime,
    model: str | None = None,
    temperature: float = 0.7,
) -> CompetencyAnalysis:
    """Build the competency narrative.

    The review step and the PDI discipline review are enrichments: when they
    fail the narrative is still returned.
    """

    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_competency_user_prompt(
                utterances=utterances,
                skill_totals=skill_totals,
                child_name=child.name,
                mode=str(mode),
            ),
            system_prompt=COMPETENCY_SYSTEM_PROMPT,
            model=model,
            temperature=temperature,
            max_output_tokens=2048,
            caller="competency",
            purpose="competency_narrative",
        ),
        _CompetencyPayload,
    )

    orders = {utterance.order for utterance in utterances}
    analysis = CompetencyAnalysis(
        top_moment=payload.top_moment.quote if payload.top_moment else None,
        top_moment_utterance_number=_valid_order(
            payload.top_moment.utterance_number if payload.top_moment else None,
            orders,
        ),
        feedback=payload.feedback.strip(),
        example_utterance_number=_valid_order(payload.example_utterance_number, orders),
        activity=payload.activity,
        child_reaction=payload.child_reaction,
        reminder=payload.reminder,
        mode=mode,
        analyzed_at=analyzed_at,
    )

    try:
        updated = await review_feedback(
            session_id=session_id,
            utterances=utterances,
            skill_totals=skill_totals,
            repository=repository,
            gateway=gateway,
            model=model,
        )
        logger.info("Session %s feedback review updated %d utterance(s).", session_id, updated)
    except Exception:
        logger.warning("Session %s feedback review failed; keeping coder feedback.", session_id, exc_info=True)

    if profile_for(mode).discipline_review:
        try:
            analysis.pdi_two_choices = await analyze_two_choices_flow(
                utterances=utterances,
                child_name=child.name,
                gateway=gateway,
                model=model,
                temperature=temperature,
            )
        except Exception:
            logger.warning("Session %s two-choices review failed.", session_id, exc_info=True)

    return analysis
