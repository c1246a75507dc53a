"""Milestone detection from developmental observations."""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pcit_pipeline.models.gateway import PromptSpec, ProviderGateway
from pcit_pipeline.prompts import MILESTONE_DETECTION_SYSTEM_PROMPT, build_milestone_user_prompt
from pcit_pipeline.schemas import (
    ChildInfo,
    ChildMilestone,
    DevelopmentalObservation,
    MilestoneCelebration,
    MilestoneDefinition,
    MilestoneStatus,
)
from pcit_pipeline.store.base import SessionRepository

logger = logging.getLogger(__name__)


class _MilestoneMatchPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    milestone_key: str = Field(min_length=1)
    evidence_summary: str = ""


class _MilestonePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    detected_milestones: list[_MilestoneMatchPayload] = Field(default_factory=list)
    baseline_achieved: list[_MilestoneMatchPayload] = Field(default_factory=list)


def _celebration(definition: MilestoneDefinition, status: MilestoneStatus) -> MilestoneCelebration:
    return MilestoneCelebration(
        status=status,
        category=definition.category,
        title=definition.title,
        action_tip=definition.action_tip,
    )


async def detect_milestones(
    *,
    session_id: str,
    child: ChildInfo,
    observation: DevelopmentalObservation,
    repository: SessionRepository,
    gateway: ProviderGateway,
    detected_at: datetime,
    model: str | None = None,
    temperature: float = 0.2,
) -> list[MilestoneCelebration]:
    """Update the child's milestone states and return this session's celebrations.

    A first detection creates an EMERGING milestone. An EMERGING milestone seen
    again is promoted to ACHIEVED once the child has more profiled sessions
    since it was first observed than the milestone's threshold. On the child's
    first profiling, clearly mastered milestones are recorded ACHIEVED directly.
    ACHIEVED milestones are never downgraded.
    """

    library = await repository.get_milestone_library()
    if not library:
        logger.info("Session %s milestone library is empty; skipping detection.", session_id)
        return []

    existing = {item.milestone_key: item for item in await repository.get_child_milestones(child.child_id)}
    first_profiling = not existing

    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_milestone_user_prompt(
                observation=observation,
                library=library,
                existing=list(existing.values()),
                age_months=child.age_months,
                first_profiling=first_profiling,
            ),
            system_prompt=MILESTONE_DETECTION_SYSTEM_PROMPT,
            model=model,
            temperature=temperature,
            max_output_tokens=4096,
            caller="milestones",
            purpose="milestone_detection",
        ),
        _MilestonePayload,
    )

    library_by_key = {item.key: item for item in library}
    changes: dict[str, ChildMilestone] = {}
    celebrations: dict[str, MilestoneCelebration] = {}

    for match in payload.detected_milestones:
        key = match.milestone_key
        definition = library_by_key.get(key)
        if definition is None:
            logger.warning("Session %s detected unknown milestone key '%s'.", session_id, key)
            continue
        if key in changes:
            continue

        current = existing.get(key)
        if current is None:
            changes[key] = ChildMilestone(
                child_id=child.child_id,
                milestone_key=key,
                status=MilestoneStatus.EMERGING,
                first_observed_at=detected_at,
            )
            celebrations[key] = _celebration(definition, MilestoneStatus.EMERGING)
        elif current.status == MilestoneStatus.EMERGING:
            sessions_since = await repository.count_child_profilings(
                child.child_id,
                since=current.first_observed_at,
            )
            if sessions_since > definition.threshold_value:
                changes[key] = current.model_copy(
                    update={"status": MilestoneStatus.ACHIEVED, "achieved_at": detected_at}
                )
                celebrations[key] = _celebration(definition, MilestoneStatus.ACHIEVED)
            else:
                logger.debug(
                    "Milestone %s still emerging (%d/%d sessions).",
                    key,
                    sessions_since,
                    definition.threshold_value,
                )

    if first_profiling:
        for match in payload.baseline_achieved:
            key = match.milestone_key
            definition = library_by_key.get(key)
            if definition is None:
                logger.warning("Session %s baseline named unknown milestone key '%s'.", session_id, key)
                continue
            created = changes.get(key)
            if created is not None and created.status == MilestoneStatus.ACHIEVED:
                continue
            changes[key] = ChildMilestone(
                child_id=child.child_id,
                milestone_key=key,
                status=MilestoneStatus.ACHIEVED,
                first_observed_at=detected_at,
                achieved_at=detected_at,
            )
            celebrations[key] = _celebration(definition, MilestoneStatus.ACHIEVED)
    elif payload.baseline_achieved:
        logger.info(
            "Session %s ignored %d baseline milestone(s) outside the first profiling.",
            session_id,
            len(payload.baseline_achieved),
        )

    if changes:
        await repository.upsert_child_milestones(child.child_id, list(changes.values()))
    logger.info(
        "Session %s milestones: %d emerging, %d achieved.",
        session_id,
        sum(1 for item in celebrations.values() if item.status == MilestoneStatus.EMERGING),
        sum(1 for item in celebrations.values() if item.status == MilestoneStatus.ACHIEVED),
    )
    return list(celebrations.values())
