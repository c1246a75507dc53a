"""CDI coaching: a free-text coaching report formatted into cards."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field

from pcit_pipeline.models.gateway import Capability, PromptSpec, ProviderGateway
from pcit_pipeline.prompts import (
    CDI_COACHING_SYSTEM_PROMPT,
    COACHING_FORMAT_SYSTEM_PROMPT,
    build_coaching_format_user_prompt,
    build_coaching_user_prompt,
)
from pcit_pipeline.schemas import ChildInfo, CoachingCards, CoachingSection, Session, Utterance

logger = logging.getLogger(__name__)


class _SectionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    content: str = Field(min_length=1)


class _CoachingFormatPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sections: list[_SectionPayload] = Field(min_length=1)
    tomorrow_goal: str | None = None


async def generate_coaching_cards(
    *,
    session_id: str,
    utterances: list[Utterance],
    skill_totals: Mapping[str, int],
    child: ChildInfo,
    history: list[Session],
    gateway: ProviderGateway,
    model: str | None = None,
    report_temperature: float = 0.5,
    report_timeout_seconds: float | None = None,
) -> CoachingCards:
    """Stream a coaching report, then format it into mobile coaching cards."""

    report = await gateway.invoke_text(
        PromptSpec(
            prompt_text=build_coaching_user_prompt(
                utterances=utterances,
                child=child,
                skill_totals=skill_totals,
                history=history,
            ),
            system_prompt=CDI_COACHING_SYSTEM_PROMPT,
            model=model,
            capability=Capability.STREAMING,
            temperature=report_temperature,
            max_output_tokens=8192,
            caller="coaching",
            purpose="coaching_report",
        ),
        timeout_seconds=report_timeout_seconds,
    )
    logger.info("Session %s coaching report received (%d chars).", session_id, len(report))

    formatted = await gateway.invoke(
        PromptSpec(
            prompt_text=build_coaching_format_user_prompt(report),
            system_prompt=COACHING_FORMAT_SYSTEM_PROMPT,
            model=model,
            temperature=0.0,
            max_output_tokens=2048,
            caller="coaching",
            purpose="coaching_format",
        ),
        _CoachingFormatPayload,
    )
    return CoachingCards(
        sections=[CoachingSection(title=item.title, content=item.content) for item in formatted.sections],
        tomorrow_goal=formatted.tomorrow_goal,
        summary=report,
    )
