"""Developmental profiling of the child in one session."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field

from pcit_pipeline.models.gateway import PromptSpec, ProviderGateway
from pcit_pipeline.prompts import DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT, build_profiling_user_prompt
from pcit_pipeline.schemas import (
    ChildInfo,
    DevelopmentalDomain,
    DevelopmentalObservation,
    Session,
    Utterance,
)

logger = logging.getLogger(__name__)


class _DomainPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    domain: str = Field(min_length=1)
    observation: str = Field(min_length=1)


class _ProfilingPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    summary: str = Field(min_length=1)
    domains: list[_DomainPayload]
    metadata: dict | None = None


async def profile_development(
    *,
    session_id: str,
    utterances: list[Utterance],
    skill_totals: Mapping[str, int],
    child: ChildInfo,
    history: list[Session],
    gateway: ProviderGateway,
    model: str | None = None,
    temperature: float = 0.5,
) -> DevelopmentalObservation:
    """Describe the child's development across domains, using prior sessions as context."""

    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_profiling_user_prompt(
                utterances=utterances,
                child=child,
                skill_totals=skill_totals,
                history=history,
            ),
            system_prompt=DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT,
            model=model,
            temperature=temperature,
            max_output_tokens=8192,
            caller="profiling",
            purpose="developmental_observation",
        ),
        _ProfilingPayload,
    )

    domains: list[DevelopmentalDomain] = []
    seen: set[str] = set()
    for item in payload.domains:
        key = item.domain.strip().lower()
        if key in seen:
            logger.warning("Session %s profiling repeated domain '%s'; keeping first.", session_id, key)
            continue
        seen.add(key)
        domains.append(DevelopmentalDomain.model_validate(item.model_dump()))

    return DevelopmentalObservation(
        summary=payload.summary.strip(),
        domains=domains,
        metadata=payload.metadata,
    )
