"""Role identification stage: classify every diarized speaker as ADULT or CHILD."""

from __future__ import annotations

import logging
from collections import Counter

from pydantic import BaseModel, ConfigDict, Field

from pcit_pipeline.errors import ConsistencyError, ValidationError
from pcit_pipeline.models.gateway import PromptSpec, ProviderGateway
from pcit_pipeline.prompts import (
    ROLE_IDENTIFICATION_SYSTEM_PROMPT,
    build_role_identification_user_prompt,
)
from pcit_pipeline.schemas import RoleIdentification, SpeakerClassification, SpeakerRole, Utterance
from pcit_pipeline.store.base import SessionRepository

logger = logging.getLogger(__name__)

_ROLE_ALIASES = {
    "ADULT": SpeakerRole.ADULT,
    "PARENT": SpeakerRole.ADULT,
    "CAREGIVER": SpeakerRole.ADULT,
    "CHILD": SpeakerRole.CHILD,
    "KID": SpeakerRole.CHILD,
}


class NoAdultSpeakerError(ValidationError):
    """Raised when no speaker was classified as ADULT."""


class _SpeakerPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    utterance_count: int = Field(default=0, ge=0)
    reasoning: str = ""


class _RoleIdentificationPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    speaker_identification: dict[str, _SpeakerPayload]


def _normalize_role(speaker_id: str, value: str) -> SpeakerRole:
    role = _ROLE_ALIASES.get(value.strip().upper())
    if role is None:
        raise ConsistencyError(f"Speaker '{speaker_id}' was given unknown role '{value}'.")
    return role


def build_role_identification(
    payload: _RoleIdentificationPayload,
    utterances: list[Utterance],
    *,
    confidence_threshold: float,
) -> RoleIdentification:
    """Validate a role payload against the speakers that actually appear."""

    utterance_counts = Counter(utterance.speaker for utterance in utterances)
    expected = set(utterance_counts)
    returned = set(payload.speaker_identification)

    unknown = sorted(returned - expected)
    if unknown:
        raise ConsistencyError(f"Role identification returned unknown speaker ids: {unknown}.")
    missing = sorted(expected - returned)
    if missing:
        raise ConsistencyError(f"Role identification omitted speaker ids: {missing}.")

    speakers: dict[str, SpeakerClassification] = {}
    for speaker_id in sorted(expected):
        item = payload.speaker_identification[speaker_id]
        speakers[speaker_id] = SpeakerClassification(
            role=_normalize_role(speaker_id, item.role),
            confidence=item.confidence,
            reasoning=item.reasoning.strip(),
            utterance_count=utterance_counts[speaker_id],
            ambiguous=item.confidence < confidence_threshold,
        )
    return RoleIdentification(speakers=speakers)


async def identify_roles(
    *,
    session_id: str,
    repository: SessionRepository,
    gateway: ProviderGateway,
    model: str | None = None,
    temperature: float = 0.3,
    confidence_threshold: float = 0.70,
) -> RoleIdentification:
    """Classify speakers, write roles in one batch, and store the result on the session."""

    utterances = await repository.get_utterances(session_id)
    if not utterances:
        raise ValidationError(f"Session {session_id} has no utterances to classify.")

    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_role_identification_user_prompt(utterances),
            system_prompt=ROLE_IDENTIFICATION_SYSTEM_PROMPT,
            model=model,
            temperature=temperature,
            max_output_tokens=2048,
            caller="role_identification",
            purpose="speaker_roles",
        ),
        _RoleIdentificationPayload,
    )
    identification = build_role_identification(
        payload,
        utterances,
        confidence_threshold=confidence_threshold,
    )

    if not identification.adult_speaker_ids():
        raise NoAdultSpeakerError(
            f"No adult speaker identified among {len(identification.speakers)} speaker(s)."
        )

    for speaker_id, item in identification.speakers.items():
        if item.ambiguous:
            logger.warning(
                "Session %s speaker %s classified %s with low confidence %.2f.",
                session_id,
                speaker_id,
                item.role,
                item.confidence,
            )

    updated = await repository.update_utterance_roles(session_id, identification.role_map())
    await repository.update_session_fields(session_id, role_identification=identification)
    logger.info(
        "Session %s roles: %d adult, %d child speaker(s); %d utterances updated.",
        session_id,
        len(identification.adult_speaker_ids()),
        len(identification.child_speaker_ids()),
        updated,
    )
    return identification
