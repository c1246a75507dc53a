"""Behavior coding stage: one DPICS tag per ADULT utterance."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

from pcit_pipeline.errors import ConsistencyError, ValidationError, is_retryable_stage_error
from pcit_pipeline.models.gateway import PromptSpec, ProviderGateway
from pcit_pipeline.prompts import build_coding_system_prompt, build_coding_user_prompt
from pcit_pipeline.schemas import SessionMode, SpeakerRole, Utterance
from pcit_pipeline.store.base import SessionRepository
from pcit_pipeline.taxonomy import CodingSchema, profile_for

logger = logging.getLogger(__name__)


class _CodingItemPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    codes: list[str] = Field(default_factory=list)
    code: str | None = None
    feedback: str = ""

    def candidate_codes(self) -> list[str]:
        candidates = list(self.codes)
        if self.code:
            candidates.append(self.code)
        return candidates


class _CodingPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    codes: list[_CodingItemPayload]


@dataclass(frozen=True)
class CodingAssignment:
    """Resolved tag for one utterance."""

    utterance_id: str
    tag: str
    code: str
    feedback: str


def apply_coding_payload(
    payload: _CodingPayload,
    targets: list[Utterance],
    schema: CodingSchema,
) -> tuple[dict[str, CodingAssignment], list[dict]]:
    """Map a coding response onto the requested utterances by utterance id.

    Raises `ConsistencyError` if the response names an id that was not
    requested. Duplicate items, unusable codes and omitted ids are returned
    as error records so the caller can re-request them.
    """

    target_ids = {utterance.utterance_id for utterance in targets}
    unknown = sorted({item.id for item in payload.codes} - target_ids)
    if unknown:
        raise ConsistencyError(f"Coding response contained unknown utterance ids: {unknown}.")

    assignments: dict[str, CodingAssignment] = {}
    errors: list[dict] = []
    seen_ids: set[str] = set()

    for item in payload.codes:
        if item.id in seen_ids:
            errors.append(
                {
                    "utterance_id": item.id,
                    "error_type": "DuplicateUtteranceIdInBatchOutput",
                    "error": "Coding output repeated utterance id.",
                }
            )
            continue
        seen_ids.add(item.id)

        candidates = item.candidate_codes()
        winner = schema.resolve(candidates)
        if winner is None:
            errors.append(
                {
                    "utterance_id": item.id,
                    "error_type": "InvalidCodeInBatchOutput",
                    "error": f"No allowed {schema.mode} code among {candidates}.",
                }
            )
            continue

        winning_code = next(
            code.strip().upper()
            for code in candidates
            if schema.tag_for_code(code) == winner
        )
        assignments[item.id] = CodingAssignment(
            utterance_id=item.id,
            tag=winner.key,
            code=winning_code,
            feedback=item.feedback.strip(),
        )

    for utterance in targets:
        if utterance.utterance_id not in seen_ids:
            errors.append(
                {
                    "utterance_id": utterance.utterance_id,
                    "error_type": "MissingUtteranceInBatchOutput",
                    "error": "Coding output omitted this utterance id.",
                }
            )

    return assignments, errors


def _batches(items: list[Utterance], size: int) -> list[list[Utterance]]:
    size = max(1, size)
    return [items[index : index + size] for index in range(0, len(items), size)]


async def _code_batch(
    *,
    gateway: ProviderGateway,
    schema: CodingSchema,
    system_prompt: str,
    context: list[Utterance],
    targets: list[Utterance],
    model: str | None,
    temperature: float,
) -> tuple[dict[str, CodingAssignment], list[dict]]:
    payload = await gateway.invoke(
        PromptSpec(
            prompt_text=build_coding_user_prompt(context=context, targets=targets),
            system_prompt=system_prompt,
            model=model,
            temperature=temperature,
            max_output_tokens=8192,
            caller="behavior_coding",
            purpose=f"dpics_{schema.mode.lower()}",
        ),
        _CodingPayload,
    )
    return apply_coding_payload(payload, targets, schema)


async def code_behaviors(
    *,
    session_id: str,
    mode: SessionMode,
    repository: SessionRepository,
    gateway: ProviderGateway,
    model: str | None = None,
    temperature: float = 0.0,
    batch_size: int = 40,
    max_rounds: int = 3,
) -> dict[str, CodingAssignment]:
    """Tag every ADULT utterance and write all tags in one batch update.

    Utterances the model omits or codes outside the vocabulary are re-requested
    for up to `max_rounds` rounds, as are the ids of a batch whose call failed
    with a retryable error. Anything still untagged after that fails the stage
    with the last batch error, or `ConsistencyError` when every call returned.
    """

    utterances = await repository.get_utterances(session_id)
    adults = [utterance for utterance in utterances if utterance.role == SpeakerRole.ADULT]
    if not adults:
        raise ValidationError(f"Session {session_id} has no ADULT utterances to code.")

    schema = profile_for(mode).schema
    system_prompt = build_coding_system_prompt(schema)
    assignments: dict[str, CodingAssignment] = {}
    pending = adults

    for round_number in range(1, max(1, max_rounds) + 1):
        outcomes = await asyncio.gather(
            *(
                _code_batch(
                    gateway=gateway,
                    schema=schema,
                    system_prompt=system_prompt,
                    context=utterances,
                    targets=batch,
                    model=model,
                    temperature=temperature,
                )
                for batch in _batches(pending, batch_size)
            ),
            return_exceptions=True,
        )
        round_errors: list[dict] = []
        last_failure = None
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if not is_retryable_stage_error(outcome):
                    raise outcome
                logger.warning(
                    "Session %s coding round %d batch failed: %s",
                    session_id,
                    round_number,
                    outcome,
                )
                last_failure = outcome
                continue
            batch_assignments, batch_errors = outcome
            assignments.update(batch_assignments)
            round_errors.extend(batch_errors)

        pending = [item for item in adults if item.utterance_id not in assignments]
        if not pending:
            break
        logger.warning(
            "Session %s coding round %d left %d utterance(s) untagged (%d error records).",
            session_id,
            round_number,
            len(pending),
            len(round_errors),
        )

    if pending:
        if last_failure is not None:
            raise last_failure
        raise ConsistencyError(
            f"Behavior coding left {len(pending)} ADULT utterance(s) untagged after "
            f"{max(1, max_rounds)} round(s)."
        )

    await repository.update_utterance_tags(
        session_id,
        {key: item.tag for key, item in assignments.items()},
        codes={key: item.code for key, item in assignments.items()},
        feedback={key: item.feedback for key, item in assignments.items() if item.feedback},
    )
    logger.info("Session %s coded %d ADULT utterances (%s).", session_id, len(assignments), mode)
    return assignments
