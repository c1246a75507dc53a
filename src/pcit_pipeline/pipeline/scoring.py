"""Tag aggregation and session scoring.

Everything here is pure and deterministic: the same tagged utterances always
produce the same counts and score, so results can be recomputed from the
store at any time.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal

from pcit_pipeline.errors import ConsistencyError
from pcit_pipeline.schemas import ScoreResult, SessionMode, SpeakerRole, Utterance
from pcit_pipeline.taxonomy import CodingSchema, profile_for

PEN_SKILL_GOAL = 10
PEN_SKILL_MAX_POINTS = 20.0
AVOID_MAX_POINTS = 40.0
AVOID_FREE_ALLOWANCE = 3
AVOID_PASS_LIMIT = 3
PDI_PASS_SCORE = 75

PDI_COMMAND_KEYS = ("direct_command", "indirect_command", "vague_command", "chained_command")


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (96.5 -> 97)."""

    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def count_tags(utterances: Iterable[Utterance], schema: CodingSchema) -> dict[str, int]:
    """Count ADULT utterance tags over the schema's closed vocabulary.

    Every vocabulary key is present. Raises `ConsistencyError` when an ADULT
    utterance is untagged or carries a tag outside the vocabulary.
    """

    counts = schema.empty_counts()
    for utterance in utterances:
        if utterance.role != SpeakerRole.ADULT:
            continue
        if utterance.tag is None:
            raise ConsistencyError(f"ADULT utterance '{utterance.utterance_id}' has no tag.")
        if utterance.tag not in counts:
            raise ConsistencyError(
                f"Utterance '{utterance.utterance_id}' has tag '{utterance.tag}' "
                f"outside the {schema.mode} vocabulary."
            )
        counts[utterance.tag] += 1
    return counts


def skill_totals(mode: SessionMode | str, tag_counts: Mapping[str, int]) -> dict[str, int]:
    """Fold per-tag counts into the skill totals used for scoring and prompts."""

    if SessionMode(mode) == SessionMode.PDI:
        totals = {key: int(tag_counts.get(key, 0)) for key in PDI_COMMAND_KEYS}
        totals["labeled_praise"] = int(tag_counts.get("labeled_praise", 0))
        totals["total_commands"] = sum(totals[key] for key in PDI_COMMAND_KEYS)
        # Shared prompt metrics read CDI-style names.
        totals["praise"] = totals["labeled_praise"]
        totals["command"] = totals["total_commands"]
        totals["criticism"] = int(tag_counts.get("harsh_tone", 0))
        return totals

    return {
        "praise": int(tag_counts.get("labeled_praise", 0)),
        "echo": int(tag_counts.get("echo", 0)),
        "narration": int(tag_counts.get("narration", 0)),
        "question": int(tag_counts.get("question", 0)),
        "command": int(tag_counts.get("direct_command", 0))
        + int(tag_counts.get("indirect_command", 0)),
        "criticism": int(tag_counts.get("negative_talk", 0)),
    }


def _non_negative(counts: Mapping[str, int], key: str) -> int:
    value = int(counts.get(key, 0))
    if value < 0:
        raise ValueError(f"Count '{key}' must be >= 0, got {value}.")
    return value


def _pen_points(count: int) -> float:
    return min(PEN_SKILL_MAX_POINTS, count / PEN_SKILL_GOAL * PEN_SKILL_MAX_POINTS)


def avoid_total(totals: Mapping[str, int]) -> int:
    return sum(_non_negative(totals, key) for key in ("question", "command", "criticism"))


def calculate_cdi_score(totals: Mapping[str, int]) -> int:
    """CDI score from skill totals (praise, echo, narration, question, command, criticism).

    PEN points and the avoid allowance are clamped independently, so a session
    with no skills of either kind scores 40.
    """

    pen_score = (
        _pen_points(_non_negative(totals, "praise"))
        + _pen_points(_non_negative(totals, "echo"))
        + _pen_points(_non_negative(totals, "narration"))
    )
    avoid = avoid_total(totals)
    if avoid < AVOID_FREE_ALLOWANCE:
        avoid_points = AVOID_MAX_POINTS
    else:
        avoid_points = max(0.0, AVOID_MAX_POINTS - (avoid - 2) * 10)
    return round_half_up(pen_score + avoid_points)


def calculate_pdi_score(counts: Mapping[str, int]) -> int:
    """PDI score: share of effective (direct) commands among all scored commands."""

    direct = _non_negative(counts, "direct_command")
    total_commands = sum(_non_negative(counts, key) for key in PDI_COMMAND_KEYS)
    if total_commands == 0:
        return 0
    return round_half_up(100 * direct / total_commands)


def cdi_passed(totals: Mapping[str, int]) -> bool:
    pen_met = all(
        int(totals.get(key, 0)) >= PEN_SKILL_GOAL for key in ("praise", "echo", "narration")
    )
    return pen_met and avoid_total(totals) <= AVOID_PASS_LIMIT


def score_tag_counts(mode: SessionMode | str, tag_counts: Mapping[str, int]) -> ScoreResult:
    """Score a per-tag count map for `mode`."""

    session_mode = SessionMode(mode)
    schema = profile_for(session_mode).schema
    unknown = sorted(set(tag_counts) - set(schema.keys()))
    if unknown:
        raise ValueError(f"Unknown {session_mode} tag keys: {unknown}.")
    counts = {key: _non_negative(tag_counts, key) for key in schema.keys()}

    if session_mode == SessionMode.PDI:
        score = calculate_pdi_score(counts)
        passed = score >= PDI_PASS_SCORE
    else:
        totals = skill_totals(session_mode, counts)
        score = calculate_cdi_score(totals)
        passed = cdi_passed(totals)

    return ScoreResult(mode=session_mode, tag_counts=counts, score=score, passed=passed)


def score_utterances(mode: SessionMode | str, utterances: list[Utterance]) -> ScoreResult:
    """Recompute counts and score from a tagged utterance list.

    The returned counts always sum to the number of ADULT utterances.
    """

    schema = profile_for(mode).schema
    counts = count_tags(utterances, schema)
    adult_count = sum(1 for utterance in utterances if utterance.role == SpeakerRole.ADULT)
    if sum(counts.values()) != adult_count:
        raise ConsistencyError(
            f"Tag counts sum to {sum(counts.values())} but there are {adult_count} "
            "ADULT utterances."
        )
    return score_tag_counts(mode, counts)
