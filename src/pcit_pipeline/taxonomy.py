"""DPICS coding vocabularies and per-mode pipeline profiles.

Each mode is declared once here: the tag vocabulary used by behavior coding,
the DPICS codes the model may emit, and the qualitative stages that run after
scoring. Downstream code looks the profile up instead of branching on mode.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from pcit_pipeline.schemas import SessionMode

STAGE_COMPETENCY = "competency"
STAGE_PROFILING = "profiling"
STAGE_COACHING = "coaching"
STAGE_MILESTONES = "milestones"


@dataclass(frozen=True)
class TagDefinition:
    """One tag in a coding vocabulary."""

    key: str
    name: str
    rank: int
    codes: tuple[str, ...]
    description: str
    effective: bool | None = None


@dataclass(frozen=True)
class CodingSchema:
    """Closed tag vocabulary for one mode."""

    mode: SessionMode
    tags: tuple[TagDefinition, ...]

    def keys(self) -> list[str]:
        return [tag.key for tag in self.tags]

    def tag_for_code(self, code: str) -> TagDefinition | None:
        """Map a DPICS code (case-insensitive) to its tag, or None when unknown."""

        normalized = code.strip().upper()
        for tag in self.tags:
            if normalized in tag.codes:
                return tag
        return None

    def resolve(self, codes: Iterable[str]) -> TagDefinition | None:
        """Pick the winning tag among candidate codes; lower rank wins."""

        candidates = [tag for tag in (self.tag_for_code(code) for code in codes) if tag]
        if not candidates:
            return None
        return min(candidates, key=lambda tag: tag.rank)

    def empty_counts(self) -> dict[str, int]:
        return {tag.key: 0 for tag in self.tags}


CDI_SCHEMA = CodingSchema(
    mode=SessionMode.CDI,
    tags=(
        TagDefinition(
            "echo",
            "Echo",
            1,
            ("RF", "RQ"),
            "Reflection: repeats or paraphrases the child's verbalization, "
            "including reflective questions.",
        ),
        TagDefinition(
            "labeled_praise",
            "Labeled Praise",
            2,
            ("LP",),
            "Praise naming the specific behavior, product, or attribute being praised.",
        ),
        TagDefinition(
            "unlabeled_praise",
            "Unlabeled Praise",
            3,
            ("UP",),
            "Nonspecific positive evaluation such as 'Good job' or 'Awesome'.",
        ),
        TagDefinition(
            "narration",
            "Narration",
            4,
            ("BD",),
            "Behavioral description: describes the child's ongoing, observable behavior.",
        ),
        TagDefinition(
            "direct_command",
            "Direct Command",
            5,
            ("DC",),
            "Clearly stated directive telling the child what to do.",
        ),
        TagDefinition(
            "indirect_command",
            "Indirect Command",
            6,
            ("IC",),
            "Suggestion or implied directive, often phrased as a question.",
        ),
        TagDefinition(
            "question",
            "Question",
            7,
            ("Q",),
            "Information-seeking question that is not a reflection.",
        ),
        TagDefinition(
            "negative_talk",
            "Negative Talk",
            8,
            ("NTA",),
            "Criticism, sarcasm, or disapproval of the child or their behavior.",
        ),
        TagDefinition(
            "neutral",
            "Neutral",
            9,
            ("ID", "AK"),
            "Information description or acknowledgement without skill content.",
        ),
    ),
)

PDI_SCHEMA = CodingSchema(
    mode=SessionMode.PDI,
    tags=(
        TagDefinition(
            "direct_command",
            "Direct Command",
            1,
            ("DC",),
            "Direct, positively stated, specific, single-step command.",
            effective=True,
        ),
        TagDefinition(
            "labeled_praise",
            "Labeled Praise",
            2,
            ("LP",),
            "Specific praise for compliance.",
            effective=True,
        ),
        TagDefinition(
            "correct_warning",
            "Correct Warning",
            3,
            ("CW",),
            "Correctly phrased time-out warning after non-compliance.",
            effective=True,
        ),
        TagDefinition(
            "correct_time_out",
            "Correct Time-Out Statement",
            4,
            ("TO",),
            "Correctly phrased statement sending the child to time-out.",
            effective=True,
        ),
        TagDefinition(
            "indirect_command",
            "Indirect Command",
            5,
            ("IC",),
            "Command phrased as a question or suggestion.",
            effective=False,
        ),
        TagDefinition(
            "negative_command",
            "Negative Command",
            6,
            ("NC",),
            "Tells the child what not to do.",
            effective=False,
        ),
        TagDefinition(
            "vague_command",
            "Vague Command",
            7,
            ("VC",),
            "Command without a specific, observable expected behavior.",
            effective=False,
        ),
        TagDefinition(
            "chained_command",
            "Chained Command",
            8,
            ("CC",),
            "Several commands issued together before compliance is possible.",
            effective=False,
        ),
        TagDefinition(
            "harsh_tone",
            "Harsh Tone",
            9,
            ("HT",),
            "Command or statement delivered with yelling, threats, or anger.",
            effective=False,
        ),
        TagDefinition(
            "neutral",
            "Neutral",
            10,
            ("N",),
            "Any other parent verbalization.",
        ),
    ),
)


@dataclass(frozen=True)
class ModeProfile:
    """Everything that differs between CDI and PDI sessions."""

    mode: SessionMode
    schema: CodingSchema
    qualitative_stages: tuple[str, ...]
    discipline_review: bool = False

    def runs_stage(self, stage: str) -> bool:
        return stage in self.qualitative_stages


MODE_PROFILES: dict[SessionMode, ModeProfile] = {
    SessionMode.CDI: ModeProfile(
        mode=SessionMode.CDI,
        schema=CDI_SCHEMA,
        qualitative_stages=(
            STAGE_COMPETENCY,
            STAGE_PROFILING,
            STAGE_COACHING,
            STAGE_MILESTONES,
        ),
    ),
    SessionMode.PDI: ModeProfile(
        mode=SessionMode.PDI,
        schema=PDI_SCHEMA,
        qualitative_stages=(STAGE_COMPETENCY, STAGE_PROFILING, STAGE_MILESTONES),
        discipline_review=True,
    ),
}


def profile_for(mode: SessionMode | str) -> ModeProfile:
    """Return the mode profile for `mode`."""

    return MODE_PROFILES[SessionMode(mode)]
