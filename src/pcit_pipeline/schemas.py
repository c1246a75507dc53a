"""Core data schemas for the analysis pipeline."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class SessionMode(StrEnum):
    """Interaction mode; selects the coding vocabulary and qualitative stages."""

    CDI = "CDI"
    PDI = "PDI"


class AnalysisStatus(StrEnum):
    """Session analysis lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_STATUS_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.PENDING: frozenset({AnalysisStatus.PROCESSING}),
    AnalysisStatus.PROCESSING: frozenset(
        {AnalysisStatus.PROCESSING, AnalysisStatus.COMPLETED, AnalysisStatus.FAILED}
    ),
    AnalysisStatus.COMPLETED: frozenset(),
    AnalysisStatus.FAILED: frozenset(),
}


def can_transition(current: AnalysisStatus, target: AnalysisStatus) -> bool:
    """Return whether the status machine allows `current -> target`."""

    return target in ALLOWED_STATUS_TRANSITIONS[current]


class SpeakerRole(StrEnum):
    ADULT = "ADULT"
    CHILD = "CHILD"


class MilestoneStatus(StrEnum):
    EMERGING = "EMERGING"
    ACHIEVED = "ACHIEVED"


class TranscriptSegment(BaseModel):
    """One diarized speaker turn as returned by a speech-to-text backend."""

    speaker: str
    text: str
    start: float = Field(ge=0.0)
    end: float = Field(ge=0.0)


class Utterance(BaseModel):
    """A persisted speaker turn with role, tag, and feedback fields."""

    utterance_id: str
    session_id: str
    order: int = Field(ge=0)
    speaker: str
    text: str
    start: float = 0.0
    end: float = 0.0
    role: SpeakerRole | None = None
    tag: str | None = None
    code: str | None = None
    feedback: str | None = None
    revised_feedback: str | None = None
    additional_tip: str | None = None


class SpeakerClassification(BaseModel):
    """Role assigned to one diarized speaker."""

    role: SpeakerRole
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    utterance_count: int = 0
    ambiguous: bool = False


class RoleIdentification(BaseModel):
    """Speaker-id keyed role map produced by role identification."""

    speakers: dict[str, SpeakerClassification]

    def role_map(self) -> dict[str, SpeakerRole]:
        return {speaker_id: item.role for speaker_id, item in self.speakers.items()}

    def adult_speaker_ids(self) -> list[str]:
        return [
            speaker_id
            for speaker_id, item in self.speakers.items()
            if item.role == SpeakerRole.ADULT
        ]

    def child_speaker_ids(self) -> list[str]:
        return [
            speaker_id
            for speaker_id, item in self.speakers.items()
            if item.role == SpeakerRole.CHILD
        ]


class ChildInfo(BaseModel):
    """Child details used to personalize prompts."""

    child_id: str
    name: str = "the child"
    age_months: int | None = None
    gender: str = "child"
    clinical_focus: str | None = None


class ScoreResult(BaseModel):
    """Output of tag aggregation and scoring."""

    mode: SessionMode
    tag_counts: dict[str, int]
    score: int = Field(ge=0, le=100)
    passed: bool = False


class PdiSkillRating(BaseModel):
    model_config = ConfigDict(extra="allow")

    skill: str
    rating: str
    feedback: str = ""


class PdiTwoChoicesAnalysis(BaseModel):
    """Discipline-flow review attached to PDI competency analysis."""

    skills: list[PdiSkillRating]
    command_sequences: list[dict] = Field(default_factory=list)
    tomorrow_goal: str | None = None
    encouragement: str | None = None
    summary: str | None = None


class CompetencyAnalysis(BaseModel):
    """Top-moment highlight and narrative feedback for one session."""

    top_moment: str | None = None
    top_moment_utterance_number: int | None = None
    feedback: str | None = None
    example_utterance_number: int | None = None
    activity: str | None = None
    child_reaction: str | None = None
    reminder: str | None = None
    mode: SessionMode
    analyzed_at: datetime
    pdi_two_choices: PdiTwoChoicesAnalysis | None = None


class CoachingSection(BaseModel):
    title: str
    content: str


class CoachingCards(BaseModel):
    """Formatted coaching sections derived from a free-text coaching report."""

    sections: list[CoachingSection]
    tomorrow_goal: str | None = None
    summary: str | None = None


class DevelopmentalDomain(BaseModel):
    model_config = ConfigDict(extra="allow")

    domain: str
    observation: str


class DevelopmentalObservation(BaseModel):
    """Developmental profiling output for the child in one session."""

    summary: str
    domains: list[DevelopmentalDomain]
    metadata: dict | None = None


class MilestoneDefinition(BaseModel):
    """One entry of the milestone library."""

    key: str
    category: str
    stage: str = ""
    title: str
    median_age_months: int | None = None
    mastery_90_age_months: int | None = None
    threshold_value: int = Field(default=2, ge=0)
    action_tip: str = ""


class ChildMilestone(BaseModel):
    """Per-child milestone state."""

    child_id: str
    milestone_key: str
    status: MilestoneStatus
    first_observed_at: datetime
    achieved_at: datetime | None = None


class MilestoneCelebration(BaseModel):
    status: MilestoneStatus
    category: str
    title: str
    action_tip: str = ""


class ChildProfilingRecord(BaseModel):
    """Stored profiling result, used to count sessions for milestone promotion."""

    child_id: str
    session_id: str
    created_at: datetime
    observation: DevelopmentalObservation


class Session(BaseModel):
    """One analyzed recording."""

    session_id: str
    mode: SessionMode
    duration_seconds: float = 0.0
    child_id: str | None = None
    transcript_text: str | None = None
    status: AnalysisStatus = AnalysisStatus.PENDING
    error_message: str | None = None
    error_code: str | None = None
    failed_at: datetime | None = None
    retry_count: int = 0
    last_retried_at: datetime | None = None
    tag_counts: dict[str, int] | None = None
    score: int | None = None
    passed: bool | None = None
    role_identification: RoleIdentification | None = None
    competency_analysis: CompetencyAnalysis | None = None
    coaching_cards: CoachingCards | None = None
    developmental_observation: DevelopmentalObservation | None = None
    milestone_celebrations: list[MilestoneCelebration] | None = None
    created_at: datetime
    updated_at: datetime
    processing_started_at: datetime | None = None
