"""Pipeline stage implementations."""

from pcit_pipeline.pipeline.behavior_coding import (
    CodingAssignment,
    apply_coding_payload,
    code_behaviors,
)
from pcit_pipeline.pipeline.coaching import generate_coaching_cards
from pcit_pipeline.pipeline.competency import (
    analyze_competency,
    analyze_two_choices_flow,
    review_feedback,
)
from pcit_pipeline.pipeline.milestones import detect_milestones
from pcit_pipeline.pipeline.orchestrator import PipelineOrchestrator, RecordingInput
from pcit_pipeline.pipeline.profiling import profile_development
from pcit_pipeline.pipeline.qualitative import QualitativeResults, run_qualitative_branch
from pcit_pipeline.pipeline.report import build_status_report, camelize
from pcit_pipeline.pipeline.role_identification import (
    NoAdultSpeakerError,
    build_role_identification,
    identify_roles,
)
from pcit_pipeline.pipeline.scoring import (
    calculate_cdi_score,
    calculate_pdi_score,
    count_tags,
    round_half_up,
    score_tag_counts,
    score_utterances,
    skill_totals,
)
from pcit_pipeline.pipeline.transcription import clean_segments, run_transcription

__all__ = [
    "CodingAssignment",
    "NoAdultSpeakerError",
    "PipelineOrchestrator",
    "QualitativeResults",
    "RecordingInput",
    "analyze_competency",
    "analyze_two_choices_flow",
    "apply_coding_payload",
    "build_role_identification",
    "build_status_report",
    "calculate_cdi_score",
    "calculate_pdi_score",
    "camelize",
    "clean_segments",
    "code_behaviors",
    "count_tags",
    "detect_milestones",
    "generate_coaching_cards",
    "identify_roles",
    "profile_development",
    "review_feedback",
    "round_half_up",
    "run_qualitative_branch",
    "run_transcription",
    "score_tag_counts",
    "score_utterances",
    "skill_totals",
]
