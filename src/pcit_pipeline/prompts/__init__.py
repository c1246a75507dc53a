"""Prompt builders for the analysis pipeline."""

from pcit_pipeline.prompts.coding_prompts import build_coding_system_prompt, build_coding_user_prompt
from pcit_pipeline.prompts.feedback_prompts import (
    COMPETENCY_SYSTEM_PROMPT,
    FEEDBACK_REVIEW_SYSTEM_PROMPT,
    PDI_TWO_CHOICES_SYSTEM_PROMPT,
    build_competency_user_prompt,
    build_feedback_review_user_prompt,
    build_pdi_two_choices_user_prompt,
)
from pcit_pipeline.prompts.milestone_prompts import (
    MILESTONE_DETECTION_SYSTEM_PROMPT,
    build_milestone_user_prompt,
)
from pcit_pipeline.prompts.profiling_prompts import (
    CDI_COACHING_SYSTEM_PROMPT,
    COACHING_FORMAT_SYSTEM_PROMPT,
    DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT,
    build_coaching_format_user_prompt,
    build_coaching_user_prompt,
    build_profiling_user_prompt,
)
from pcit_pipeline.prompts.role_prompts import (
    ROLE_IDENTIFICATION_SYSTEM_PROMPT,
    build_role_identification_user_prompt,
)
from pcit_pipeline.prompts.transcript import render_transcript

__all__ = [
    "CDI_COACHING_SYSTEM_PROMPT",
    "COACHING_FORMAT_SYSTEM_PROMPT",
    "COMPETENCY_SYSTEM_PROMPT",
    "DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT",
    "FEEDBACK_REVIEW_SYSTEM_PROMPT",
    "MILESTONE_DETECTION_SYSTEM_PROMPT",
    "PDI_TWO_CHOICES_SYSTEM_PROMPT",
    "ROLE_IDENTIFICATION_SYSTEM_PROMPT",
    "build_coaching_format_user_prompt",
    "build_coaching_user_prompt",
    "build_coding_system_prompt",
    "build_coding_user_prompt",
    "build_competency_user_prompt",
    "build_feedback_review_user_prompt",
    "build_milestone_user_prompt",
    "build_pdi_two_choices_user_prompt",
    "build_profiling_user_prompt",
    "build_role_identification_user_prompt",
    "render_transcript",
]
