"""Prompts for milestone detection."""

from __future__ import annotations

import json

from pcit_pipeline.schemas import ChildMilestone, DevelopmentalObservation, MilestoneDefinition

MILESTONE_DETECTION_SYSTEM_PROMPT = """You are a child development specialist.
Match developmental observations from a play session to entries of a milestone library.

Rules:
- Only use milestone keys that appear in the library.
- Only include milestones with clear evidence in the observations.
- Skip milestones listed as already achieved.
- Consider the child's age; matches should be age-appropriate.
- Give a 1-2 sentence evidence summary for each match.

Return strict JSON with exactly these keys:
{
  "detected_milestones": [
    {"milestone_key": "<key>", "evidence_summary": "<evidence>"}
  ],
  "baseline_achieved": [
    {"milestone_key": "<key>", "evidence_summary": "<why it is clearly mastered>"}
  ]
}
"""

_BASELINE_INSTRUCTIONS = """
This is the child's FIRST profiled session. Besides emerging milestones, list in
"baseline_achieved" the basic milestones the child has clearly already mastered: the
milestone's 90% mastery age is at or below the child's age AND the session shows evidence.
"""

_NO_BASELINE_INSTRUCTIONS = """
This is not the child's first profiled session. Return "baseline_achieved" as [].
"""


def build_milestone_user_prompt(
    *,
    observation: DevelopmentalObservation,
    library: list[MilestoneDefinition],
    existing: list[ChildMilestone],
    age_months: int | None,
    first_profiling: bool,
) -> str:
    """Render observations, library, and prior milestone state."""

    library_rows = [
        {
            "key": item.key,
            "category": item.category,
            "stage": item.stage,
            "title": item.title,
            "age_range": f"{item.median_age_months}-{item.mastery_90_age_months}mo",
        }
        for item in library
    ]
    achieved = sorted(item.milestone_key for item in existing if item.status == "ACHIEVED")
    domains = [domain.model_dump(mode="json") for domain in observation.domains]
    age = f"{age_months} months" if age_months is not None else "unknown"
    instructions = _BASELINE_INSTRUCTIONS if first_profiling else _NO_BASELINE_INSTRUCTIONS

    return (
        f"Child age: {age}\n\n"
        "Developmental observations:\n"
        f"{json.dumps(domains, ensure_ascii=True, indent=2)}\n\n"
        "Milestone library:\n"
        f"{json.dumps(library_rows, ensure_ascii=True, indent=2)}\n\n"
        "Already achieved (never downgrade):\n"
        f"{json.dumps(achieved, ensure_ascii=True)}\n"
        f"{instructions}"
    )
