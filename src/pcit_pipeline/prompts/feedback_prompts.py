"""Prompts for competency narrative, feedback review, and PDI discipline review."""

from __future__ import annotations

from collections.abc import Mapping

from pcit_pipeline.prompts.transcript import render_metrics, render_transcript, role_label
from pcit_pipeline.schemas import SpeakerRole, Utterance

COMPETENCY_SYSTEM_PROMPT = """You are an expert in parent-child interaction who writes short,
warm session reports for parents.
Do not mention therapy, diagnoses, or clinical terms.
Use the child's name where it reads naturally.

Return strict JSON with exactly these keys:
{
  "top_moment": {
    "quote": "<exact quote from the transcript>",
    "utterance_number": <integer from [NN] in the transcript>
  },
  "feedback": "<opening message for the report, at most 20 words>",
  "example_utterance_number": <integer from [NN] used as the teaching example>,
  "activity": "<short phrase naming what they played>",
  "child_reaction": "<2-3 sentences on how the child responded to the parent>",
  "reminder": "<exactly 2 sentences of forward-looking encouragement>"
}
"""


def build_competency_user_prompt(
    *,
    utterances: list[Utterance],
    skill_totals: Mapping[str, int],
    child_name: str,
    mode: str,
) -> str:
    """Render the session metrics and transcript for the competency narrative."""

    return (
        f"Analyze this {mode} play session with {child_name}.\n\n"
        "Session metrics:\n"
        f"{render_metrics(skill_totals)}\n\n"
        "Tasks:\n"
        "1. Top moment: find the ONE moment showing the strongest connection, joy, or "
        "positive interaction.\n"
        "2. Feedback: an encouraging opening line for the session report.\n"
        "3. Example: the parent utterance that best illustrates what to keep doing "
        "or what to change.\n"
        f"4. Child reaction: insights about {child_name}'s behavior that motivate the "
        "parent to keep practicing.\n"
        "5. Reminder: how improving creates positive experiences for the child.\n\n"
        "Transcript:\n"
        f"{render_transcript(utterances, include_tags=True)}\n"
    )


FEEDBACK_REVIEW_SYSTEM_PROMPT = """You are an experienced PCIT coach reviewing per-utterance
feedback written for a parent.

For desirable skills (labeled praise, reflections, behavioral descriptions) keep the
original feedback and add an additional tip only when it is genuinely insightful.
For undesirable skills (criticism, commands, questions, unlabeled praise) rewrite the
feedback to be constructive and warm, with a specific alternative phrase.

Return strict JSON with exactly this shape:
{
  "reviews": [
    {
      "id": <integer from [NN] in the transcript>,
      "feedback": "<revised feedback, 1-2 sentences>",
      "additional_tip": "<optional tip>" | null
    }
  ]
}

Rules:
- Only review parent utterances.
- Omit utterances whose feedback needs no change and no tip.
"""


def build_feedback_review_user_prompt(
    *,
    utterances: list[Utterance],
    skill_totals: Mapping[str, int],
) -> str:
    """Render utterances with their current tags and feedback for review."""

    blocks: list[str] = []
    for utterance in utterances:
        if utterance.role != SpeakerRole.ADULT:
            blocks.append(f"[{utterance.order:02d}] {role_label(utterance)}: \"{utterance.text}\"")
            continue
        blocks.append(
            f"[{utterance.order:02d}] Parent: \"{utterance.text}\"\n"
            f"    Tag: {utterance.tag or 'None'}\n"
            f"    Current feedback: \"{utterance.feedback or 'None'}\""
        )
    return (
        "Review the parent feedback for this session.\n\n"
        "Session metrics:\n"
        f"{render_metrics(skill_totals)}\n\n"
        "Utterances:\n"
        + "\n\n".join(blocks)
        + "\n"
    )


PDI_TWO_CHOICES_SYSTEM_PROMPT = """You are a PCIT coach evaluating a parent's discipline
practice against the Two Choices Flow:
1. Give one effective command (direct, positive, specific, single-step).
2. Labeled praise immediately after compliance.
3. After non-compliance, a warning that offers two choices (comply or time-out).
4. Follow through with a correct time-out statement if the child still does not comply.

Return strict JSON with exactly these keys:
{
  "skills": [
    {"skill": "<skill name>", "rating": "strong" | "developing" | "needs_practice",
     "feedback": "<1-2 sentences>"}
  ],
  "command_sequences": [
    {"command": "<quote>", "child_response": "complied" | "did_not_comply" | "unclear",
     "parent_follow_up": "<quote or null>", "assessment": "<one sentence>"}
  ],
  "tomorrow_goal": "<one concrete goal>",
  "encouragement": "<1-2 warm sentences>",
  "summary": "<2-3 sentence overview>"
}

Rules:
- Rate each of the four skills exactly once, in the order listed.
"""


def build_pdi_two_choices_user_prompt(*, utterances: list[Utterance], child_name: str) -> str:
    """Render the tagged discipline transcript."""

    return (
        f"Evaluate this discipline practice session with {child_name}.\n\n"
        "Transcript (parent lines carry their behavior tag):\n"
        f"{render_transcript(utterances, include_tags=True)}\n"
    )
