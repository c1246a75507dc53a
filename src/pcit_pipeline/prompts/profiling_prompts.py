"""Prompts for developmental profiling and CDI coaching."""

from __future__ import annotations

from collections.abc import Mapping

from pcit_pipeline.prompts.transcript import render_metrics, render_transcript
from pcit_pipeline.schemas import ChildInfo, Session, Utterance

DEVELOPMENTAL_DOMAINS = (
    "language",
    "cognitive",
    "social_emotional",
    "play_skills",
    "self_regulation",
)

DEVELOPMENTAL_PROFILING_SYSTEM_PROMPT = f"""You are a child development psychologist observing
a recorded parent-child play session.
Describe what this session shows about the child's development. Base every observation
on evidence in the transcript and compare it with typical development for the child's age.

Return strict JSON with exactly these keys:
{{
  "summary": "<2-3 sentence overview of the child in this session>",
  "domains": [
    {{
      "domain": "<one of: {', '.join(DEVELOPMENTAL_DOMAINS)}>",
      "observation": "<what the child did, with a short quote>",
      "level": "emerging" | "on_track" | "advanced" | "not_observed"
    }}
  ],
  "metadata": {{
    "child_utterance_count": <integer>,
    "mean_length_of_utterance": <number>,
    "notable_words": ["<word>", ...]
  }}
}}

Rules:
- Include each domain at most once.
- Use "not_observed" instead of guessing when the transcript has no evidence.
"""


def render_child_context(child: ChildInfo) -> str:
    age = f"{child.age_months} months" if child.age_months is not None else "unknown"
    return (
        f"Child name: {child.name}\n"
        f"Child age: {age}\n"
        f"Child gender: {child.gender}\n"
        f"Parent-reported focus: {child.clinical_focus or 'none'}"
    )


def render_history(history: list[Session]) -> str:
    """Summarize prior completed sessions for the same child, newest first."""

    if not history:
        return "No previous sessions."
    lines: list[str] = []
    for session in history:
        line = f"- {session.created_at.date().isoformat()} {session.mode}: score {session.score}"
        if session.developmental_observation is not None:
            line += f"; observed: {session.developmental_observation.summary}"
        if session.coaching_cards is not None and session.coaching_cards.tomorrow_goal:
            line += f"; goal set: {session.coaching_cards.tomorrow_goal}"
        lines.append(line)
    return "\n".join(lines)


def build_profiling_user_prompt(
    *,
    utterances: list[Utterance],
    child: ChildInfo,
    skill_totals: Mapping[str, int],
    history: list[Session],
) -> str:
    """Render child details, history, metrics, and transcript for profiling."""

    return (
        f"{render_child_context(child)}\n\n"
        "Previous sessions:\n"
        f"{render_history(history)}\n\n"
        "Parent skill metrics this session:\n"
        f"{render_metrics(skill_totals)}\n\n"
        "Transcript:\n"
        f"{render_transcript(utterances)}\n"
    )


CDI_COACHING_SYSTEM_PROMPT = """You are a warm, practical parenting coach who specializes in
Child-Directed Interaction.
Write a coaching report for the parent in plain language. Cover what went well, the one
or two skills that would make the biggest difference next time, concrete phrases the parent
can try with this child, and how today compares with previous sessions.
Do not use clinical jargon. Do not return JSON.
"""


def build_coaching_user_prompt(
    *,
    utterances: list[Utterance],
    child: ChildInfo,
    skill_totals: Mapping[str, int],
    history: list[Session],
) -> str:
    """Render the coaching report request."""

    return (
        f"{render_child_context(child)}\n\n"
        "Previous sessions:\n"
        f"{render_history(history)}\n\n"
        "Session metrics:\n"
        f"{render_metrics(skill_totals)}\n\n"
        "Transcript:\n"
        f"{render_transcript(utterances, include_tags=True)}\n"
    )


COACHING_FORMAT_SYSTEM_PROMPT = """You turn a parenting coaching report into cards for a
mobile app.
Select the three most useful sections of the report and rewrite each for a phone screen
(title under 6 words, content under 60 words). Keep the coach's voice.

Return strict JSON with exactly these keys:
{
  "sections": [
    {"title": "<short title>", "content": "<card text>"}
  ],
  "tomorrow_goal": "<one concrete goal for the next session>"
}
"""


def build_coaching_format_user_prompt(report: str) -> str:
    return f"Coaching report:\n\n{report}\n"
