"""Transcript rendering shared by prompt builders."""

from __future__ import annotations

from collections.abc import Mapping

from pcit_pipeline.schemas import SpeakerRole, Utterance


def role_label(utterance: Utterance) -> str:
    if utterance.role == SpeakerRole.ADULT:
        return "Parent"
    if utterance.role == SpeakerRole.CHILD:
        return "Child"
    return utterance.speaker


def render_transcript(utterances: list[Utterance], *, include_tags: bool = False) -> str:
    """Render utterances as `[NN] Role: text` lines keyed by order index."""

    lines: list[str] = []
    for utterance in utterances:
        line = f"[{utterance.order:02d}] {role_label(utterance)}: {utterance.text}"
        if include_tags and utterance.tag:
            line += f" [{utterance.tag}]"
        lines.append(line)
    return "\n".join(lines)


def render_metrics(skill_totals: Mapping[str, int]) -> str:
    """Render CDI skill totals with their practice goals."""

    return (
        f"- Labeled Praises: {skill_totals.get('praise', 0)} (goal: 10+)\n"
        f"- Reflections: {skill_totals.get('echo', 0)} (goal: 10+)\n"
        f"- Behavioral Descriptions: {skill_totals.get('narration', 0)} (goal: 10+)\n"
        f"- Questions: {skill_totals.get('question', 0)} (reduce)\n"
        f"- Commands: {skill_totals.get('command', 0)} (reduce)\n"
        f"- Criticisms: {skill_totals.get('criticism', 0)} (eliminate)"
    )
