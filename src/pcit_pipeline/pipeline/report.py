"""Status query payloads for callers outside the pipeline."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from pcit_pipeline.schemas import AnalysisStatus, Session, Utterance


def camelize(value: Any) -> Any:
    """Recursively convert dict keys from snake_case to camelCase."""

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    if isinstance(value, dict):
        return {to_camel(str(key)): camelize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [camelize(item) for item in value]
    return value


def transcript_entry(utterance: Utterance) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "speaker": utterance.speaker,
        "text": utterance.text,
        "start": utterance.start,
        "end": utterance.end,
        "role": str(utterance.role) if utterance.role else None,
        "tag": utterance.tag,
    }
    if utterance.revised_feedback:
        entry["revisedFeedback"] = utterance.revised_feedback
    if utterance.additional_tip:
        entry["additionalTip"] = utterance.additional_tip
    return entry


def build_status_report(
    session: Session,
    utterances: list[Utterance] | None = None,
) -> dict[str, Any]:
    """Render the status query result for one session.

    In-flight sessions report only their status. Failed sessions add the
    user-facing error. Completed sessions carry the full analysis; optional
    enrichments that were not computed are omitted.
    """

    report: dict[str, Any] = {"status": str(session.status)}
    if session.status == AnalysisStatus.FAILED:
        report["error"] = session.error_message
        return report
    if session.status != AnalysisStatus.COMPLETED:
        return report

    report["score"] = session.score
    report["passed"] = session.passed
    report["tagCounts"] = dict(session.tag_counts or {})
    if utterances is not None:
        report["transcript"] = [
            transcript_entry(utterance)
            for utterance in sorted(utterances, key=lambda item: item.order)
        ]

    optional = {
        "competencyAnalysis": session.competency_analysis,
        "coachingCards": session.coaching_cards,
        "developmentalObservation": session.developmental_observation,
        "milestoneCelebrations": session.milestone_celebrations,
    }
    for key, value in optional.items():
        if value is not None:
            report[key] = camelize(value)
    return report
