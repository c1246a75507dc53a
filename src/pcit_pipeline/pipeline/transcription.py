"""Transcription stage: audio to diarized, persisted utterances."""

from __future__ import annotations

import logging

from pcit_pipeline.errors import ValidationError
from pcit_pipeline.models.gateway import ProviderGateway
from pcit_pipeline.schemas import TranscriptSegment, Utterance
from pcit_pipeline.store.base import SessionRepository

logger = logging.getLogger(__name__)


def render_transcript_text(segments: list[TranscriptSegment]) -> str:
    """Plain-text transcript stored on the session."""

    return "\n".join(f"{segment.speaker}: {segment.text}" for segment in segments)


def clean_segments(segments: list[TranscriptSegment]) -> list[TranscriptSegment]:
    """Drop empty turns and trim whitespace while keeping spoken order."""

    cleaned: list[TranscriptSegment] = []
    for segment in segments:
        text = segment.text.strip()
        if not text:
            continue
        cleaned.append(segment.model_copy(update={"text": text, "speaker": segment.speaker.strip()}))
    return cleaned


async def run_transcription(
    *,
    session_id: str,
    repository: SessionRepository,
    gateway: ProviderGateway | None = None,
    audio: bytes | None = None,
    filename: str = "recording.webm",
    segments: list[TranscriptSegment] | None = None,
    expected_duration: float | None = None,
) -> list[Utterance]:
    """Transcribe audio (or accept pre-diarized segments) and seed the utterance store.

    Existing utterances for the session are replaced. Raises `ValidationError`
    when there is no input or the transcription is empty.
    """

    if segments is None:
        if not audio:
            raise ValidationError("No audio data provided for transcription.")
        if gateway is None:
            raise ValidationError("Audio transcription requires a provider gateway.")
        segments = await gateway.transcribe(
            audio,
            filename=filename,
            caller="transcription",
        )

    cleaned = clean_segments(segments)
    if not cleaned:
        raise ValidationError("Transcription returned no utterances.")
    if any(not segment.speaker for segment in cleaned):
        raise ValidationError("Transcription returned an utterance without a speaker id.")

    if expected_duration:
        last_end = max(segment.end for segment in cleaned)
        if last_end > expected_duration * 1.5 + 5:
            logger.warning(
                "Session %s transcript ends at %.1fs but recording duration is %.1fs.",
                session_id,
                last_end,
                expected_duration,
            )

    utterances = await repository.create_utterances(session_id, cleaned)
    await repository.update_session_fields(
        session_id,
        transcript_text=render_transcript_text(cleaned),
    )
    logger.info(
        "Session %s transcribed into %d utterances from %d speakers.",
        session_id,
        len(utterances),
        len({segment.speaker for segment in cleaned}),
    )
    return utterances
