"""ElevenLabs Scribe speech-to-text backend."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

from pcit_pipeline.errors import ParseError, ProviderRequestError, TransportError
from pcit_pipeline.schemas import TranscriptSegment

_SENTENCE_END = (".", "?", "!")
_PARENTHESIZED = re.compile(r"\([^)]*\)")
_WHITESPACE = re.compile(r"\s+")


def clean_utterance_text(text: str) -> str:
    """Drop parenthesized sound annotations such as '(laughs)' and collapse spaces."""

    return _WHITESPACE.sub(" ", _PARENTHESIZED.sub("", text)).strip()


def group_words(words: list[dict[str, Any]]) -> list[TranscriptSegment]:
    """Group a diarized word stream into speaker turns.

    A turn ends when the speaker changes or a word closes a sentence. Spacing
    tokens are skipped and empty turns are dropped.
    """

    segments: list[TranscriptSegment] = []
    current: dict[str, Any] | None = None

    def _flush() -> None:
        if current is None:
            return
        text = clean_utterance_text(" ".join(current["words"]))
        if text:
            segments.append(
                TranscriptSegment(
                    speaker=current["speaker"],
                    text=text,
                    start=current["start"],
                    end=max(current["start"], current["end"]),
                )
            )

    for word in words:
        if word.get("type") == "spacing":
            continue
        token = str(word.get("text", "")).strip()
        if not token:
            continue
        speaker = str(word.get("speaker_id") or "speaker_0")
        start = float(word.get("start") or 0.0)
        end = float(word.get("end") or start)

        if current is not None and current["speaker"] != speaker:
            _flush()
            current = None
        if current is None:
            current = {"speaker": speaker, "words": [], "start": start, "end": end}
        current["words"].append(token)
        current["end"] = end

        if token.endswith(_SENTENCE_END):
            _flush()
            current = None

    _flush()
    return segments


class ElevenLabsTranscriptionBackend:
    """Thin async client around ElevenLabs' speech-to-text endpoint."""

    provider_name = "elevenlabs"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "scribe_v1",
        base_url: str = "https://api.elevenlabs.io/v1/speech-to-text",
        timeout_seconds: float = 300.0,
        num_speakers: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model
        self._base_url = base_url
        self._num_speakers = num_speakers
        self._http = httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"xi-api-key": api_key},
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""

        await self._http.aclose()

    async def transcribe(self, *, audio: bytes, filename: str) -> list[TranscriptSegment]:
        """Upload audio and return diarized speaker turns."""

        data = {
            "model_id": self._model,
            "diarize": "true",
            "timestamps_granularity": "word",
        }
        if self._num_speakers:
            data["num_speakers"] = str(self._num_speakers)

        try:
            response = await self._http.post(
                self._base_url,
                data=data,
                files={"file": (filename, audio)},
            )
        except httpx.TimeoutException as exc:
            raise TransportError("ElevenLabs request timed out.") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"ElevenLabs request failed: {type(exc).__name__}.") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransportError(f"ElevenLabs returned HTTP {response.status_code}.")
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"ElevenLabs rejected the request with HTTP {response.status_code}.",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ParseError(
                f"ElevenLabs response was not valid JSON: {exc.msg}.", raw_text=response.text
            ) from exc
        if not isinstance(payload, dict):
            raise ParseError(
                f"Unexpected transcription response type: {type(payload).__name__}.",
                raw_text=response.text,
            )

        words = payload.get("words")
        if isinstance(words, list) and words:
            return group_words([word for word in words if isinstance(word, dict)])

        text = clean_utterance_text(str(payload.get("text") or ""))
        if text:
            return [TranscriptSegment(speaker="speaker_0", text=text, start=0.0, end=0.0)]
        return []
