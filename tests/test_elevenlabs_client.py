"""Tests for the ElevenLabs speech-to-text backend."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from pcit_pipeline.errors import ParseError, ProviderRequestError, TransportError
from pcit_pipeline.models.elevenlabs_client import (
    ElevenLabsTranscriptionBackend,
    clean_utterance_text,
    group_words,
)


def _word(text: str, speaker: str, start: float, end: float) -> dict:
    return {"text": text, "speaker_id": speaker, "start": start, "end": end, "type": "word"}


def _spacing() -> dict:
    return {"text": " ", "type": "spacing"}


def _transcribe(handler) -> list:
    async def _run():
        backend = ElevenLabsTranscriptionBackend(
            api_key="key",
            transport=httpx.MockTransport(handler),
        )
        try:
            return await backend.transcribe(audio=b"audio-bytes", filename="session.webm")
        finally:
            await backend.aclose()

    return asyncio.run(_run())


def test_clean_utterance_text_removes_annotations():
    assert clean_utterance_text("(laughs) Look at   that!") == "Look at that!"
    assert clean_utterance_text("(background noise)") == ""


def test_group_words_splits_on_speaker_and_sentence_end():
    words = [
        _word("You", "speaker_0", 0.0, 0.2),
        _spacing(),
        _word("built", "speaker_0", 0.3, 0.5),
        _spacing(),
        _word("it.", "speaker_0", 0.6, 0.8),
        _word("Now", "speaker_0", 1.0, 1.1),
        _word("red", "speaker_0", 1.2, 1.3),
        _word("Yes", "speaker_1", 1.5, 1.7),
        _word("(giggles)", "speaker_1", 1.8, 2.0),
    ]
    segments = group_words(words)

    assert [(item.speaker, item.text) for item in segments] == [
        ("speaker_0", "You built it."),
        ("speaker_0", "Now red"),
        ("speaker_1", "Yes"),
    ]
    assert segments[0].start == 0.0
    assert segments[0].end == 0.8
    assert segments[2].end == 2.0


def test_group_words_drops_annotation_only_turns():
    assert group_words([_word("(laughs)", "speaker_1", 0.0, 0.5)]) == []


def test_transcribe_posts_multipart_and_groups_words():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(
            200,
            json={
                "text": "Good job. Thanks",
                "words": [
                    _word("Good", "speaker_0", 0.0, 0.2),
                    _word("job.", "speaker_0", 0.3, 0.5),
                    _word("Thanks", "speaker_1", 0.6, 0.9),
                ],
            },
        )

    segments = _transcribe(handler)

    assert seen["headers"]["xi-api-key"] == "key"
    assert b"diarize" in seen["body"]
    assert b"session.webm" in seen["body"]
    assert [item.text for item in segments] == ["Good job.", "Thanks"]


def test_transcribe_falls_back_to_text():
    segments = _transcribe(lambda request: httpx.Response(200, json={"text": "Hello (laughs) there"}))
    assert len(segments) == 1
    assert segments[0].text == "Hello there"
    assert segments[0].speaker == "speaker_0"


def test_server_errors_are_transport_errors():
    with pytest.raises(TransportError, match="503"):
        _transcribe(lambda request: httpx.Response(503, json={}))
    with pytest.raises(TransportError, match="429"):
        _transcribe(lambda request: httpx.Response(429, json={}))


def test_client_errors_are_request_errors():
    with pytest.raises(ProviderRequestError) as exc_info:
        _transcribe(lambda request: httpx.Response(401, json={"detail": "bad key"}))
    assert exc_info.value.status_code == 401


def test_connection_failures_are_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError, match="ConnectError"):
        _transcribe(handler)


def test_non_json_body_is_a_parse_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway maintenance</html>")

    with pytest.raises(ParseError) as exc_info:
        _transcribe(handler)
    assert exc_info.value.raw_text == "<html>gateway maintenance</html>"


def test_non_object_json_is_a_parse_error():
    with pytest.raises(ParseError, match="list"):
        _transcribe(lambda request: httpx.Response(200, json=[{"text": "hi"}]))
