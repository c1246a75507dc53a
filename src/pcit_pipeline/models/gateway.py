"""Vendor-agnostic gateway in front of text-generation and speech-to-text backends."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from pcit_pipeline.errors import ParseError, TransportError
from pcit_pipeline.observability.provenance import (
    LoggingProvenanceSink,
    ProvenanceRecord,
    ProvenanceSink,
    generate_request_id,
    hash_content,
)
from pcit_pipeline.retry import RetryPolicy, SleepFunc, gateway_policy
from pcit_pipeline.schemas import TranscriptSegment

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_PATTERN = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```", re.DOTALL)


class Capability(StrEnum):
    TEXT = "text"
    STREAMING = "streaming"
    SPEECH_TO_TEXT = "speech_to_text"


@dataclass(frozen=True)
class PromptSpec:
    """One rendered request to a text-generation backend."""

    prompt_text: str
    caller: str
    purpose: str
    system_prompt: str = ""
    model: str | None = None
    capability: Capability = Capability.TEXT
    max_output_tokens: int = 4096
    temperature: float = 0.0


class TextBackend(Protocol):
    """Protocol for chat-style text-generation backends."""

    provider_name: str

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str | None,
        temperature: float,
        max_output_tokens: int,
        json_output: bool,
        stream: bool,
    ) -> str:
        """Return the raw completion text."""


class SpeechBackend(Protocol):
    """Protocol for diarizing speech-to-text backends."""

    provider_name: str

    async def transcribe(self, *, audio: bytes, filename: str) -> list[TranscriptSegment]:
        """Return diarized speaker turns in spoken order."""


def strip_code_fences(text: str) -> str:
    """Remove a markdown code-fence wrapper if present."""

    stripped = text.strip()
    match = _FENCE_PATTERN.search(stripped)
    if match:
        return match.group(1).strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
    if stripped.endswith("```"):
        stripped = stripped[:-3]
    return stripped.strip()


def extract_json_text(text: str) -> str:
    """Return the JSON document embedded in model output.

    Code fences are stripped first; any prose before the first `{`/`[` or after
    the matching last `}`/`]` is dropped.
    """

    cleaned = strip_code_fences(text)
    starts = [index for index in (cleaned.find("{"), cleaned.find("[")) if index >= 0]
    if not starts:
        return cleaned
    start = min(starts)
    closing = "}" if cleaned[start] == "{" else "]"
    end = cleaned.rfind(closing)
    if end < start:
        return cleaned[start:]
    return cleaned[start : end + 1]


def _single_list_field(expected_shape: type[BaseModel]) -> str | None:
    """Name of the only field when `expected_shape` wraps a single list, else None."""

    fields = expected_shape.model_fields
    if len(fields) != 1:
        return None
    name, info = next(iter(fields.items()))
    origin = getattr(info.annotation, "__origin__", None)
    return name if origin is list else None


def parse_structured(raw_text: str, expected_shape: type[ModelT] | None = None) -> Any:
    """Parse model output into JSON and optionally validate it against `expected_shape`."""

    candidate = extract_json_text(raw_text)
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Model response was not valid JSON: {exc.msg}.", raw_text=raw_text) from exc

    if expected_shape is None:
        return payload

    if isinstance(payload, list):
        wrapper_field = _single_list_field(expected_shape)
        if wrapper_field is not None:
            payload = {wrapper_field: payload}

    try:
        return expected_shape.model_validate(payload)
    except PydanticValidationError as exc:
        raise ParseError(
            f"Model response did not match {expected_shape.__name__}: "
            f"{exc.error_count()} validation error(s).",
            raw_text=raw_text,
        ) from exc


class ProviderGateway:
    """Single entry point for every provider call made by the pipeline.

    Applies a bounded timeout and the injected retry policy to each call,
    parses structured output, and emits an anonymized provenance record.
    """

    def __init__(
        self,
        backend: TextBackend,
        *,
        speech_backend: SpeechBackend | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 120.0,
        provenance_sink: ProvenanceSink | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self._backend = backend
        self._speech_backend = speech_backend
        self._retry_policy = retry_policy or gateway_policy()
        self._timeout_seconds = timeout_seconds
        self._provenance_sink = provenance_sink or LoggingProvenanceSink()
        self._sleep = sleep
        self._request_count = 0
        self._retry_delays: list[float] = []

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _on_retry(self, caller: str, purpose: str):
        def _record(attempt_number: int, delay: float, exc: BaseException) -> None:
            self._retry_delays.append(delay)
            logger.warning(
                "Provider call %s/%s failed on attempt %d (%s); retrying in %.1fs.",
                caller,
                purpose,
                attempt_number,
                type(exc).__name__,
                delay,
            )

        return _record

    async def _with_timeout(self, awaitable, *, timeout_seconds: float | None = None):
        timeout = timeout_seconds or self._timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as exc:
            raise TransportError(f"Provider call timed out after {timeout:.0f}s.") from exc

    def _record_provenance(
        self,
        *,
        request_id: str,
        caller: str,
        purpose: str,
        provider: str,
        capability: Capability,
        request_content: str | bytes,
        response_size: int,
        succeeded: bool,
    ) -> None:
        entry = ProvenanceRecord(
            request_id=request_id,
            caller=caller,
            purpose=purpose,
            provider=provider,
            capability=str(capability),
            request_size=len(request_content),
            response_size=response_size,
            content_hash=hash_content(request_content),
            succeeded=succeeded,
        )
        try:
            self._provenance_sink.record(entry)
        except Exception:
            logger.warning("Provenance sink rejected record %s.", request_id, exc_info=True)

    async def _complete(
        self,
        spec: PromptSpec,
        *,
        json_output: bool,
        timeout_seconds: float | None = None,
    ) -> str:
        if spec.capability == Capability.SPEECH_TO_TEXT:
            raise ValueError("Speech-to-text requests must go through transcribe().")

        request_id = generate_request_id()
        self._request_count += 1

        async def _attempt() -> str:
            return await self._with_timeout(
                self._backend.complete(
                    system_prompt=spec.system_prompt,
                    user_prompt=spec.prompt_text,
                    model=spec.model,
                    temperature=spec.temperature,
                    max_output_tokens=spec.max_output_tokens,
                    json_output=json_output,
                    stream=spec.capability == Capability.STREAMING,
                ),
                timeout_seconds=timeout_seconds,
            )

        request_content = f"{spec.system_prompt}\n{spec.prompt_text}"
        try:
            text = await self._retry_policy.call(
                _attempt,
                on_retry=self._on_retry(spec.caller, spec.purpose),
                sleep=self._sleep,
            )
        except Exception:
            self._record_provenance(
                request_id=request_id,
                caller=spec.caller,
                purpose=spec.purpose,
                provider=self._backend.provider_name,
                capability=spec.capability,
                request_content=request_content,
                response_size=0,
                succeeded=False,
            )
            raise

        self._record_provenance(
            request_id=request_id,
            caller=spec.caller,
            purpose=spec.purpose,
            provider=self._backend.provider_name,
            capability=spec.capability,
            request_content=request_content,
            response_size=len(text),
            succeeded=True,
        )
        return text

    async def invoke(
        self,
        spec: PromptSpec,
        expected_shape: type[ModelT] | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> Any:
        """Request structured output and return it parsed.

        Returns an `expected_shape` instance when a model type is given, else the
        decoded JSON value. Raises `TransportError`, `ProviderRequestError`, or
        `ParseError`.
        """

        text = await self._complete(spec, json_output=True, timeout_seconds=timeout_seconds)
        return parse_structured(text, expected_shape)

    async def invoke_text(self, spec: PromptSpec, *, timeout_seconds: float | None = None) -> str:
        """Request free-form text output."""

        text = await self._complete(spec, json_output=False, timeout_seconds=timeout_seconds)
        if not text.strip():
            raise ParseError("Model returned empty text.", raw_text=text)
        return text.strip()

    async def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        caller: str,
        purpose: str = "transcription",
        timeout_seconds: float | None = None,
    ) -> list[TranscriptSegment]:
        """Run diarized speech-to-text under the gateway's timeout and retry policy."""

        if self._speech_backend is None:
            raise ValueError("No speech-to-text backend configured.")

        request_id = generate_request_id()
        self._request_count += 1
        backend = self._speech_backend

        async def _attempt() -> list[TranscriptSegment]:
            return await self._with_timeout(
                backend.transcribe(audio=audio, filename=filename),
                timeout_seconds=timeout_seconds,
            )

        try:
            segments = await self._retry_policy.call(
                _attempt,
                on_retry=self._on_retry(caller, purpose),
                sleep=self._sleep,
            )
        except Exception:
            self._record_provenance(
                request_id=request_id,
                caller=caller,
                purpose=purpose,
                provider=backend.provider_name,
                capability=Capability.SPEECH_TO_TEXT,
                request_content=audio,
                response_size=0,
                succeeded=False,
            )
            raise

        self._record_provenance(
            request_id=request_id,
            caller=caller,
            purpose=purpose,
            provider=backend.provider_name,
            capability=Capability.SPEECH_TO_TEXT,
            request_content=audio,
            response_size=sum(len(segment.text) for segment in segments),
            succeeded=True,
        )
        return segments

    async def aclose(self) -> None:
        """Close the network clients held by the text and speech backends."""

        closed: list[Any] = []
        for backend in (self._backend, self._speech_backend):
            if backend is None or any(backend is seen for seen in closed):
                continue
            closed.append(backend)
            close = getattr(backend, "aclose", None)
            if close is not None:
                await close()

    def metrics_snapshot(self) -> dict:
        """Return cumulative request and retry metrics for this gateway."""

        return {
            "request_count": self._request_count,
            "retry_count": len(self._retry_delays),
            "retry_delays": list(self._retry_delays),
            "provider": self._backend.provider_name,
        }
