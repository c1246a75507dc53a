"""OpenAI backends used by the provider gateway."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    BadRequestError,
    InternalServerError,
    RateLimitError,
)

from pcit_pipeline.errors import ProviderRequestError, TransportError
from pcit_pipeline.observability import maybe_wrap_openai_client
from pcit_pipeline.schemas import TranscriptSegment


def translate_openai_error(exc: Exception) -> Exception:
    """Map an OpenAI SDK exception onto the pipeline error taxonomy."""

    if isinstance(exc, (APITimeoutError, APIConnectionError, RateLimitError, InternalServerError)):
        return TransportError(f"OpenAI transport failure: {type(exc).__name__}.")
    if isinstance(exc, APIStatusError):
        if exc.status_code >= 500:
            return TransportError(f"OpenAI returned HTTP {exc.status_code}.")
        return ProviderRequestError(
            f"OpenAI rejected the request with HTTP {exc.status_code}.",
            status_code=exc.status_code,
        )
    return exc


def _build_client(*, api_key: str, base_url: str | None, timeout_seconds: float) -> tuple[Any, bool]:
    # Retries are owned by the gateway's policy, so the SDK's own are disabled.
    base_client = AsyncOpenAI(
        api_key=api_key,
        base_url=base_url or None,
        timeout=timeout_seconds,
        max_retries=0,
    )
    return maybe_wrap_openai_client(base_client)


class OpenAIChatBackend:
    """Chat-completions backend for OpenAI and OpenAI-compatible endpoints."""

    provider_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        timeout_seconds: float = 120.0,
        client: Any | None = None,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            self._client, self._langsmith_wrapped = _build_client(
                api_key=api_key,
                base_url=base_url,
                timeout_seconds=timeout_seconds,
            )
        else:
            self._client, self._langsmith_wrapped = client, False
        self._model = model
        self._request_count = 0
        self._json_fallback_count = 0
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    def _supports_json_fallback(self, exc: BadRequestError) -> bool:
        """Return True when the error suggests JSON response format is unsupported."""

        message = str(exc).lower()
        fallback_tokens: Sequence[str] = (
            "response_format",
            "json_object",
            "unsupported",
            "not supported",
        )
        return any(token in message for token in fallback_tokens)

    def _record_usage(self, usage: Any) -> None:
        self._request_count += 1
        self._prompt_tokens += int(getattr(usage, "prompt_tokens", 0) or 0)
        self._completion_tokens += int(getattr(usage, "completion_tokens", 0) or 0)
        self._total_tokens += int(getattr(usage, "total_tokens", 0) or 0)

    async def _create(self, *, request: dict[str, Any], stream: bool) -> str:
        if not stream:
            response = await self._client.chat.completions.create(**request)
            self._record_usage(getattr(response, "usage", None))
            return response.choices[0].message.content or ""

        chunks: list[str] = []
        response_stream = await self._client.chat.completions.create(
            **request,
            stream=True,
            stream_options={"include_usage": True},
        )
        usage = None
        async for chunk in response_stream:
            if getattr(chunk, "usage", None) is not None:
                usage = chunk.usage
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                chunks.append(delta)
        self._record_usage(usage)
        return "".join(chunks)

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
        """Call chat completions and return the message text."""

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        request: dict[str, Any] = {
            "model": model or self._model,
            "temperature": temperature,
            "max_tokens": max_output_tokens,
            "messages": messages,
        }
        if json_output:
            request["response_format"] = {"type": "json_object"}

        try:
            try:
                return await self._create(request=request, stream=stream)
            except BadRequestError as exc:
                if not json_output or not self._supports_json_fallback(exc):
                    raise
                self._json_fallback_count += 1
                request.pop("response_format", None)
                return await self._create(request=request, stream=stream)
        except (APIConnectionError, APIStatusError) as exc:
            raise translate_openai_error(exc) from exc

    def metrics_snapshot(self) -> dict:
        """Return cumulative request/usage metrics for this backend instance."""

        return {
            "request_count": self._request_count,
            "json_fallback_count": self._json_fallback_count,
            "prompt_tokens": self._prompt_tokens,
            "completion_tokens": self._completion_tokens,
            "total_tokens": self._total_tokens,
            "model": self._model,
            "langsmith_wrapped": self._langsmith_wrapped,
        }


def _normalize_speaker(label: Any) -> str:
    text = str(label or "0").strip()
    return text if text.startswith("speaker_") else f"speaker_{text}"


class OpenAITranscriptionBackend:
    """Diarized speech-to-text through the OpenAI transcriptions endpoint."""

    provider_name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-transcribe-diarize",
        base_url: str | None = None,
        timeout_seconds: float = 300.0,
        client: Any | None = None,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            client, _ = _build_client(
                api_key=api_key,
                base_url=base_url,
                timeout_seconds=timeout_seconds,
            )
        self._client = client
        self._model = model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    async def transcribe(self, *, audio: bytes, filename: str) -> list[TranscriptSegment]:
        """Upload audio and return diarized segments in spoken order."""

        try:
            response = await self._client.audio.transcriptions.create(
                file=(filename, audio),
                model=self._model,
                response_format="diarized_json",
                chunking_strategy="auto",
            )
        except (APIConnectionError, APIStatusError) as exc:
            raise translate_openai_error(exc) from exc

        segments: list[TranscriptSegment] = []
        for segment in getattr(response, "segments", None) or []:
            text = str(getattr(segment, "text", "") or "").strip()
            if not text:
                continue
            start = float(getattr(segment, "start", 0.0) or 0.0)
            end = float(getattr(segment, "end", start) or start)
            segments.append(
                TranscriptSegment(
                    speaker=_normalize_speaker(getattr(segment, "speaker", None)),
                    text=text,
                    start=start,
                    end=max(start, end),
                )
            )
        return segments
