"""Build a configured provider gateway from settings."""

from __future__ import annotations

import logging

from pcit_pipeline.config import Settings
from pcit_pipeline.models.elevenlabs_client import ElevenLabsTranscriptionBackend
from pcit_pipeline.models.gateway import ProviderGateway, SpeechBackend
from pcit_pipeline.models.openai_client import OpenAIChatBackend, OpenAITranscriptionBackend
from pcit_pipeline.observability.provenance import ProvenanceSink
from pcit_pipeline.retry import gateway_policy

logger = logging.getLogger(__name__)


def build_speech_backend(settings: Settings) -> SpeechBackend | None:
    """Return the configured speech-to-text backend, or None when it has no credentials."""

    provider = settings.resolved_transcription_provider()
    if provider == "elevenlabs":
        if not settings.elevenlabs_api_key.strip():
            logger.warning("ELEVENLABS_API_KEY is not set; audio transcription is unavailable.")
            return None
        return ElevenLabsTranscriptionBackend(
            api_key=settings.elevenlabs_api_key.strip(),
            model=settings.elevenlabs_transcription_model,
            timeout_seconds=settings.report_timeout_seconds,
        )

    if not settings.resolved_openai_api_key():
        logger.warning("OPENAI_API_KEY is not set; audio transcription is unavailable.")
        return None
    return OpenAITranscriptionBackend(
        api_key=settings.resolved_openai_api_key(),
        model=settings.openai_transcription_model,
        base_url=settings.resolved_openai_base_url(),
        timeout_seconds=settings.report_timeout_seconds,
    )


def build_gateway(
    settings: Settings,
    *,
    provenance_sink: ProvenanceSink | None = None,
) -> ProviderGateway:
    """Build the OpenAI-backed gateway used by the CLI."""

    if not settings.resolved_openai_api_key():
        raise ValueError(
            "OPENAI_API_KEY or AZURE_OPENAI_API_KEY is required for session analysis. "
            "Set it in your environment or .env."
        )

    backend = OpenAIChatBackend(
        api_key=settings.resolved_openai_api_key(),
        model=settings.resolved_openai_model(),
        base_url=settings.resolved_openai_base_url(),
        timeout_seconds=settings.request_timeout_seconds,
    )
    return ProviderGateway(
        backend,
        speech_backend=build_speech_backend(settings),
        retry_policy=gateway_policy(
            max_attempts=settings.client_max_retries,
            backoff_base=settings.client_backoff_base,
        ),
        timeout_seconds=settings.request_timeout_seconds,
        provenance_sink=provenance_sink,
    )
