"""Provider gateway and model backends."""

from pcit_pipeline.models.elevenlabs_client import ElevenLabsTranscriptionBackend
from pcit_pipeline.models.factory import build_gateway, build_speech_backend
from pcit_pipeline.models.gateway import (
    Capability,
    PromptSpec,
    ProviderGateway,
    SpeechBackend,
    TextBackend,
    extract_json_text,
    parse_structured,
    strip_code_fences,
)
from pcit_pipeline.models.openai_client import OpenAIChatBackend, OpenAITranscriptionBackend

__all__ = [
    "Capability",
    "ElevenLabsTranscriptionBackend",
    "OpenAIChatBackend",
    "OpenAITranscriptionBackend",
    "PromptSpec",
    "ProviderGateway",
    "SpeechBackend",
    "TextBackend",
    "build_gateway",
    "build_speech_backend",
    "extract_json_text",
    "parse_structured",
    "strip_code_fences",
]
