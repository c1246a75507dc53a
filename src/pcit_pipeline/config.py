"""Configuration management for the analysis pipeline."""

from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings, loaded from env vars and optionally overridden by a YAML config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API keys
    openai_api_key: str = ""
    azure_openai_api_key: str = ""
    elevenlabs_api_key: str = ""

    # Model config
    openai_model: str = "gpt-4.1-mini"
    openai_feedback_model: str = ""
    azure_openai_deployment: str = ""
    openai_base_url: str = ""
    azure_openai_endpoint: str = ""
    transcription_provider: str = "openai"
    openai_transcription_model: str = "gpt-4o-transcribe-diarize"
    elevenlabs_transcription_model: str = "scribe_v1"
    coding_temperature: float = 0.0
    role_temperature: float = 0.3
    feedback_temperature: float = 0.7
    profiling_temperature: float = 0.5
    milestone_temperature: float = 0.2

    # Provider gateway
    client_max_retries: int = 3
    client_backoff_base: float = 2.0
    request_timeout_seconds: float = 120.0
    report_timeout_seconds: float = 300.0

    # Orchestration
    stage_max_attempts: int = 3
    stage_retry_delays: list[float] = Field(default_factory=lambda: [5.0, 15.0])
    processing_stale_after_seconds: float = 900.0

    # Stage tuning
    role_confidence_threshold: float = 0.70
    coding_batch_size: int = 40
    coding_max_rounds: int = 3
    history_session_limit: int = 3

    # Paths and logging
    data_dir: Path = Field(default=Path("data"))
    milestone_library_path: Path = Field(default=Path("data/milestone_library.yaml"))
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, config_path: str | Path, **overrides) -> "Settings":
        """Load settings from a YAML config file, with env vars and overrides applied on top."""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_config = yaml.safe_load(f) or {}
        else:
            yaml_config = {}
        merged = {**yaml_config, **overrides}
        return cls(**merged)

    def resolved_openai_base_url(self) -> str:
        """Resolve effective base URL, preferring explicit base URL then Azure endpoint."""

        candidate = self.openai_base_url.strip() or self.azure_openai_endpoint.strip()
        if not candidate:
            return ""

        normalized = candidate.rstrip("/")
        if "azure.com" in normalized.lower() and "openai/v1" not in normalized:
            normalized = f"{normalized}/openai/v1"
        return f"{normalized}/"

    def uses_azure_openai(self) -> bool:
        """Return whether effective endpoint appears to be Azure OpenAI."""

        return "azure.com" in self.resolved_openai_base_url().lower()

    def resolved_openai_api_key(self) -> str:
        """Resolve API key with Azure-aware safeguard."""

        if self.uses_azure_openai():
            return self.azure_openai_api_key.strip()
        if self.openai_api_key.strip():
            return self.openai_api_key.strip()
        return self.azure_openai_api_key.strip()

    def resolved_openai_model(self) -> str:
        """Resolve model/deployment name with Azure-aware safeguard."""

        if self.uses_azure_openai() and self.azure_openai_deployment.strip():
            return self.azure_openai_deployment.strip()
        return self.openai_model.strip()

    def resolved_feedback_model(self) -> str:
        """Model used for narrative feedback; falls back to the coding model."""

        return self.openai_feedback_model.strip() or self.resolved_openai_model()

    def resolved_transcription_provider(self) -> str:
        """Return the normalized speech-to-text provider name."""

        provider = self.transcription_provider.strip().lower()
        if provider not in {"openai", "elevenlabs"}:
            raise ValueError(
                f"Unsupported transcription_provider '{self.transcription_provider}'. "
                "Expected 'openai' or 'elevenlabs'."
            )
        return provider
