"""LangSmith tracing for provider clients."""

from __future__ import annotations

import logging
import os
from typing import Any

logger = logging.getLogger(__name__)


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def get_langsmith_status() -> dict[str, Any]:
    """Return effective LangSmith tracing status from the process environment."""

    tracing_value = os.getenv("LANGSMITH_TRACING") or os.getenv("LANGCHAIN_TRACING_V2") or ""
    project = os.getenv("LANGSMITH_PROJECT") or os.getenv("LANGCHAIN_PROJECT") or ""
    api_key = os.getenv("LANGSMITH_API_KEY") or os.getenv("LANGCHAIN_API_KEY") or ""
    return {
        "enabled": _is_truthy(tracing_value),
        "tracing_value": tracing_value,
        "project": project,
        "api_key_present": bool(api_key),
    }


def maybe_wrap_openai_client(client: Any) -> tuple[Any, bool]:
    """Wrap an (async) OpenAI client with the LangSmith tracer when enabled."""

    status = get_langsmith_status()
    if not status["enabled"] or not status["api_key_present"]:
        return client, False

    try:
        from langsmith.wrappers import wrap_openai
    except ImportError:
        logger.warning("LANGSMITH_TRACING is set but the langsmith package is not installed.")
        return client, False

    return wrap_openai(client), True
