"""Observability helpers."""

from pcit_pipeline.observability.langsmith import get_langsmith_status, maybe_wrap_openai_client
from pcit_pipeline.observability.provenance import (
    LoggingProvenanceSink,
    MemoryProvenanceSink,
    ProvenanceRecord,
    ProvenanceSink,
    generate_request_id,
    hash_content,
)

__all__ = [
    "LoggingProvenanceSink",
    "MemoryProvenanceSink",
    "ProvenanceRecord",
    "ProvenanceSink",
    "generate_request_id",
    "get_langsmith_status",
    "hash_content",
    "maybe_wrap_openai_client",
]
