"""Anonymized provenance records for provider calls."""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

logger = logging.getLogger(__name__)


def generate_request_id() -> str:
    """Opaque request identifier sent in place of any user/session identifier."""

    timestamp = format(int(datetime.now(UTC).timestamp() * 1000), "x")
    return f"req_{timestamp}_{secrets.token_hex(8)}"


def hash_content(content: str | bytes) -> str:
    """Return a truncated SHA-256 digest; the content itself is never recorded."""

    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()[:32]


@dataclass(frozen=True)
class ProvenanceRecord:
    """Audit entry for one provider call."""

    request_id: str
    caller: str
    purpose: str
    provider: str
    capability: str
    request_size: int
    response_size: int
    content_hash: str
    succeeded: bool
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ProvenanceSink(Protocol):
    """Collaborator that stores or forwards provenance records."""

    def record(self, entry: ProvenanceRecord) -> None:
        """Persist one provenance record."""


class LoggingProvenanceSink:
    """Write provenance records to the module logger."""

    def record(self, entry: ProvenanceRecord) -> None:
        logger.info(
            "provider_call request_id=%s caller=%s purpose=%s provider=%s capability=%s "
            "request_size=%d response_size=%d hash=%s ok=%s",
            entry.request_id,
            entry.caller,
            entry.purpose,
            entry.provider,
            entry.capability,
            entry.request_size,
            entry.response_size,
            entry.content_hash,
            entry.succeeded,
        )


class MemoryProvenanceSink:
    """Collect provenance records in memory."""

    def __init__(self) -> None:
        self.records: list[ProvenanceRecord] = []

    def record(self, entry: ProvenanceRecord) -> None:
        self.records.append(entry)
