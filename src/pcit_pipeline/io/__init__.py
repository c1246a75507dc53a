"""I/O utilities for reading inputs and persisting session records."""

from pcit_pipeline.io.load import (
    InputFileError,
    load_json,
    load_milestone_library,
    load_transcript_json,
)
from pcit_pipeline.io.save import (
    FileLockError,
    atomic_write_text,
    ensure_directory,
    file_lock,
    save_json,
)

__all__ = [
    "FileLockError",
    "InputFileError",
    "atomic_write_text",
    "ensure_directory",
    "file_lock",
    "load_json",
    "load_milestone_library",
    "load_transcript_json",
    "save_json",
]
