"""Error taxonomy shared by the gateway, stages, and orchestrator."""

from __future__ import annotations

USER_FACING_FAILURE_MESSAGE = "Analysis failed, please try recording again."


class PipelineError(RuntimeError):
    """Base class for all pipeline failures."""


class TransportError(PipelineError):
    """Raised for network errors, timeouts, rate limits, and 5xx responses."""


class ProviderRequestError(PipelineError):
    """Raised when a provider rejects the request itself (4xx)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationError(PipelineError):
    """Raised when a stage receives input it cannot work with."""


class ParseError(PipelineError):
    """Raised when provider output does not match the expected structured shape."""

    def __init__(self, message: str, *, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class ConsistencyError(PipelineError):
    """Raised when model output references unknown keys or omits required ones."""


class StageError(PipelineError):
    """Raised by the orchestrator when a mandatory stage gives up."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Stage '{stage}' failed: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.cause = cause


def is_transient(exc: BaseException) -> bool:
    """Return whether an exception should be retried by the provider gateway."""

    return isinstance(exc, TransportError)


def is_retryable_stage_error(exc: BaseException) -> bool:
    """Return whether a mandatory stage should be attempted again after `exc`."""

    if isinstance(exc, (ValidationError, ProviderRequestError)):
        return False
    return isinstance(exc, (TransportError, ParseError, ConsistencyError))
