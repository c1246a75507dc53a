"""Retry policy shared by the provider gateway and the orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from pcit_pipeline.errors import is_retryable_stage_error, is_transient

T = TypeVar("T")

RetryCallback = Callable[[int, float, BaseException], None]
SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, backoff schedule, and retryable-error predicate.

    When `delays` is set, the wait after attempt *n* is `delays[n - 1]` (the
    last entry repeats). Otherwise it is `backoff_base ** n` seconds.
    """

    max_attempts: int = 3
    backoff_base: float = 2.0
    delays: tuple[float, ...] = ()
    retry_on: Callable[[BaseException], bool] = field(default=is_transient)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}.")

    def delay_for(self, attempt_number: int) -> float:
        """Seconds to wait after failed attempt `attempt_number` (1-based)."""

        if self.delays:
            index = min(attempt_number, len(self.delays)) - 1
            return float(self.delays[index])
        return float(self.backoff_base**attempt_number)

    def retrying(
        self,
        *,
        on_retry: RetryCallback | None = None,
        sleep: SleepFunc | None = None,
    ) -> AsyncRetrying:
        """Build a tenacity retryer for this policy."""

        def _wait(retry_state: RetryCallState) -> float:
            return self.delay_for(retry_state.attempt_number)

        def _before_sleep(retry_state: RetryCallState) -> None:
            if on_retry is None or retry_state.outcome is None:
                return
            exc = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            on_retry(retry_state.attempt_number, float(delay), exc)

        return AsyncRetrying(
            sleep=sleep or asyncio.sleep,
            retry=retry_if_exception(self.retry_on),
            wait=_wait,
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=_before_sleep,
            reraise=True,
        )

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryCallback | None = None,
        sleep: SleepFunc | None = None,
    ) -> T:
        """Await `func()` under this policy and return its result."""

        result: T | None = None
        completed = False
        async for attempt in self.retrying(on_retry=on_retry, sleep=sleep):
            with attempt:
                result = await func()
                completed = True
        if not completed:
            raise RuntimeError("Retry loop exited without a result.")
        return result  # type: ignore[return-value]


def gateway_policy(*, max_attempts: int = 3, backoff_base: float = 2.0) -> RetryPolicy:
    """Policy for individual provider calls: exponential backoff on transport errors."""

    return RetryPolicy(max_attempts=max_attempts, backoff_base=backoff_base)


def stage_policy(
    *,
    max_attempts: int = 3,
    delays: Sequence[float] = (5.0, 15.0),
) -> RetryPolicy:
    """Policy for mandatory pipeline stages: fixed schedule, fatal errors not retried."""

    return RetryPolicy(
        max_attempts=max_attempts,
        delays=tuple(float(value) for value in delays),
        retry_on=is_retryable_stage_error,
    )
