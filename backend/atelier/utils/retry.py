"""Retry-with-backoff for fallible async operations.

Used per item by the batch uploader and, optionally, by the URL signer.
Errors flagged non-retryable (NonRetryableError, or any exception whose
`retryable` attribute is False) stop the loop on the first attempt.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class NonRetryableError(Exception):
    """Wraps a failure that retrying cannot fix."""

    retryable = False


class RetryExhaustedError(Exception):
    """All attempts failed (or the deadline cut the loop short)."""

    def __init__(self, attempts: int, last_error: BaseException, *, deadline_hit: bool = False):
        reason = "deadline exceeded" if deadline_hit else f"{attempts} attempt(s) failed"
        super().__init__(f"{reason}: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.deadline_hit = deadline_hit


def _is_retryable(exc: BaseException) -> bool:
    return getattr(exc, "retryable", True) is not False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after `attempt` (1-based): 1s, 2s, 4s by default."""
        delay = self.base_delay * (self.multiplier ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        deadline: float | None = None,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        on_attempt: Callable[[int], None] | None = None,
    ) -> T:
        """Await `operation` until it succeeds or the policy gives up.

        `deadline` is an absolute time.monotonic() value. A backoff sleep that
        would cross it is not taken; the loop ends with RetryExhaustedError.
        Non-retryable errors propagate unchanged.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            if deadline is not None and time.monotonic() >= deadline:
                raise RetryExhaustedError(
                    attempt - 1,
                    last_error or TimeoutError("deadline reached before first attempt"),
                    deadline_hit=True,
                )
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await operation()
            except retry_on as exc:
                if not _is_retryable(exc):
                    raise
                last_error = exc
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise RetryExhaustedError(attempt, exc, deadline_hit=True) from exc
                logger.debug("retry_backoff", attempt=attempt, delay_s=delay, error=str(exc))
                await asyncio.sleep(delay)

        assert last_error is not None
        raise RetryExhaustedError(self.max_attempts, last_error) from last_error
