"""Retry with exponential backoff for capture pipeline steps."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

import structlog

from region_capture.capture.errors import (
    RETRYABLE_KINDS,
    CaptureCancelledError,
    CaptureError,
    ErrorKind,
    classify_exception,
)
from region_capture.config import CaptureSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, backoff_multiplier: float) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return base_delay * backoff_multiplier ** (attempt - 1)


async def with_retry(
    op: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    retryable_kinds: Iterable[ErrorKind] | None = None,
    context: str = "operation",
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying retryable failures with backoff.

    Args:
        op: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first
        base_delay: Delay in seconds after the first failure
        backoff_multiplier: Factor applied to the delay after each failure
        retryable_kinds: Kinds that may be retried (defaults to all retryable kinds)
        context: Name of the operation for logging
        sleep: Sleep function, injectable for tests

    Returns:
        The operation's result

    Raises:
        CaptureError: The classified failure, immediately for non-retryable
            kinds or after the last attempt otherwise
        CaptureCancelledError: Propagated untouched
    """
    kinds = frozenset(retryable_kinds) if retryable_kinds is not None else RETRYABLE_KINDS
    attempts = max(1, max_attempts)
    last_error: CaptureError | None = None

    for attempt in range(1, attempts + 1):
        try:
            result = await op()
            if attempt > 1:
                logger.info("Recovered after retry", context=context, attempt=attempt)
            return result

        except CaptureCancelledError:
            raise

        except Exception as e:
            error = classify_exception(e)
            if error.kind not in kinds:
                logger.warning(
                    "Non-retryable failure",
                    context=context,
                    kind=error.kind.value,
                    error=str(e),
                )
                if error is e:
                    raise
                raise error from e

            last_error = error
            logger.warning(
                "Retryable failure",
                context=context,
                kind=error.kind.value,
                attempt=attempt,
                max_attempts=attempts,
                error=str(e),
            )

        if attempt < attempts:
            await sleep(backoff_delay(attempt, base_delay, backoff_multiplier))

    logger.error("Retries exhausted", context=context, attempts=attempts)
    raise last_error


class RetryPolicy:
    """Retry settings bound once and applied to every pipeline step."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        retryable_kinds: Iterable[ErrorKind] | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_multiplier = backoff_multiplier
        self.retryable_kinds = frozenset(retryable_kinds) if retryable_kinds is not None else RETRYABLE_KINDS
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: CaptureSettings, sleep: SleepFn = asyncio.sleep) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_ms / 1000,
            backoff_multiplier=settings.retry_backoff_multiplier,
            sleep=sleep,
        )

    def delays(self) -> list[float]:
        """Delays slept between attempts when every attempt fails."""
        return [
            backoff_delay(attempt, self.base_delay, self.backoff_multiplier)
            for attempt in range(1, self.max_attempts)
        ]

    async def execute(self, op: Callable[[], Awaitable[T]], context: str = "operation") -> T:
        return await with_retry(
            op,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            backoff_multiplier=self.backoff_multiplier,
            retryable_kinds=self.retryable_kinds,
            context=context,
            sleep=self._sleep,
        )
