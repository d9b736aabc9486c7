"""
Retry utilities with exception-aware handling.

Uses the exception hierarchy to make intelligent retry decisions:
- Skip signals: propagate immediately (never retried)
- Retryable errors: retry with capped exponential backoff and symmetric jitter
- Terminal errors: fail immediately (no retry)
- Unknown errors: retry (fail open)
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import TypeVar

from core.errors.exceptions import classify_exception
from core.types import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    exponential_base: float = 2.0

    # Fraction of the capped delay applied as +/- jitter
    jitter: float = 0.1

    def __post_init__(self):
        """Ensure proper types from YAML/env vars."""
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        self.jitter = float(self.jitter)

    def get_capped_delay(self, attempt: int) -> float:
        """Exponential delay for a 1-indexed attempt, capped at max_delay."""
        exponential = self.base_delay * (self.exponential_base ** (attempt - 1))
        return min(exponential, self.max_delay)

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay with symmetric jitter to prevent thundering herd.

        Args:
            attempt: 1-indexed number of the attempt that just failed

        Returns:
            Delay in seconds, within capped * (1 +/- jitter)
        """
        capped = self.get_capped_delay(attempt)
        offset = capped * self.jitter * random.uniform(-1.0, 1.0)
        return max(0.0, capped + offset)


DEFAULT_RETRY = RetryConfig()


@dataclass
class RetryStats:
    """Statistics from a retry operation."""

    attempts: int = 0
    total_delay: float = 0.0
    final_error: BaseException | None = None
    success: bool = False
    first_attempt_at: float | None = None
    last_attempt_at: float | None = None

    @property
    def retried(self) -> bool:
        """Whether any retries occurred."""
        return self.attempts > 1


class RetryExecutor:
    """Runs async operations with a bounded number of classified attempts."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Callable[[BaseException, int, float], None] | None = None,
    ):
        self.config = config or DEFAULT_RETRY
        self._sleep = sleep
        self._on_retry = on_retry

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        stats: RetryStats | None = None,
        operation_name: str | None = None,
    ) -> T:
        """
        Run operation until it succeeds, fails terminally, or runs out of attempts.

        Raises the last error when attempts are exhausted, or the first error
        that is not classified as retryable.
        """
        attempts_allowed = max_attempts if max_attempts is not None else self.config.max_attempts
        attempts_allowed = max(1, int(attempts_allowed))
        stats = stats if stats is not None else RetryStats()
        name = operation_name or getattr(operation, "__name__", "operation")

        for attempt in range(1, attempts_allowed + 1):
            now = time.time()
            if stats.first_attempt_at is None:
                stats.first_attempt_at = now
            stats.last_attempt_at = now
            stats.attempts = attempt

            try:
                result = await operation()
            except Exception as e:
                stats.final_error = e
                kind = classify_exception(e)

                if kind == ErrorKind.SKIPPED:
                    raise

                if kind != ErrorKind.RETRYABLE:
                    logger.warning(
                        "Non-retryable error for %s, not retrying: %s",
                        name,
                        str(e)[:200],
                        extra={
                            "operation": name,
                            "attempt": attempt,
                            "error_kind": kind.value,
                            "error_type": type(e).__name__,
                        },
                    )
                    raise

                if attempt >= attempts_allowed:
                    logger.error(
                        "Max retries exhausted for %s: %s",
                        name,
                        str(e)[:200],
                        extra={
                            "operation": name,
                            "max_attempts": attempts_allowed,
                            "error_kind": kind.value,
                            "error_type": type(e).__name__,
                        },
                    )
                    raise

                delay = self.config.get_delay(attempt)
                logger.warning(
                    "Retryable error for %s, will retry",
                    name,
                    extra={
                        "operation": name,
                        "attempt": attempt,
                        "max_attempts": attempts_allowed,
                        "delay_seconds": round(delay, 3),
                        "error_message": str(e)[:200],
                    },
                )
                if self._on_retry:
                    _safe_invoke_on_retry(self._on_retry, e, attempt, delay, name)

                stats.total_delay += delay
                await self._sleep(delay)
                continue

            stats.success = True
            stats.final_error = None
            if attempt > 1:
                logger.info(
                    "Retry succeeded for %s after %d attempts",
                    name,
                    attempt,
                    extra={"operation": name, "attempt": attempt},
                )
            return result

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"Retry loop for {name} exited without a result")


def _safe_invoke_on_retry(
    on_retry: Callable[[BaseException, int, float], None],
    error: BaseException,
    attempt: int,
    delay: float,
    func_name: str,
) -> None:
    """Call the on_retry callback, swallowing and logging any errors."""
    try:
        on_retry(error, attempt, delay)
    except Exception as cb_err:
        logger.warning(
            "Error in on_retry callback for %s: %s",
            func_name,
            str(cb_err)[:100],
            extra={
                "operation": func_name,
                "callback_error": str(cb_err)[:100],
            },
        )


def with_retry_async(
    config: RetryConfig | None = None,
    on_retry: Callable[[BaseException, int, float], None] | None = None,
):
    """
    Decorator for retrying async functions with classified backoff.

    Usage:
        @with_retry_async(config=RetryConfig(max_attempts=5))
        async def put_item(item):
            ...
    """
    executor = RetryExecutor(config=config, on_retry=on_retry)

    def decorator(func: Callable[..., Awaitable[T]]):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await executor.execute(
                lambda: func(*args, **kwargs),
                operation_name=func.__name__,
            )

        return wrapper

    return decorator


__all__ = [
    "DEFAULT_RETRY",
    "RetryConfig",
    "RetryExecutor",
    "RetryStats",
    "with_retry_async",
]
