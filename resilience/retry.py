"""
Retry with exponential backoff.

Used around writes to external stores that fail transiently, most notably
archive batch flushes, where a failed flush is retried before the batch is
put back into the buffer for the next flush.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        initial_delay: Delay before the first retry, in seconds.
        exponential_base: Multiplier applied per attempt (1s, 2s, 4s...).
        max_delay: Upper bound on a single delay, or None for no bound.
        retryable_exceptions: Exception types that trigger a retry; anything
            else propagates immediately.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    exponential_base: float = 2.0
    max_delay: Optional[float] = None
    retryable_exceptions: Tuple[Type[Exception], ...] = field(
        default_factory=lambda: (Exception,)
    )


class RetryExhaustedException(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_exception: Exception,
        operation_name: Optional[str] = None
    ):
        self.attempts = attempts
        self.last_exception = last_exception
        self.operation_name = operation_name
        super().__init__(message)


def calculate_delay(
    attempt: int,
    initial_delay: float,
    exponential_base: float,
    max_delay: Optional[float] = None
) -> float:
    """
    Delay before retry number ``attempt`` (0-indexed).

    ``initial_delay * exponential_base ** attempt``, capped at max_delay.
    """
    delay = initial_delay * (exponential_base ** attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None,
    **kwargs: Any
) -> T:
    """
    Await ``func(*args, **kwargs)``, retrying retryable failures.

    Example:
        await retry_async(
            writer.write_batch, key, body,
            config=RetryConfig(max_attempts=3, initial_delay=0.5),
            operation_name="archive_flush",
        )

    Raises:
        RetryExhaustedException: When all attempts failed
    """
    cfg = config or RetryConfig()
    op_name = operation_name or getattr(func, "__name__", "operation")

    for attempt in range(cfg.max_attempts):
        try:
            return await func(*args, **kwargs)
        except cfg.retryable_exceptions as e:
            if attempt == cfg.max_attempts - 1:
                logger.error(
                    f"Retry exhausted for operation '{op_name}' after {cfg.max_attempts} attempts",
                    extra={"extra_data": {
                        "operation": op_name,
                        "attempts": cfg.max_attempts,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                    }}
                )
                raise RetryExhaustedException(
                    f"Operation '{op_name}' failed after {cfg.max_attempts} attempts",
                    attempts=cfg.max_attempts,
                    last_exception=e,
                    operation_name=op_name
                ) from e

            delay = calculate_delay(
                attempt, cfg.initial_delay, cfg.exponential_base, cfg.max_delay
            )
            logger.warning(
                f"Attempt {attempt + 1}/{cfg.max_attempts} for '{op_name}' failed, "
                f"retrying in {delay:.2f}s",
                extra={"extra_data": {
                    "operation": op_name,
                    "attempt": attempt + 1,
                    "max_attempts": cfg.max_attempts,
                    "delay_seconds": delay,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }}
            )
            await asyncio.sleep(delay)

    raise RetryExhaustedException(
        f"Operation '{op_name}' made no attempts",
        attempts=0,
        last_exception=ValueError("max_attempts must be at least 1"),
        operation_name=op_name
    )

