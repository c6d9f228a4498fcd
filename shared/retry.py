"""
Retry decorator for transient upstream failures.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Optional, Callable, Awaitable, Tuple, Type

from shared.logging import get_logger


@dataclass(frozen=True)
class RetryConfig:
    """Attempt count and exponential backoff settings."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True


class RetryError(Exception):
    """Every attempt failed with a retryable exception."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before attempt ``attempt + 1``, capped at ``max_delay`` with +/-10% jitter."""
    delay = min(config.base_delay * config.exponential_base ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay += random.uniform(-0.1, 0.1) * delay
    return max(0.0, delay)


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Retry an async function when it raises one of ``exceptions``.

    Other exceptions propagate on the first attempt. When the attempts run
    out, :class:`RetryError` is raised from the last failure.
    """
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        logger = get_logger(f"costguard.retry.{func.__name__}")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= config.max_attempts:
                        logger.error("Retries exhausted", attempts=attempt, error=str(e))
                        raise RetryError(
                            f"{func.__name__} failed after {attempt} attempts",
                            last_exception=e,
                            attempts=attempt,
                        ) from e
                    delay = calculate_delay(attempt, config)
                    logger.warning("Attempt failed, backing off", attempt=attempt, delay=delay, error=str(e))
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
