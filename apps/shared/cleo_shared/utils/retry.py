"""Retry utilities for async operations."""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``jitter`` spreads concurrent retriers apart: each delay is scaled by a
    random factor in ``[1 - jitter, 1 + jitter]``.
    """

    max_retries: int = 3
    delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0
    exceptions: tuple[Type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt (0-indexed)."""
        delay = min(self.delay * (self.backoff_factor**attempt), self.max_delay)
        if self.jitter:
            delay *= random.uniform(1 - self.jitter, 1 + self.jitter)
        return max(delay, 0.0)


def retry_async(
    config: Optional[RetryConfig] = None,
    *,
    max_retries: Optional[int] = None,
    delay: Optional[float] = None,
    exceptions: Optional[tuple[Type[Exception], ...]] = None,
    log_level: int = logging.WARNING,
):
    """Async retry decorator with configurable behavior.

    Usage:
        @retry_async(max_retries=3, delay=1.0)
        async def my_function():
            ...

        # Or with config object
        @retry_async(RetryConfig(max_retries=5, jitter=0.5))
        async def my_function():
            ...
    """
    base = config or RetryConfig()
    config = RetryConfig(
        max_retries=base.max_retries if max_retries is None else max_retries,
        delay=base.delay if delay is None else delay,
        backoff_factor=base.backoff_factor,
        max_delay=base.max_delay,
        jitter=base.jitter,
        exceptions=base.exceptions if exceptions is None else exceptions,
    )

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except config.exceptions as e:
                    if attempt >= config.max_retries:
                        logger.log(
                            log_level,
                            "All %d retries failed for %s: %s: %s",
                            config.max_retries,
                            func.__name__,
                            type(e).__name__,
                            e,
                        )
                        raise
                    delay_time = config.get_delay(attempt)
                    logger.log(
                        log_level,
                        "Retry %d/%d for %s: %s: %s. Waiting %.2fs...",
                        attempt + 1,
                        config.max_retries,
                        func.__name__,
                        type(e).__name__,
                        e,
                        delay_time,
                    )
                    await asyncio.sleep(delay_time)
            raise AssertionError("unreachable")

        return wrapper

    return decorator
