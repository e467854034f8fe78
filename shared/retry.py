"""
Retry mechanism for operations that can lose an optimistic-concurrency race.
"""

import asyncio
import functools
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.01,
                 max_delay: float = 1.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


def retry_on_exception(exceptions: tuple = (Exception,),
                      config: Optional[RetryConfig] = None) -> Callable:
    """Decorator for retrying async functions on exceptions.

    Once the attempts are used up the last exception propagates unchanged.
    """

    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            logger = get_logger(f"retry.{func.__name__}")

            attempt = 1
            while True:
                try:
                    result = await func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            "Retry succeeded",
                            attempt=attempt,
                            function=func.__name__
                        )

                    return result

                except exceptions as e:
                    if attempt >= config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            attempt=attempt,
                            max_attempts=config.max_attempts,
                            function=func.__name__,
                            error=str(e)
                        )
                        raise

                    delay = _calculate_delay(attempt, config)

                    logger.warning(
                        "Retry attempt failed, waiting before next attempt",
                        attempt=attempt,
                        delay=delay,
                        function=func.__name__,
                        error=str(e)
                    )

                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with 10% jitter, capped at max_delay."""
    delay = min(config.base_delay * (config.exponential_base ** (attempt - 1)), config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
