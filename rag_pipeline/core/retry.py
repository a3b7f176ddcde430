"""Exponential backoff for calls to rate-limited collaborators."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

_default_logger = logging.getLogger(__name__)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str = "operation",
    logger: Optional[logging.Logger] = None,
) -> T:
    """
    Retry an async callable with exponential backoff.

    Args:
        func: Zero-argument coroutine factory to call
        max_retries: Maximum number of retry attempts after the first call
        initial_delay: Delay before the first retry in seconds
        backoff_factor: Multiplier applied to the delay after each retry
        max_delay: Optional cap on a single delay
        retry_on: Exception types considered transient; anything else is raised at once
        operation: Name used in log messages
        logger: Logger for retry messages

    Returns:
        Result of the first successful call

    Raises:
        The last exception if every attempt fails
    """
    log = logger or _default_logger
    delay = initial_delay
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):  # +1 for initial attempt
        try:
            return await func()
        except retry_on as e:
            last_exception = e
            if attempt >= max_retries:
                break
            wait = min(delay, max_delay) if max_delay is not None else delay
            log.warning(
                f"{operation} failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                f"Retrying in {wait:.2f}s"
            )
            await asyncio.sleep(wait)
            delay *= backoff_factor

    log.error(f"{operation} failed after {max_retries + 1} attempts: {last_exception}")
    raise last_exception
