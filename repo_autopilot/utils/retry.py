"""Retry utilities for handling transient collaborator failures.

Provides a decorator for retrying async operations with exponential backoff.
Only the retryable part of the error taxonomy is retried by default
(``RateLimitError`` and ``TransientCollaboratorError``); authentication,
not-found and workflow errors propagate on the first occurrence.

Backoff Formula:
    delay = backoff_factor ** attempt_number
    For backoff_factor=2.0: 2s, 4s, 8s, 16s, ...

    A ``RateLimitError`` carrying ``retry_after`` waits at least that long.

Example:
    >>> from repo_autopilot.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, backoff_factor=2.0)
    ... async def fetch_labels(issue_number: int) -> list[str]:
    ...     ...
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from repo_autopilot.exceptions import RateLimitError, TransientCollaboratorError

log = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (RateLimitError, TransientCollaboratorError)


def _delay_for(error: Exception, attempt: int, backoff_factor: float) -> float:
    delay = backoff_factor**attempt
    if isinstance(error, RateLimitError) and error.retry_after:
        delay = max(delay, error.retry_after)
    return delay


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = RETRYABLE_ERRORS,
    **kwargs: Any,
) -> T:
    """Call ``func`` with retries; the functional form of ``async_retry``.

    Args:
        func: Async callable to invoke
        max_attempts: Maximum number of attempts before giving up
        backoff_factor: Base for exponential backoff calculation
        exceptions: Exception types that trigger a retry

    Returns:
        Whatever ``func`` returns on its first successful attempt

    Raises:
        The last caught exception if all attempts are exhausted.
        Exceptions not in ``exceptions`` are raised immediately.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_attempts:
                # Rate limits are an expected operating condition; alert, don't page
                log_method = log.warning if isinstance(e, RateLimitError) else log.error
                log_method(
                    "retry_exhausted",
                    function=getattr(func, "__name__", repr(func)),
                    attempts=attempt,
                    error=str(e),
                )
                raise

            delay = _delay_for(e, attempt, backoff_factor)
            log.warning(
                "retry_attempt",
                function=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error")


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = RETRYABLE_ERRORS,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up. Default
            is 3 (original attempt + 2 retries).
        backoff_factor: Base for exponential backoff calculation. The delay
            before attempt N+1 is backoff_factor^N seconds.
        exceptions: Tuple of exception types to catch and retry. Defaults to
            the retryable collaborator errors.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Note:
        Each retry is logged at WARNING level. Exhaustion is logged at
        WARNING for rate limits and ERROR for everything else.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry_call(
                func,
                *args,
                max_attempts=max_attempts,
                backoff_factor=backoff_factor,
                exceptions=exceptions,
                **kwargs,
            )

        return wrapper

    return decorator
