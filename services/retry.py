"""
Retry with exponential backoff for external AI calls.

Retry decisions are made on the structured `ErrorKind` carried by
`GenerationError`: only rate limiting and temporary unavailability are retried.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from core.cancellation import CancellationToken
from core.constants import DEFAULT_RETRY_PARAMS
from core.exceptions import GenerationError

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_RETRY_PARAMS['max_retries'],
    initial_delay: float = DEFAULT_RETRY_PARAMS['initial_delay'],
    backoff_factor: float = DEFAULT_RETRY_PARAMS['backoff_factor'],
    token: Optional[CancellationToken] = None
) -> T:
    """
    Await `fn()`, retrying retryable failures.

    Args:
        fn: Zero-argument coroutine factory for the call
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        backoff_factor: Delay multiplier per retry
        token: Cancellation token; a cancelled token stops further retries

    Returns:
        The call's result

    Raises:
        GenerationError: The last failure, if not retryable or retries are exhausted
    """
    delay = initial_delay
    attempt = 0

    while True:
        try:
            return await fn()
        except GenerationError as e:
            if not e.is_retryable or attempt >= max_retries:
                raise
            if token is not None and token.cancelled:
                raise

            attempt += 1
            logger.warning(
                f"AI call failed ({e.kind.value}). Retrying in {delay:g}s "
                f"(attempt {attempt}/{max_retries})"
            )

            if token is not None:
                if await token.sleep(delay):
                    raise
            else:
                await asyncio.sleep(delay)
            delay *= backoff_factor
