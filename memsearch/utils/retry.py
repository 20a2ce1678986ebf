"""Retry logic with exponential backoff."""

import functools
import time
from typing import Callable, Optional, Tuple, Type

import structlog

logger = structlog.get_logger(__name__)


def retry_with_backoff(
    retries: int = 3,
    delays: Optional[Tuple[float, ...]] = None,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
) -> Callable:
    """
    Decorator for retrying a function with exponential backoff.

    Args:
        retries: Number of retries after the first attempt (default: 3)
        delays: Delay in seconds before each retry (default: 1, 2, 4, ...)
        exceptions: Exception types that may be retried (default: all exceptions)
        should_retry: Optional predicate; a caught exception for which it
            returns False is raised immediately

    Example:
        @retry_with_backoff(retries=3, exceptions=(openai.RateLimitError,))
        def embed(texts):
            return client.embeddings.create(model=model, input=texts)

        @retry_with_backoff(
            retries=2,
            delays=(0.5, 1.5),
            exceptions=(openai.APIStatusError,),
            should_retry=lambda e: e.status_code >= 500,
        )
        def embed_on_flaky_gateway(texts):
            return client.embeddings.create(model=model, input=texts)
    """
    if delays is None:
        delays = tuple(2**i for i in range(retries))
    elif retries and not delays:
        delays = (0.0,) * retries
    elif len(delays) < retries:
        # Pad with the last value
        delays = delays + (delays[-1],) * (retries - len(delays))

    def decorator(func: Callable) -> Callable:
        name = getattr(func, "__qualname__", None) or type(func).__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        raise
                    if attempt == retries:
                        logger.warning(
                            f"retry_exhausted func={name} attempts={attempt + 1} error={type(e).__name__}"
                        )
                        raise
                    delay = delays[attempt]
                    logger.debug(
                        f"retry_scheduled func={name} attempt={attempt + 1} delay={delay} error={type(e).__name__}"
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
