import asyncio
import functools
import random
from typing import Type, Tuple, Callable

from trade_ledger.exceptions import OperationalError
from trade_ledger.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Tuple[Type[Exception], ...] = (OperationalError,),
    jitter: float = 0.5,
):
    """
    Decorator to retry async functions on transient errors.

    Implements exponential backoff with jitter. Only exceptions matching
    ``transient_errors`` are retried; everything else propagates immediately.

    Args:
        max_retries: Maximum number of retry attempts (0 disables retrying)
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types considered transient
        jitter: Upper bound of random seconds added to each wait
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except transient_errors as e:
                    if retry_count >= max_retries:
                        logger.warning(
                            "RETRIES_EXHAUSTED",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        "TRANSIENT_ERROR_RETRY",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )

                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    if jitter:
                        backoff += random.uniform(0, jitter)

        return wrapper
    return decorator
