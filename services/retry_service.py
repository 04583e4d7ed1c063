"""
Retry Service with Exponential Backoff
Bounded retries for settlement-layer calls
"""

import asyncio
import logging
import random
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Hard ceiling on attempts for any settlement call
MAX_ATTEMPTS_CAP = 5


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    async def retry_async(
        func: Callable,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        exceptions: tuple = (Exception,),
        attempt_timeout: Optional[float] = None,
        operation_name: Optional[str] = None,
    ) -> Any:
        """
        Retry an async function with exponential backoff

        Args:
            func: Zero-argument callable returning an awaitable
            max_attempts: Maximum number of attempts (capped at MAX_ATTEMPTS_CAP)
            initial_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            exceptions: Tuple of exceptions to catch and retry
            attempt_timeout: Per-attempt timeout; a timeout counts as a failed attempt
                when asyncio.TimeoutError is in exceptions
            operation_name: Name used in log lines

        The last exception is re-raised once attempts are exhausted.
        """
        max_attempts = max(1, min(max_attempts, MAX_ATTEMPTS_CAP))
        name = operation_name or getattr(func, "__name__", "operation")
        attempt = 0
        delay = initial_delay

        while True:
            try:
                if attempt_timeout:
                    return await asyncio.wait_for(func(), timeout=attempt_timeout)
                return await func()
            except exceptions as e:
                attempt += 1

                if attempt >= max_attempts:
                    logger.error(f"❌ RETRY_EXHAUSTED: {name} failed after {max_attempts} attempts: {e!r}")
                    raise

                if jitter:
                    actual_delay = delay * (0.5 + random.random())
                else:
                    actual_delay = delay

                logger.warning(
                    f"🔄 RETRY: attempt {attempt}/{max_attempts} failed for {name}: {e!r}. "
                    f"Retrying in {actual_delay:.2f}s"
                )

                if actual_delay > 0:
                    await asyncio.sleep(actual_delay)

                delay = min(delay * exponential_base, max_delay)


# Predefined retry strategies
RETRY_STRATEGIES = {
    'balance_query': {
        'max_attempts': 3,
        'initial_delay': 0.5,
        'max_delay': 5.0,
        'exponential_base': 2.0
    },
}
