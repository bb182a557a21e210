"""
Retry Service with Exponential Backoff
Bounded timeouts and retries for calls to external collaborators
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from utils.exception_handler import OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Shared pool for bounded external calls; a timed-out call keeps its worker
# until it returns, but the caller and its entity lock are released.
_external_call_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="external-call")


def call_with_timeout(func: Callable[[], T], timeout_seconds: float, operation: str = "external call") -> T:
    """
    Run func in a worker thread and wait at most timeout_seconds.

    Raises:
        OperationTimeout: if func has not returned in time
    """
    future = _external_call_pool.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        logger.error(f"⏱️ EXTERNAL_TIMEOUT: {operation} exceeded {timeout_seconds}s")
        raise OperationTimeout(f"{operation} timed out after {timeout_seconds}s")


class RetryService:
    """Service for handling retries with exponential backoff"""

    @staticmethod
    def retry_sync(
        func: Callable[[], T],
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        exceptions: tuple = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> Any:
        """
        Retry a function with exponential backoff

        Args:
            func: Function to retry; must be safe to repeat
            max_attempts: Maximum number of attempts
            initial_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff
            jitter: Add random jitter to prevent thundering herd
            exceptions: Tuple of exceptions to catch and retry
            sleep: Sleep function, replaceable in tests
        """
        attempt = 0
        delay = initial_delay
        name = getattr(func, "__name__", "operation")

        while True:
            try:
                return func()
            except exceptions as e:
                attempt += 1

                if attempt >= max_attempts:
                    logger.error(f"Max retry attempts ({max_attempts}) reached for {name}")
                    raise

                if jitter:
                    actual_delay = delay * (0.5 + random.random())
                else:
                    actual_delay = delay

                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed for {name}: {e}. "
                    f"Retrying in {actual_delay:.2f}s"
                )

                sleep(actual_delay)

                # Exponential backoff
                delay = min(delay * exponential_base, max_delay)


# Predefined retry strategies for different collaborators
RETRY_STRATEGIES = {
    'payment_refund': {
        'max_attempts': 3,
        'initial_delay': 0.5,
        'max_delay': 5.0,
        'exponential_base': 2.0
    },
    'object_store': {
        'max_attempts': 2,
        'initial_delay': 0.25,
        'max_delay': 2.0,
        'exponential_base': 2.0
    },
}