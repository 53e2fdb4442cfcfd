"""
Retry utilities for handling transient failures
"""
import asyncio
import random
from typing import Callable, Any, Optional, List
import logging

from .error_handling import TransientRemoteError

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientRemoteError]

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Async retry wrapper with exponential backoff"""
    last_exception = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(1, config.max_attempts + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            else:
                return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                raise

            if attempt == config.max_attempts:
                if config.max_attempts > 1:
                    logger.error(f"Max retry attempts ({config.max_attempts}) reached for {name}")
                break

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {name}: {e}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    # All attempts failed
    raise last_exception

# Reads and absolute-value writes against the panel are idempotent
PANEL_READ_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=10.0,
)

PANEL_IDEMPOTENT_WRITE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    max_delay=15.0,
)

# Creating a server is not idempotent: a retried POST after a timeout may
# provision a second instance, so it gets exactly one attempt.
PANEL_CREATE_RETRY_CONFIG = RetryConfig(
    max_attempts=1,
)
