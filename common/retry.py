"""
Bounded retry with exponential backoff for transient failures

Used for storage contention in the unit of work and for network errors
talking to the payment rail.
"""
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Any, Sequence, Type
import logging

logger = logging.getLogger(__name__)

@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0      # seconds before the second attempt
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Sequence[Type[BaseException]] = field(default_factory=lambda: [Exception])

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Backoff before retrying after failed attempt number ``attempt`` (1-based)"""
    delay = min(config.base_delay * config.exponential_base ** (attempt - 1), config.max_delay)
    if config.jitter:
        # somewhere in the upper half, so racing writers spread out
        delay *= 0.5 + random.random() * 0.5
    return delay

def is_retryable(error: BaseException, config: RetryConfig) -> bool:
    return isinstance(error, tuple(config.retryable_exceptions))

def retry_call(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func`` until it succeeds or ``config.max_attempts`` is used up.

    Non-retryable exceptions propagate immediately; the last retryable one is
    re-raised once the attempts run out.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e, config):
                raise
            if attempt >= config.max_attempts:
                logger.error(f"Giving up on {name} after {attempt} attempts: {e}")
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} of {name} failed: {e}. Retrying in {delay:.2f}s")
            time.sleep(delay)
            attempt += 1
