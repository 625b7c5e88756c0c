"""
Circuit breaker for calls that leave the ledger (the payment rail)

CLOSED passes calls through and counts consecutive failures. After
``failure_threshold`` of them the breaker is OPEN and rejects calls without
running them until ``reset_timeout`` has passed; the next call then runs as
a HALF_OPEN trial call. ``success_threshold`` good trial calls close the
breaker, any failed trial call opens it again.
"""
import time
from enum import Enum
from typing import Callable, Any, Tuple, Type
from dataclasses import dataclass
import logging

from common.errors import ServiceError, ErrorCodes

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0  # seconds spent OPEN before a trial call
    success_threshold: int = 3
    # only these count against the breaker; anything else passes through untouched
    failure_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

class CircuitBreakerException(ServiceError):
    """Raised instead of calling through an open breaker"""
    code = ErrorCodes.CIRCUIT_BREAKER_OPEN

class CircuitBreaker:

    def __init__(self, name: str, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = 0.0
        self.last_state_change = self._clock()

    def _move_to(self, state: CircuitState, reason: str) -> None:
        self.state = state
        self.success_count = 0
        self.last_state_change = self._clock()
        if state == CircuitState.OPEN:
            self.opened_at = self.last_state_change
            logger.warning(f"Circuit breaker {self.name} opened: {reason}")
        else:
            logger.info(f"Circuit breaker {self.name} is {state.value}: {reason}")

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a trial call through"""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.opened_at + self.config.reset_timeout - self._clock())

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.failure_count = 0
                self._move_to(CircuitState.CLOSED, f"{self.success_count} successful trial calls")
        else:
            self.failure_count = 0

    def _on_failure(self, error: BaseException) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN:
            self._move_to(CircuitState.OPEN, f"trial call failed with {error!r}")
        elif self.failure_count >= self.config.failure_threshold:
            self._move_to(CircuitState.OPEN, f"{self.failure_count} consecutive failures, last {error!r}")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == CircuitState.OPEN and self.retry_after() == 0.0:
            self._move_to(CircuitState.HALF_OPEN, "reset timeout elapsed")

        if self.state == CircuitState.OPEN:
            raise CircuitBreakerException(
                f"Circuit breaker {self.name} is open",
                context={"breaker": self.name, "retry_after": round(self.retry_after(), 3)},
            )

        try:
            result = func(*args, **kwargs)
        except self.config.failure_exceptions as e:
            self._on_failure(e)
            raise

        self._on_success()
        return result

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "retry_after": self.retry_after(),
            "last_state_change": self.last_state_change,
        }
