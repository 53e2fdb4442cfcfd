"""
Circuit breaker guarding the panel API

Only transport failures and 5xx responses count against the panel; a
PermanentRemoteError (4xx) proves the panel is answering and counts as a success.
"""
import asyncio
import functools
import time
from enum import Enum
from typing import Callable, Any, Tuple
from dataclasses import dataclass
import logging

from .error_handling import PermanentRemoteError
from .settings import settings

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 3
    timeout: float = 10.0
    # Errors that prove the dependency is up (e.g. a 404) do not count as failures
    excluded_exceptions: Tuple[type, ...] = ()

class CircuitBreakerException(Exception):
    """Raised without calling the panel while the breaker is open"""

class CircuitBreaker:
    def __init__(self, name: str, config: CircuitBreakerConfig):
        self.name = name
        self.config = config
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0
        self.last_state_change = time.time()

    def _should_attempt_reset(self) -> bool:
        return (self.state == CircuitState.OPEN and
                time.time() - self.last_failure_time >= self.config.reset_timeout)

    def _record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0
                self.last_state_change = time.time()
                logger.info(f"Circuit breaker {self.name} closed after successful recovery")
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def _record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == CircuitState.CLOSED:
            if self.failure_count >= self.config.failure_threshold:
                self.state = CircuitState.OPEN
                self.last_state_change = time.time()
                logger.warning(f"Circuit breaker {self.name} opened after {self.failure_count} failures")
        elif self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.success_count = 0
            self.last_state_change = time.time()
            logger.warning(f"Circuit breaker {self.name} re-opened during half-open state")

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` (sync calls go to the default executor) under the breaker timeout"""
        if self._should_attempt_reset():
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
            self.last_state_change = time.time()
            logger.info(f"Circuit breaker {self.name} entering half-open state")

        if self.state == CircuitState.OPEN:
            raise CircuitBreakerException(f"Circuit breaker {self.name} is open")

        try:
            if asyncio.iscoroutinefunction(func):
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
            else:
                loop = asyncio.get_running_loop()
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                    timeout=self.config.timeout
                )

            self._record_success()
            return result

        except Exception as e:
            if isinstance(e, self.config.excluded_exceptions):
                self._record_success()
            else:
                self._record_failure()
            raise

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
            "uptime_since_last_change": time.time() - self.last_state_change
        }

def panel_breaker_config(request_timeout: float) -> CircuitBreakerConfig:
    # The breaker timeout wraps the whole blocking call, so it must outlast
    # the HTTP timeout requests enforces on its own.
    return CircuitBreakerConfig(
        failure_threshold=5,
        reset_timeout=30.0,
        success_threshold=2,
        timeout=request_timeout + 5.0,
        excluded_exceptions=(PermanentRemoteError,),
    )

panel_circuit_breaker = CircuitBreaker("panel", panel_breaker_config(settings.panel_timeout_seconds))

def get_all_circuit_breakers() -> dict:
    """Breaker states for the /circuit-breakers endpoint"""
    return {
        "panel": panel_circuit_breaker.get_state(),
    }
