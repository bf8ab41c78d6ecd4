"""
Circuit Breaker for outbound alert delivery.

Each breaker is a plain object owned by the component that uses it
(built at startup and injected), so tests and separate worker processes
never share breaker state through module globals.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from payhook.core.exceptions import CircuitBreakerOpenError
from payhook.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    CLOSED → OPEN after `failure_threshold` consecutive failures;
    OPEN → HALF_OPEN after `timeout_seconds`; HALF_OPEN → CLOSED after
    `success_threshold` successes, or back to OPEN on any failure.
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_time = 0.0
        # threading.Lock ולא asyncio.Lock - ב-Celery כל task רץ ב-event loop משלו
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state in (CircuitState.HALF_OPEN, CircuitState.CLOSED):
            self._half_open_calls = 0
            self._success_count = 0
        if new_state == CircuitState.CLOSED:
            self._failure_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            }
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                }
            )

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def can_execute(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._last_failure_time
                if elapsed < self.config.timeout_seconds:
                    return False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._half_open_calls < self.config.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        """Seconds until the breaker will let a trial call through"""
        if self._state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (self._clock() - self._last_failure_time)
        return max(0.0, remaining)

    async def execute(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Run an async callable under breaker protection.

        Raises:
            CircuitBreakerOpenError: If the circuit is open
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result
