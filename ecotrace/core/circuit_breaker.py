"""
Circuit Breaker Pattern Implementation
Stops calling an estimate provider that keeps failing until it has had time to recover
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from ecotrace.core.exceptions import CircuitBreakerOpenException
from ecotrace.core.metrics import update_circuit_breaker_state

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing fast
    HALF_OPEN = "half_open"  # Probing recovery


class CircuitBreaker:
    """Circuit breaker with async support"""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: Tuple[Type[BaseException], ...] = (Exception,),
        success_threshold: int = 1,
        timeout: float = 10.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock

        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None

        self._lock = asyncio.Lock()

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return False
        return self._clock() - self.last_failure_time >= self.recovery_timeout

    def _set_state(self, state: CircuitBreakerState):
        self.state = state
        update_circuit_breaker_state(self.name, state.value)

    async def _record_success(self):
        async with self._lock:
            self.success_count += 1
            if (
                self.state == CircuitBreakerState.HALF_OPEN
                and self.success_count >= self.success_threshold
            ):
                self._reset()
            elif self.state == CircuitBreakerState.CLOSED:
                self.failure_count = 0

    async def _record_failure(self):
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()

            if (
                self.state == CircuitBreakerState.HALF_OPEN
                or self.failure_count >= self.failure_threshold
            ):
                self._set_state(CircuitBreakerState.OPEN)
                logger.warning(
                    f"Circuit breaker '{self.name}' opened due to {self.failure_count} failures"
                )

    def _reset(self):
        self._set_state(CircuitBreakerState.CLOSED)
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        logger.info(f"Circuit breaker '{self.name}' reset to closed state")

    async def _can_attempt_call(self) -> bool:
        async with self._lock:
            if self.state == CircuitBreakerState.CLOSED:
                return True
            if self.state == CircuitBreakerState.OPEN:
                if self._should_attempt_reset():
                    self._set_state(CircuitBreakerState.HALF_OPEN)
                    self.success_count = 0
                    logger.info(f"Circuit breaker '{self.name}' attempting reset")
                    return True
                return False
            return True

    @asynccontextmanager
    async def call_context(self):
        """Context manager for circuit breaker protected calls"""
        if not await self._can_attempt_call():
            raise CircuitBreakerOpenException(f"Circuit breaker '{self.name}' is OPEN")

        try:
            yield
        except self.expected_exception:
            await self._record_failure()
            raise
        else:
            await self._record_success()

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute a coroutine function with circuit breaker protection"""
        async with self.call_context():
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise TimeoutError(
                    f"Call to {getattr(func, '__name__', func)} timed out after {self.timeout}s"
                )

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }
