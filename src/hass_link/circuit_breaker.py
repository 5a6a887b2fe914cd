"""
Circuit breaker for asynchronous operations.

A circuit breaker sits in front of a dependency that can fail and stops
calling it once it is clearly unhealthy, so callers fail fast instead of
hanging on a dead connection.

STATES:
-------
CLOSED:    Normal operation, every call goes through
OPEN:      Too many recent failures, calls are rejected without running
HALF_OPEN: The open timeout elapsed, calls go through to test recovery

    CLOSED --failure_threshold failures in monitoring_period--> OPEN
    OPEN --timeout elapsed, next call--> HALF_OPEN
    HALF_OPEN --any failure--> OPEN
    HALF_OPEN --success_threshold successes--> CLOSED

The breaker knows nothing about the protocol it protects. It only sees
whether an awaited operation returned or raised.
"""

import logging
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Deque, List, NamedTuple, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .config import CircuitBreakerConfig
from .errors import CircuitOpenError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Hard cap on the rolling history, in case records arrive faster than
# monitoring_period can prune them.
MAX_HISTORY = 1000


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __str__(self) -> str:
        return self.value


class RequestRecord(NamedTuple):
    timestamp: float
    success: bool


class CircuitBreakerMetrics(BaseModel):
    """Lifetime counters. Survive every state transition."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    current_state: CircuitState = CircuitState.CLOSED
    last_state_change: float = 0.0


StateListener = Callable[[CircuitState], None]


class CircuitBreaker:
    """
    Gate an asynchronous operation through CLOSED / OPEN / HALF_OPEN.

    Args:
        config: Thresholds and timing (seconds)
        name: Used in log messages only
        excluded_exceptions: Exception types that are re-raised to the caller
            but recorded as successes, because the dependency did answer
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        name: str = "default",
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self.excluded_exceptions = excluded_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0.0
        self._next_attempt_time = 0.0

        self._history: Deque[RequestRecord] = deque(maxlen=MAX_HISTORY)
        self._metrics = CircuitBreakerMetrics(last_state_change=clock())
        self._listeners: List[StateListener] = []

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` if the circuit allows it.

        Raises:
            CircuitOpenError: the circuit is open; ``operation`` was not called
        """
        if not self.can_attempt():
            self._metrics.rejected_requests += 1
            raise CircuitOpenError(self._state, retry_at=self._next_attempt_time)

        self._metrics.total_requests += 1

        try:
            result = await operation()
        except self.excluded_exceptions:
            self._on_success()
            raise
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def can_attempt(self) -> bool:
        """
        Whether a call may run now.

        In OPEN this moves the breaker to HALF_OPEN once the retry time has
        passed, so the call that observes the elapsed timeout is the probe.
        """
        if self._state == CircuitState.OPEN:
            if self._clock() >= self._next_attempt_time:
                self._transition_to(CircuitState.HALF_OPEN)
                return True
            return False
        return True

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def _on_success(self) -> None:
        self._metrics.successful_requests += 1
        self._record(True)

        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)
                self._reset()
        elif self._state == CircuitState.CLOSED:
            # Decay rather than reset so isolated failures still count a little
            self._failure_count = max(0, self._failure_count - 1)

    def _on_failure(self) -> None:
        self._metrics.failed_requests += 1
        self._last_failure_time = self._clock()
        self._record(False)

        if self._state == CircuitState.HALF_OPEN:
            self._open()
        elif self._state == CircuitState.CLOSED:
            self._failure_count += 1
            if self.recent_failure_count >= self.config.failure_threshold:
                self._open()

    def _record(self, success: bool) -> None:
        now = self._clock()
        self._history.append(RequestRecord(now, success))
        self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_period
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()

    def _open(self) -> None:
        self._transition_to(CircuitState.OPEN)
        self._schedule_attempt()

    def _schedule_attempt(self) -> None:
        self._next_attempt_time = self._clock() + self.config.timeout

    def _reset(self) -> None:
        self._failure_count = 0
        self._success_count = 0

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return

        logger.info(f"Circuit breaker '{self.name}': {self._state} -> {new_state}")
        self._state = new_state
        self._metrics.current_state = new_state
        self._metrics.last_state_change = self._clock()
        if new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
        self._notify(new_state)

    def _notify(self, state: CircuitState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in circuit breaker state change listener")

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def force_state(self, state: CircuitState) -> None:
        """
        Operational override.

        Forcing CLOSED also resets the counters; forcing OPEN also arms the
        retry timer.
        """
        self._transition_to(state)
        if state == CircuitState.CLOSED:
            self._reset()
        elif state == CircuitState.OPEN:
            self._schedule_attempt()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def metrics(self) -> CircuitBreakerMetrics:
        """A snapshot copy; mutating it does not affect the breaker."""
        return self._metrics.model_copy()

    @property
    def failure_count(self) -> int:
        """
        Failure counter, decayed by one per success while CLOSED.

        Informational only: opening is decided by ``recent_failure_count``.
        """
        return self._failure_count

    @property
    def next_attempt_time(self) -> float:
        return self._next_attempt_time

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    @property
    def recent_failure_count(self) -> int:
        """Failures recorded within the last ``monitoring_period``."""
        cutoff = self._clock() - self.config.monitoring_period
        return sum(1 for r in self._history if r.timestamp >= cutoff and not r.success)

    @property
    def success_rate(self) -> float:
        """Lifetime success percentage; 100.0 before any outcome."""
        total = self._metrics.successful_requests + self._metrics.failed_requests
        if total == 0:
            return 100.0
        return self._metrics.successful_requests / total * 100

    def is_healthy(self) -> bool:
        return self._state == CircuitState.CLOSED and self.success_rate > 95
