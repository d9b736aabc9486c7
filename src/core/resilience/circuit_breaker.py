"""
Three-state circuit breaker for guarding calls to a struggling dependency.

A processor that talks to a business service or a storage backend can wrap
that call in a breaker so a dependency that is already failing stops being
hit by every record in the batch:

    breaker = get_circuit_breaker("user-limit-repository")
    await breaker.call_async(lambda: repository.put(item))

CLOSED counts consecutive failures and opens at the threshold. OPEN rejects
with CircuitOpenError until next_attempt_time, then lets the next call probe
in HALF_OPEN. HALF_OPEN closes after enough successes and reopens on the
first counted failure.

The breaker is a standalone guard. BatchOrchestrator never installs one.
"""

import dataclasses
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

from core.errors.exceptions import CircuitOpenError, classify_exception
from core.types import ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    @property
    def gauge_value(self) -> int:
        return _GAUGE_VALUES[self]


_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class MetricsCollector(Protocol):
    """Sink for breaker counters and gauges. See stream_pipeline.metrics."""

    def increment_counter(self, name: str, labels: dict | None = None) -> None: ...

    def set_gauge(self, name: str, value: float, labels: dict | None = None) -> None: ...


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 60.0
    # Duplicates and invalid records say nothing about downstream health
    ignore_skipped: bool = True


@dataclass
class CircuitStats:
    """Lifetime counters, kept across state changes."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    last_state_change_time: float | None = None
    current_state: str = CircuitState.CLOSED.value


class CircuitBreaker:
    """Failure-counting guard around sync or async calls. Thread-safe.

    Args:
        name: Label used in logs, metrics and CircuitOpenError
        config: Thresholds and open timeout
        on_state_change: Called with (old, new) after each transition
        metrics_collector: Receives call counts, transitions and state gauges
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        on_state_change: Callable[[CircuitState, CircuitState], None] | None = None,
        metrics_collector: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.on_state_change = on_state_change
        self._metrics = metrics_collector
        self._clock = clock
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_time = 0.0
        self._stats = CircuitStats()

        logger.info(
            "Circuit breaker created",
            extra={
                "circuit_name": name,
                "failure_threshold": self.config.failure_threshold,
                "timeout_seconds": self.config.timeout_seconds,
            },
        )
        self._publish_gauges()

    # -- read-only views -----------------------------------------------------

    @property
    def state(self) -> CircuitState:
        # OPEN only moves to HALF_OPEN when a call is attempted
        with self._lock:
            return self._state

    @property
    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._success_count

    @property
    def next_attempt_time(self) -> float:
        with self._lock:
            return self._next_attempt_time

    @property
    def stats(self) -> CircuitStats:
        with self._lock:
            return dataclasses.replace(self._stats, current_state=self._state.value)

    # -- calls ---------------------------------------------------------------

    async def call_async(self, func: Callable[[], Awaitable[T]]) -> T:
        self._acquire()
        try:
            result = await func()
        except Exception as e:
            self._settle(e)
            raise
        self._settle(None)
        return result

    def call(self, func: Callable[[], T]) -> T:
        self._acquire()
        try:
            result = func()
        except Exception as e:
            self._settle(e)
            raise
        self._settle(None)
        return result

    def record_success(self) -> None:
        """Report the outcome of a call made outside call/call_async."""
        with self._lock:
            self._stats.total_calls += 1
            self._on_success()

    def record_failure(self, exc: Exception) -> None:
        with self._lock:
            self._stats.total_calls += 1
            self._on_failure(exc)

    def reset(self) -> None:
        with self._lock:
            self._enter(CircuitState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._next_attempt_time = 0.0
        logger.info("Circuit breaker reset", extra={"circuit_name": self.name})

    def get_diagnostics(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "next_attempt_time": self._next_attempt_time,
                "config": dataclasses.asdict(self.config),
                "stats": {
                    "total_calls": self._stats.total_calls,
                    "successful_calls": self._stats.successful_calls,
                    "failed_calls": self._stats.failed_calls,
                    "rejected_calls": self._stats.rejected_calls,
                    "state_changes": self._stats.state_changes,
                },
            }

    # -- state machine -------------------------------------------------------

    def _acquire(self) -> None:
        """Admit a call or raise CircuitOpenError. The call itself runs unlocked."""
        with self._lock:
            self._stats.total_calls += 1
            if self._state is not CircuitState.OPEN:
                return

            remaining = self._next_attempt_time - self._clock()
            if remaining <= 0:
                self._enter(CircuitState.HALF_OPEN)
                return

            self._stats.rejected_calls += 1

        logger.warning(
            "Circuit open, call rejected",
            extra={"circuit_name": self.name, "retry_after": round(remaining, 3)},
        )
        raise CircuitOpenError(self.name, remaining)

    def _settle(self, exc: Exception | None) -> None:
        with self._lock:
            if exc is None:
                self._on_success()
            else:
                self._on_failure(exc)

    def _on_success(self) -> None:
        self._stats.successful_calls += 1
        self._stats.last_success_time = self._clock()
        self._count_call("success")

        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._enter(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failure_count = 0
        self._publish_gauges()

    def _on_failure(self, exc: Exception) -> None:
        self._stats.failed_calls += 1
        self._stats.last_failure_time = self._clock()
        self._count_call("failure")

        if self.config.ignore_skipped and classify_exception(exc) is ErrorKind.SKIPPED:
            return

        self._failure_count += 1
        logger.debug(
            "Circuit failure counted",
            extra={
                "circuit_name": self.name,
                "circuit_state": self._state.value,
                "error_type": type(exc).__name__,
                "failure_count": self._failure_count,
            },
        )

        if self._state is CircuitState.HALF_OPEN or (
            self._state is CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._enter(CircuitState.OPEN)
        self._publish_gauges()

    def _enter(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return

        now = self._clock()
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change_time = now
        self._stats.current_state = new_state.value

        self._success_count = 0
        if new_state is CircuitState.OPEN:
            self._next_attempt_time = now + self.config.timeout_seconds
        else:
            self._failure_count = 0
            if new_state is CircuitState.CLOSED:
                self._next_attempt_time = 0.0

        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "Circuit state changed",
            extra={
                "circuit_name": self.name,
                "from_state": old_state.value,
                "circuit_state": new_state.value,
                "next_attempt_time": self._next_attempt_time,
            },
        )

        if self._metrics:
            self._metrics.increment_counter(
                "circuit_breaker_state_transitions",
                labels={
                    "circuit_name": self.name,
                    "from_state": old_state.value,
                    "to_state": new_state.value,
                },
            )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.warning(
                    "Circuit state listener raised",
                    extra={"circuit_name": self.name, "error_message": str(e)},
                )

        self._publish_gauges()

    def _count_call(self, result: str) -> None:
        if self._metrics:
            self._metrics.increment_counter(
                "circuit_breaker_calls_total",
                labels={"circuit_name": self.name, "result": result},
            )

    def _publish_gauges(self) -> None:
        if not self._metrics:
            return
        labels = {"circuit_name": self.name}
        self._metrics.set_gauge("circuit_breaker_state", self._state.gauge_value, labels=labels)
        self._metrics.set_gauge("circuit_breaker_failures", self._failure_count, labels=labels)


# =============================================================================
# Named breakers
# =============================================================================

_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(
    name: str,
    config: CircuitBreakerConfig | None = None,
    metrics_collector: MetricsCollector | None = None,
) -> CircuitBreaker:
    """Return the breaker registered under name, creating it on first use.

    config and metrics_collector only apply when the breaker is created.
    """
    with _registry_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, config, metrics_collector=metrics_collector)
            _breakers[name] = breaker
        return breaker


def reset_circuit_breakers() -> None:
    """Forget every named breaker. Tests call this between cases."""
    with _registry_lock:
        _breakers.clear()


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "MetricsCollector",
    "get_circuit_breaker",
    "reset_circuit_breakers",
]
