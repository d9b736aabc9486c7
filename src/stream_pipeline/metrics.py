"""
Prometheus metrics for batch processing.

Focused on essential metrics:
- Record outcomes (success, skipped, failed) and skip reasons
- Retry attempts
- DLQ and checkpoint writes
- Batch duration and in-flight records
- Circuit breaker state

Metrics live in a dedicated registry so that importing this module twice
(tests, reloads) never trips duplicate registration in the global one.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry(auto_describe=True)


# =============================================================================
# Core Metrics
# =============================================================================

records_processed_counter = Counter(
    "stream_records_processed_total",
    "Records processed by outcome (success, skipped, failed)",
    labelnames=["outcome"],
    registry=REGISTRY,
)

records_skipped_counter = Counter(
    "stream_records_skipped_total",
    "Records skipped by reason",
    labelnames=["reason"],
    registry=REGISTRY,
)

validation_errors_counter = Counter(
    "stream_validation_errors_total",
    "Records rejected by the validator",
    registry=REGISTRY,
)

retry_attempts_counter = Counter(
    "stream_retry_attempts_total",
    "Processor retries (attempts beyond the first)",
    registry=REGISTRY,
)

dlq_sends_counter = Counter(
    "stream_dlq_sends_total",
    "DLQ sends by result",
    labelnames=["result"],
    registry=REGISTRY,
)

checkpoint_saves_counter = Counter(
    "stream_checkpoint_saves_total",
    "Checkpoint saves by result",
    labelnames=["result"],
    registry=REGISTRY,
)

batch_duration_histogram = Histogram(
    "stream_batch_duration_seconds",
    "Time to process one batch",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    registry=REGISTRY,
)

records_in_flight_gauge = Gauge(
    "stream_records_in_flight",
    "Record tasks currently holding a concurrency slot",
    registry=REGISTRY,
)

circuit_breaker_state_gauge = Gauge(
    "circuit_breaker_state",
    "Circuit state (0=closed, 1=half_open, 2=open)",
    labelnames=["circuit_name"],
    registry=REGISTRY,
)

circuit_breaker_failures_gauge = Gauge(
    "circuit_breaker_failures",
    "Counted failures in the current circuit state",
    labelnames=["circuit_name"],
    registry=REGISTRY,
)

circuit_breaker_calls_counter = Counter(
    "circuit_breaker_calls_total",
    "Calls through a circuit breaker by result",
    labelnames=["circuit_name", "result"],
    registry=REGISTRY,
)

circuit_breaker_transitions_counter = Counter(
    "circuit_breaker_state_transitions_total",
    "Circuit state transitions",
    labelnames=["circuit_name", "from_state", "to_state"],
    registry=REGISTRY,
)


# =============================================================================
# Helper functions
# =============================================================================


def record_outcome(outcome: str) -> None:
    records_processed_counter.labels(outcome=outcome).inc()


def record_skip(reason: str) -> None:
    records_skipped_counter.labels(reason=reason).inc()


def record_validation_error() -> None:
    validation_errors_counter.inc()


def record_retry_attempts(count: int) -> None:
    if count > 0:
        retry_attempts_counter.inc(count)


def record_dlq_send(result: str) -> None:
    dlq_sends_counter.labels(result=result).inc()


def record_checkpoint_save(result: str) -> None:
    checkpoint_saves_counter.labels(result=result).inc()


def observe_batch_duration(seconds: float) -> None:
    batch_duration_histogram.observe(seconds)


def update_in_flight(count: int) -> None:
    records_in_flight_gauge.set(count)


def render_latest() -> bytes:
    """Current metrics in the Prometheus text exposition format."""
    return generate_latest(REGISTRY)


class PrometheusCircuitMetrics:
    """MetricsCollector for CircuitBreaker backed by the registry above."""

    _COUNTERS = {
        "circuit_breaker_calls_total": circuit_breaker_calls_counter,
        "circuit_breaker_state_transitions": circuit_breaker_transitions_counter,
    }
    _GAUGES = {
        "circuit_breaker_state": circuit_breaker_state_gauge,
        "circuit_breaker_failures": circuit_breaker_failures_gauge,
    }

    def increment_counter(self, name: str, labels: dict | None = None) -> None:
        counter = self._COUNTERS.get(name)
        if counter is None:
            logger.debug("Unknown circuit counter: %s", name)
            return
        counter.labels(**(labels or {})).inc()

    def set_gauge(self, name: str, value: float, labels: dict | None = None) -> None:
        gauge = self._GAUGES.get(name)
        if gauge is None:
            logger.debug("Unknown circuit gauge: %s", name)
            return
        gauge.labels(**(labels or {})).set(value)


__all__ = [
    "REGISTRY",
    "PrometheusCircuitMetrics",
    "observe_batch_duration",
    "record_checkpoint_save",
    "record_dlq_send",
    "record_outcome",
    "record_retry_attempts",
    "record_skip",
    "record_validation_error",
    "render_latest",
    "update_in_flight",
]
