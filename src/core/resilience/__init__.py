"""
Resilience patterns module.

Provides fault tolerance primitives for batch record processing.

Components:
    - CircuitBreaker: State machine (closed/open/half-open)
    - RetryConfig / RetryExecutor: Classified retry with capped exponential backoff
    - @with_retry_async decorator: Retry with jitter
    - ConcurrencyLimiter: Bounded in-flight task admission
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    CircuitStats,
    get_circuit_breaker,
    reset_circuit_breakers,
)
from .concurrency import DEFAULT_MAX_CONCURRENCY, ConcurrencyLimiter
from .retry import (
    DEFAULT_RETRY,
    RetryConfig,
    RetryExecutor,
    RetryStats,
    with_retry_async,
)

__all__ = [
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "get_circuit_breaker",
    "reset_circuit_breakers",
    # Concurrency
    "ConcurrencyLimiter",
    "DEFAULT_MAX_CONCURRENCY",
    # Retry
    "RetryConfig",
    "RetryExecutor",
    "RetryStats",
    "with_retry_async",
    "DEFAULT_RETRY",
]
