"""
Core types used across modules.

This module provides base types and enums that are shared across the core
library to ensure consistency and type safety.
"""

from enum import Enum


class ErrorKind(Enum):
    """
    Classification of record-processing errors for handling decisions.

    Kinds:
        SKIPPED: Intentional short-circuit (duplicate, invalid payload, no
                 processor). Never retried, reported as success to the host.
        RETRYABLE: Transient failures that should retry with backoff
                   (e.g., connection resets, throttling, timeouts)
        TERMINAL: Failures that will not succeed on retry, or retryable
                  failures that exhausted the attempt budget
        FATAL: Defects outside per-record handling (configuration errors,
               bugs in batch aggregation)
    """

    SKIPPED = "skipped"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    FATAL = "fatal"


__all__ = [
    "ErrorKind",
]
