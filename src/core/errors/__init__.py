"""
Error classification and exception hierarchy.

Provides:
- ErrorKind enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for retry decisions
"""

from core.errors.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    # Enums
    ErrorKind,
    FatalError,
    # Base classes
    PipelineError,
    RecordDecodeError,
    RetryableError,
    SkippedRecordError,
    TerminalError,
    ThrottlingError,
    # Classification utilities
    classify_exception,
    is_retryable_error,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorKind",
    # Base classes
    "PipelineError",
    "SkippedRecordError",
    "RecordDecodeError",
    "RetryableError",
    "ThrottlingError",
    "TerminalError",
    "CircuitOpenError",
    "FatalError",
    "ConfigurationError",
    # Classification utilities
    "classify_exception",
    "is_retryable_error",
    "wrap_exception",
]
