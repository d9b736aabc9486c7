"""
Unified exception hierarchy for stream_pipeline.

Every pipeline exception carries an explicit ErrorKind so that retry and
routing decisions never depend on the exception's class name alone.
"""

# Import ErrorKind from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorKind


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        kind: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    kind: ErrorKind = ErrorKind.RETRYABLE

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.kind == ErrorKind.RETRYABLE

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Skip Signals (never retried, reported as success)
# =============================================================================


class SkippedRecordError(PipelineError):
    """Intentional short-circuit for a record that cannot be fixed by re-delivery."""

    kind = ErrorKind.SKIPPED

    def __init__(self, reason: str, cause: Exception | None = None):
        super().__init__(reason, cause, {"skip_reason": reason})
        self.reason = reason


class RecordDecodeError(SkippedRecordError):
    """Record payload is not valid base64/UTF-8/JSON object."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__("decode_failed", cause)
        self.message = message


# =============================================================================
# Retryable Errors
# =============================================================================


class RetryableError(PipelineError):
    """Base class for transient/retriable errors."""

    kind = ErrorKind.RETRYABLE


class ThrottlingError(RetryableError):
    """Downstream throttled the request - should back off."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after  # Seconds to wait if provided


# =============================================================================
# Terminal Errors (Don't Retry)
# =============================================================================


class TerminalError(PipelineError):
    """Base class for non-retriable processing errors."""

    kind = ErrorKind.TERMINAL


class CircuitOpenError(TerminalError):
    """Circuit breaker is open, rejecting requests."""

    def __init__(
        self,
        circuit_name: str,
        retry_after: float,
        cause: Exception | None = None,
    ):
        message = f"Circuit '{circuit_name}' is open"
        super().__init__(message, cause, {"circuit_name": circuit_name})
        self.circuit_name = circuit_name
        self.retry_after = retry_after


# =============================================================================
# Fatal Errors
# =============================================================================


class FatalError(PipelineError):
    """Defect outside per-record handling."""

    kind = ErrorKind.FATAL


class ConfigurationError(FatalError):
    """Invalid or unsupported configuration detected at startup."""

    pass


# =============================================================================
# Error Classification Utilities
# =============================================================================

# Foreign exceptions carry no ErrorKind. These fallbacks classify them at the
# boundary; pipeline code raises PipelineError subclasses instead.

# Lowercase message fragments of validation failures
NON_RETRYABLE_MESSAGE_MARKERS = (
    "must be one of the following values",
    "validation failed",
    "invalid",
)

# Fragments of error codes (AWS SDK style .code, else class name) of
# transient downstream failures
TRANSIENT_ERROR_IDENTIFIERS = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "RequestTimeout",
    "ServiceUnavailable",
)

THROTTLING_ERROR_IDENTIFIERS = (
    "Throttl",
    "ProvisionedThroughputExceeded",
    "TooManyRequests",
)

_TRANSIENT_BUILTINS = (TimeoutError, ConnectionError)


def _error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(exc).__name__


def _is_throttling(exc: BaseException) -> bool:
    code = _error_code(exc)
    return any(marker in code for marker in THROTTLING_ERROR_IDENTIFIERS)


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Classify an exception into an error kind.

    PipelineError subclasses carry their own kind. Anything else is
    terminal if its message reads like a validation failure, retryable
    otherwise (transient codes and unknown errors alike).
    """
    if isinstance(exc, PipelineError):
        return exc.kind

    message = str(exc).lower()
    if any(marker in message for marker in NON_RETRYABLE_MESSAGE_MARKERS):
        return ErrorKind.TERMINAL

    if isinstance(exc, _TRANSIENT_BUILTINS) or _is_throttling(exc):
        return ErrorKind.RETRYABLE

    code = _error_code(exc)
    if any(marker in code for marker in TRANSIENT_ERROR_IDENTIFIERS):
        return ErrorKind.RETRYABLE

    # Unknown errors retry
    return ErrorKind.RETRYABLE


def is_retryable_error(exc: BaseException) -> bool:
    return classify_exception(exc) == ErrorKind.RETRYABLE


def wrap_exception(
    exc: Exception,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a foreign exception in the PipelineError subclass matching its kind."""
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    kind = classify_exception(exc)
    context = context or {}
    context["error_type"] = type(exc).__name__

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        context["error_code"] = code

    if kind == ErrorKind.TERMINAL:
        return TerminalError(str(exc), cause=exc, context=context)
    if _is_throttling(exc):
        return ThrottlingError(str(exc), cause=exc, context=context)
    return RetryableError(str(exc), cause=exc, context=context)
