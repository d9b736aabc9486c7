"""
Dead-letter message schema.

A DLQMessage carries everything needed to inspect or replay a record that
the pipeline gave up on: the original record, the final error, and attempt
timing.
"""

import time
import traceback
from typing import Any

from pydantic import BaseModel, Field

from core.errors import classify_exception
from core.types import ErrorKind


class DLQError(BaseModel):
    """Final error that sent the record to the dead-letter path."""

    message: str = Field(..., description="Error message")
    kind: str = Field(..., description="ErrorKind value (retryable, terminal, fatal)")
    type: str = Field(..., description="Exception class name")
    trace: str | None = Field(default=None, description="Formatted traceback, if available")

    @classmethod
    def from_exception(
        cls, error: BaseException, kind: ErrorKind | None = None
    ) -> "DLQError":
        trace = None
        if error.__traceback__ is not None:
            trace = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        return cls(
            message=str(error),
            kind=(kind or classify_exception(error)).value,
            type=type(error).__name__,
            trace=trace,
        )


class DLQMessage(BaseModel):
    """Schema for records routed to the dead-letter sink.

    Times are epoch seconds.

    Example:
        >>> msg = DLQMessage(
        ...     original_record=record.to_dict(),
        ...     error=DLQError.from_exception(exc),
        ...     attempt_count=3,
        ...     first_attempt_time=1700000000.0,
        ...     last_attempt_time=1700000001.5,
        ...     correlation_id="1700000000-00000042",
        ... )
    """

    original_record: dict[str, Any] = Field(..., description="Replayable view of the record")
    error: DLQError
    attempt_count: int = Field(..., ge=0, description="Processor attempts made")
    first_attempt_time: float = Field(..., description="Arrival time, or first attempt time")
    last_attempt_time: float = Field(..., description="Time of the last attempt")
    correlation_id: str = Field(..., description="Correlation id used in logs")
    dlq_timestamp: float = Field(default_factory=time.time)

    @property
    def sequence_number(self) -> str:
        return str(self.original_record.get("kinesis", {}).get("sequenceNumber", ""))


__all__ = ["DLQError", "DLQMessage"]
