"""Correlation id derivation for record tracing."""

import math
import uuid

from stream_pipeline.types import StreamRecord

SEQUENCE_SUFFIX_LENGTH = 8


def correlation_id_for(record: StreamRecord) -> str:
    """
    Derive a correlation id for a record.

    "<floor(arrival_time)>-<last 8 chars of sequence number>" when both are
    present, otherwise a random UUID4 hex string.
    """
    if record.arrival_time is not None and record.sequence_number:
        return f"{math.floor(record.arrival_time)}-{record.sequence_number[-SEQUENCE_SUFFIX_LENGTH:]}"
    return uuid.uuid4().hex


__all__ = ["correlation_id_for"]
