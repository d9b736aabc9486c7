"""Dead-letter routing for records that exhausted their retry budget."""

from stream_pipeline.dlq.models import DLQError, DLQMessage
from stream_pipeline.dlq.router import DeadLetterEntry, DeadLetterRouter
from stream_pipeline.dlq.sinks import (
    DeadLetterSink,
    InMemoryDeadLetterSink,
    JsonFileDeadLetterSink,
    create_dead_letter_sink,
)

__all__ = [
    "DLQError",
    "DLQMessage",
    "DeadLetterEntry",
    "DeadLetterRouter",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "JsonFileDeadLetterSink",
    "create_dead_letter_sink",
]
