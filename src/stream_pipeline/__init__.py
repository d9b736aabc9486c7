"""
Reliability layer for at-least-once shard batches.

Takes an ordered batch of stream records and returns a partial-success
report naming the records the host should retry, with bounded concurrency,
deduplication, classified retry, dead-lettering and checkpointing.
"""

from stream_pipeline.orchestrator import BatchOrchestrator, CheckpointPolicy
from stream_pipeline.types import (
    BatchResult,
    Checkpoint,
    ProcessingOutcome,
    StreamRecord,
    records_from_kinesis_event,
)

__version__ = "0.1.0"

__all__ = [
    "BatchOrchestrator",
    "BatchResult",
    "Checkpoint",
    "CheckpointPolicy",
    "ProcessingOutcome",
    "StreamRecord",
    "records_from_kinesis_event",
]
