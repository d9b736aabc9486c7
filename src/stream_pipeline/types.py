"""Record, outcome and checkpoint types for shard batch processing."""

import base64
import binascii
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from core.errors import RecordDecodeError
from core.types import ErrorKind

__all__ = [
    "UNKNOWN_PARTITION",
    "StreamRecord",
    "ProcessingOutcome",
    "BatchResult",
    "Checkpoint",
    "records_from_kinesis_event",
    "SKIP_DECODE_FAILED",
    "SKIP_DUPLICATE",
    "SKIP_VALIDATION_FAILED",
    "SKIP_NO_PROCESSOR",
    "SKIP_PROCESSOR_SKIPPED",
]

UNKNOWN_PARTITION = "unknown-shard"

# Skip reasons reported on successful-but-not-processed outcomes
SKIP_DECODE_FAILED = "decode_failed"
SKIP_DUPLICATE = "duplicate"
SKIP_VALIDATION_FAILED = "validation_failed"
SKIP_NO_PROCESSOR = "no_processor"
SKIP_PROCESSOR_SKIPPED = "processor_skipped"


@dataclass(frozen=True)
class StreamRecord:
    """One record of an ordered shard batch.

    payload holds the record data as delivered: base64 text (Kinesis event
    shape) or raw JSON bytes.
    """

    partition_key: str
    sequence_number: str
    payload: bytes
    arrival_time: float | None = None
    partition_id: str = UNKNOWN_PARTITION

    def decode(self) -> dict[str, Any]:
        """Decode the payload into a JSON object.

        Raises:
            RecordDecodeError: payload is not UTF-8 JSON describing an object
        """
        raw = self.payload
        if isinstance(raw, str):
            raw = raw.encode("utf-8")

        try:
            raw = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            # Not base64; treat as raw JSON bytes
            pass

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise RecordDecodeError("Record payload is not valid UTF-8", cause=e) from e

        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise RecordDecodeError(f"Record payload is not valid JSON: {e.msg}", cause=e) from e

        if not isinstance(value, dict):
            raise RecordDecodeError(
                f"Record payload must be a JSON object, got {type(value).__name__}"
            )
        return value

    @classmethod
    def from_kinesis_record(cls, record: dict[str, Any]) -> "StreamRecord":
        """Build from a Lambda-style Kinesis event record."""
        kinesis = record.get("kinesis", {})
        data = kinesis.get("data", "")
        arrival = kinesis.get("approximateArrivalTimestamp")
        return cls(
            partition_key=str(kinesis.get("partitionKey", "")),
            sequence_number=str(kinesis.get("sequenceNumber", "")),
            payload=data.encode("utf-8") if isinstance(data, str) else bytes(data),
            arrival_time=float(arrival) if arrival is not None else None,
            partition_id=record.get("eventSourceARN") or UNKNOWN_PARTITION,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe view that can be replayed through from_kinesis_record."""
        payload = self.payload.decode("utf-8", errors="replace")
        return {
            "eventSourceARN": self.partition_id,
            "kinesis": {
                "partitionKey": self.partition_key,
                "sequenceNumber": self.sequence_number,
                "data": payload,
                "approximateArrivalTimestamp": self.arrival_time,
            },
        }


@dataclass
class ProcessingOutcome:
    """Per-record result of one batch run."""

    record: StreamRecord
    success: bool
    correlation_id: str
    attempt_count: int = 0
    error: BaseException | None = None
    error_kind: ErrorKind | None = None
    skip_reason: str | None = None
    first_attempt_at: float | None = None
    last_attempt_at: float | None = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


@dataclass
class BatchResult:
    """Partial-success report for one batch."""

    failed_identifiers: list[str] = field(default_factory=list)
    outcomes: list[ProcessingOutcome] = field(default_factory=list)

    @property
    def batch_item_failures(self) -> list[dict[str, str]]:
        """Failures in the Lambda partial batch response shape."""
        return [{"itemIdentifier": seq} for seq in self.failed_identifiers]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.success and o.skipped)

    def to_response(self) -> dict[str, Any]:
        return {"batchItemFailures": self.batch_item_failures}


@dataclass
class Checkpoint:
    """Last safely-processed position in a partition."""

    partition_id: str
    position: str
    timestamp: float
    record_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            partition_id=data["partition_id"],
            position=str(data["position"]),
            timestamp=float(data["timestamp"]),
            record_count=int(data.get("record_count", 0)),
        )


def records_from_kinesis_event(event: dict[str, Any]) -> list[StreamRecord]:
    """Build records from a Lambda-style Kinesis event ({"Records": [...]})."""
    return [StreamRecord.from_kinesis_record(r) for r in event.get("Records", [])]
