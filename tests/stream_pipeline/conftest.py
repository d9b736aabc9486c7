"""Shared fixtures and record builders for stream_pipeline tests."""

import base64
import json
from typing import Any

import pytest

from stream_pipeline.types import StreamRecord

STREAM_ARN = "arn:aws:kinesis:us-east-1:123456789012:stream/user-limits"
ARRIVAL = 1_700_000_000.5


def make_event(
    event_id: str = "evt-1",
    event_type: str = "LimitChanged",
    user_id: str = "user-1",
    **fields: Any,
) -> dict[str, Any]:
    return {
        "eventId": event_id,
        "eventType": event_type,
        "timestamp": "2025-01-01T00:00:00.000Z",
        "userId": user_id,
        **fields,
    }


def make_record(
    payload: dict[str, Any] | bytes | None = None,
    sequence_number: str = "49590338271490256608559692538361571095921575989136588898",
    arrival_time: float | None = ARRIVAL,
    partition_id: str = STREAM_ARN,
    partition_key: str = "user-1",
) -> StreamRecord:
    """Record with a base64 payload, the way Kinesis delivers it."""
    if payload is None:
        payload = make_event()
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return StreamRecord(
        partition_key=partition_key,
        sequence_number=sequence_number,
        payload=base64.b64encode(raw),
        arrival_time=arrival_time,
        partition_id=partition_id,
    )


def make_batch(count: int, **overrides: Any) -> list[StreamRecord]:
    """count records with distinct event ids and sequence numbers "1".."count"."""
    return [
        make_record(make_event(event_id=f"evt-{i}", **overrides), sequence_number=str(i))
        for i in range(1, count + 1)
    ]


class FakeClock:
    def __init__(self, now: float = ARRIVAL):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingProcessor:
    """Handles every event type (or only event_types) and records each attempt.

    fail_always: event_id -> exception raised on every attempt
    fail_times: event_id -> exceptions raised on successive attempts, then success
    """

    def __init__(self, fail_always=None, fail_times=None, event_types=None):
        self.fail_always = dict(fail_always or {})
        self.fail_times = {k: list(v) for k, v in (fail_times or {}).items()}
        self.event_types = event_types
        self.calls: list[tuple[str, str]] = []

    def can_handle(self, event_type: str) -> bool:
        return self.event_types is None or event_type in self.event_types

    async def process(self, data: dict[str, Any], event_type: str) -> None:
        event_id = data["eventId"]
        self.calls.append((event_id, event_type))
        if event_id in self.fail_always:
            raise self.fail_always[event_id]
        pending = self.fail_times.get(event_id)
        if pending:
            raise pending.pop(0)

    def attempts_for(self, event_id: str) -> int:
        return sum(1 for called_id, _ in self.calls if called_id == event_id)


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def processor():
    return RecordingProcessor()
