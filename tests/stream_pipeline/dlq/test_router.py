"""Tests for DeadLetterRouter."""

import pytest

from core.errors import RetryableError, TerminalError
from core.types import ErrorKind
from stream_pipeline.dlq import DeadLetterEntry, DeadLetterRouter, InMemoryDeadLetterSink
from tests.stream_pipeline.conftest import ARRIVAL, make_record


class FailingSink:
    """Sink that rejects messages for the listed sequence numbers."""

    def __init__(self, fail_sequences=None):
        self.fail_sequences = set(fail_sequences or [])
        self.accepted = []

    async def send(self, message):
        if not self.fail_sequences or message.sequence_number in self.fail_sequences:
            raise ConnectionError("sink unavailable")
        self.accepted.append(message)


def entry(seq: str = "1", error=None, arrival_time=ARRIVAL, **kwargs) -> DeadLetterEntry:
    return DeadLetterEntry(
        record=make_record(sequence_number=seq, arrival_time=arrival_time),
        error=error or RetryableError("timeout"),
        attempt_count=3,
        correlation_id=f"c-{seq}",
        **kwargs,
    )


class TestBuildMessage:

    def test_first_attempt_time_prefers_arrival(self):
        router = DeadLetterRouter(InMemoryDeadLetterSink())
        message = router.build_message(
            entry(first_attempt_time=ARRIVAL + 5, last_attempt_time=ARRIVAL + 9)
        )

        assert message.first_attempt_time == ARRIVAL
        assert message.last_attempt_time == ARRIVAL + 9
        assert message.attempt_count == 3
        assert message.correlation_id == "c-1"
        assert message.original_record["kinesis"]["sequenceNumber"] == "1"

    def test_first_attempt_time_falls_back_to_attempt_time(self):
        router = DeadLetterRouter(InMemoryDeadLetterSink())
        message = router.build_message(entry(arrival_time=None, first_attempt_time=123.0))
        assert message.first_attempt_time == 123.0

    def test_times_default_to_now(self):
        router = DeadLetterRouter(InMemoryDeadLetterSink())
        message = router.build_message(entry(arrival_time=None))

        assert message.first_attempt_time > 1_600_000_000
        assert message.last_attempt_time >= message.first_attempt_time

    def test_error_kind_override(self):
        router = DeadLetterRouter(InMemoryDeadLetterSink())
        message = router.build_message(entry(error=RuntimeError("bug"), error_kind=ErrorKind.FATAL))
        assert message.error.kind == "fatal"

    def test_error_kind_classified(self):
        router = DeadLetterRouter(InMemoryDeadLetterSink())
        message = router.build_message(entry(error=TerminalError("bad")))
        assert message.error.kind == "terminal"
        assert message.error.type == "TerminalError"


class TestSend:

    @pytest.mark.asyncio
    async def test_send_success(self):
        sink = InMemoryDeadLetterSink()
        assert await DeadLetterRouter(sink).send(entry()) is True
        assert len(sink) == 1

    @pytest.mark.asyncio
    async def test_send_failure_returns_false(self):
        assert await DeadLetterRouter(FailingSink()).send(entry()) is False

    @pytest.mark.asyncio
    async def test_send_without_sink(self):
        router = DeadLetterRouter()
        assert router.enabled is False
        assert await router.send(entry()) is False


class TestSendBatch:

    @pytest.mark.asyncio
    async def test_all_sent(self):
        sink = InMemoryDeadLetterSink()
        failed = await DeadLetterRouter(sink).send_batch([entry("1"), entry("2"), entry("3")])

        assert failed == 0
        assert sorted(m.sequence_number for m in sink.messages) == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_partial_failure_counted(self):
        sink = FailingSink(fail_sequences={"2"})
        failed = await DeadLetterRouter(sink).send_batch([entry("1"), entry("2"), entry("3")])

        assert failed == 1
        assert sorted(m.sequence_number for m in sink.accepted) == ["1", "3"]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        sink = InMemoryDeadLetterSink()
        assert await DeadLetterRouter(sink).send_batch([]) == 0

    @pytest.mark.asyncio
    async def test_without_sink_all_dropped(self):
        assert await DeadLetterRouter().send_batch([entry("1"), entry("2")]) == 2
