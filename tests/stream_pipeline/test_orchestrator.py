"""
Tests for BatchOrchestrator.

Covers the batch contract end to end with in-memory stores:
- Partial-success reporting and outcome accounting
- Deduplication within and across batches
- Retry budget, backoff bounds and dead-lettering
- Checkpoint placement under both policies
- Failure isolation (checkpoint and DLQ errors never change the result)
"""

import asyncio
from dataclasses import dataclass

import pytest

from core.errors import RetryableError, SkippedRecordError, TerminalError
from core.resilience import ConcurrencyLimiter, RetryConfig, RetryExecutor
from core.types import ErrorKind
from stream_pipeline.checkpoint_store import InMemoryCheckpointStore
from stream_pipeline.dedup_store import IdempotencyTracker
from stream_pipeline.dlq import DeadLetterRouter, InMemoryDeadLetterSink
from stream_pipeline.orchestrator import BatchOrchestrator, CheckpointPolicy
from stream_pipeline.types import (
    SKIP_DECODE_FAILED,
    SKIP_DUPLICATE,
    SKIP_NO_PROCESSOR,
    SKIP_PROCESSOR_SKIPPED,
    SKIP_VALIDATION_FAILED,
)
from stream_pipeline.validation import SchemaValidator, ValidationResult
from tests.stream_pipeline.conftest import (
    STREAM_ARN,
    FakeClock,
    RecordingProcessor,
    make_batch,
    make_event,
    make_record,
    no_sleep,
)

# =============================================================================
# Harness
# =============================================================================


class AcceptAllValidator:
    def __init__(self):
        self.calls = 0

    def validate(self, payload):
        self.calls += 1
        return ValidationResult(valid=True, event_type=payload.get("eventType"), data=payload)


class AsyncRejectingValidator:
    async def validate(self, payload):
        await asyncio.sleep(0)
        return ValidationResult(valid=False, error="amount: must be positive")


class RaisingValidator:
    def validate(self, payload):
        raise RuntimeError("schema registry unavailable")


class FailingCheckpointStore(InMemoryCheckpointStore):
    async def save(self, checkpoint):
        raise ConnectionError("checkpoint table unavailable")


class FailingSink:
    async def send(self, message):
        raise ConnectionError("dlq unavailable")


class ExplodingRouter(DeadLetterRouter):
    async def send_batch(self, entries):
        raise RuntimeError("router bug")


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@dataclass
class Harness:
    orchestrator: BatchOrchestrator
    processor: RecordingProcessor
    store: InMemoryCheckpointStore
    sink: InMemoryDeadLetterSink
    tracker: IdempotencyTracker


def build(
    processor=None,
    validator=None,
    store=None,
    sink=None,
    sleep=no_sleep,
    max_attempts=3,
    **kwargs,
) -> Harness:
    processor = processor or RecordingProcessor()
    store = store if store is not None else InMemoryCheckpointStore()
    sink = sink if sink is not None else InMemoryDeadLetterSink()
    tracker = IdempotencyTracker(ttl_seconds=3600)
    orchestrator = BatchOrchestrator(
        processors=[processor],
        validator=validator or SchemaValidator(allow_unknown_types=True),
        idempotency=tracker,
        retry_executor=RetryExecutor(RetryConfig(max_attempts=max_attempts), sleep=sleep),
        checkpoint_store=store,
        dlq_router=kwargs.pop("dlq_router", None) or DeadLetterRouter(sink),
        **kwargs,
    )
    return Harness(orchestrator, processor, store, sink, tracker)


def always_failing(*event_ids, error=None):
    return RecordingProcessor(
        fail_always={eid: error or RetryableError("downstream timeout") for eid in event_ids}
    )


# =============================================================================
# Batch contract
# =============================================================================


class TestBatchContract:

    @pytest.mark.asyncio
    async def test_all_records_succeed(self):
        h = build()
        records = make_batch(5)

        result = await h.orchestrator.process_batch(records)

        assert result.failed_identifiers == []
        assert result.to_response() == {"batchItemFailures": []}
        assert len(h.processor.calls) == 5
        assert len(h.sink) == 0

    @pytest.mark.asyncio
    async def test_one_outcome_per_record_in_input_order(self):
        h = build(processor=always_failing("evt-2"))
        records = make_batch(4)

        result = await h.orchestrator.process_batch(records)

        assert len(result.outcomes) == len(records)
        assert [o.record for o in result.outcomes] == records
        assert result.succeeded + result.failed == len(records)

    @pytest.mark.asyncio
    async def test_empty_batch_does_nothing(self):
        h = build(validator=AcceptAllValidator())

        result = await h.orchestrator.process_batch([])

        assert result.failed_identifiers == []
        assert result.outcomes == []
        assert h.processor.calls == []
        assert h.orchestrator.validator.calls == 0
        assert len(h.store) == 0
        assert len(h.sink) == 0

    @pytest.mark.asyncio
    async def test_failures_at_positions_two_and_four(self):
        h = build(processor=always_failing("evt-3", "evt-5"))
        records = make_batch(5)

        result = await h.orchestrator.process_batch(records)

        assert result.failed_identifiers == ["3", "5"]
        assert result.to_response() == {
            "batchItemFailures": [{"itemIdentifier": "3"}, {"itemIdentifier": "5"}]
        }
        assert sorted(m.sequence_number for m in h.sink.messages) == ["3", "5"]

        checkpoint = await h.store.get(STREAM_ARN)
        assert checkpoint.position == "4"
        assert checkpoint.record_count == 3

    @pytest.mark.asyncio
    async def test_correlation_ids_derived_from_record(self):
        h = build()
        record = make_record(sequence_number="12345678901", arrival_time=1700000000.7)

        result = await h.orchestrator.process_batch([record])

        assert result.outcomes[0].correlation_id == "1700000000-45678901"

    @pytest.mark.asyncio
    async def test_injected_components_kept_when_empty(self):
        tracker = IdempotencyTracker(ttl_seconds=60)
        sink = InMemoryDeadLetterSink()
        router = DeadLetterRouter(sink)
        orchestrator = BatchOrchestrator(
            processors=[RecordingProcessor()],
            validator=SchemaValidator(allow_unknown_types=True),
            idempotency=tracker,
            dlq_router=router,
        )

        assert len(tracker) == 0
        assert orchestrator.idempotency is tracker
        assert orchestrator.dlq_router is router

        await orchestrator.process_batch(make_batch(2))

        assert len(tracker) == 2

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        in_flight = 0
        peak = 0

        class SlowProcessor(RecordingProcessor):
            async def process(self, data, event_type):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1

        h = build(processor=SlowProcessor(), limiter=ConcurrencyLimiter(2))
        result = await h.orchestrator.process_batch(make_batch(8))

        assert result.failed == 0
        assert peak == 2
        assert h.orchestrator.limiter.in_flight == 0

    def test_reusable_across_event_loops(self):
        class SlowProcessor(RecordingProcessor):
            async def process(self, data, event_type):
                await super().process(data, event_type)
                await asyncio.sleep(0.001)

        h = build(processor=SlowProcessor(), limiter=ConcurrencyLimiter(2))
        second_batch = [
            make_record(make_event(event_id=f"next-{i}"), sequence_number=str(10 + i))
            for i in range(1, 6)
        ]

        first = asyncio.run(h.orchestrator.process_batch(make_batch(5)))
        second = asyncio.run(h.orchestrator.process_batch(second_batch))

        assert first.failed_identifiers == []
        assert second.failed_identifiers == []
        assert first.succeeded == second.succeeded == 5
        assert len(h.processor.calls) == 10

    @pytest.mark.asyncio
    async def test_context_manager_runs_sweep(self):
        h = build()
        async with h.orchestrator as orchestrator:
            assert h.tracker.is_running
            await orchestrator.process_batch(make_batch(1))
        assert not h.tracker.is_running


# =============================================================================
# Skips
# =============================================================================


class TestSkips:

    @pytest.mark.asyncio
    async def test_undecodable_record_skipped(self):
        h = build()
        record = make_record(b"not json", sequence_number="1")

        result = await h.orchestrator.process_batch([record])

        outcome = result.outcomes[0]
        assert outcome.success
        assert outcome.skip_reason == SKIP_DECODE_FAILED
        assert result.failed_identifiers == []
        assert h.processor.calls == []

    @pytest.mark.asyncio
    async def test_validation_failure_skips_and_releases_claim(self):
        h = build(validator=AsyncRejectingValidator())

        result = await h.orchestrator.process_batch(make_batch(1))

        assert result.outcomes[0].skip_reason == SKIP_VALIDATION_FAILED
        assert result.failed_identifiers == []
        assert not h.tracker.is_processed("evt-1")
        assert h.processor.calls == []

    @pytest.mark.asyncio
    async def test_raising_validator_treated_as_invalid(self):
        h = build(validator=RaisingValidator())

        result = await h.orchestrator.process_batch(make_batch(1))

        assert result.outcomes[0].skip_reason == SKIP_VALIDATION_FAILED
        assert result.failed_identifiers == []

    @pytest.mark.asyncio
    async def test_unknown_type_with_strict_validator(self):
        h = build(validator=SchemaValidator())

        result = await h.orchestrator.process_batch(make_batch(2))

        assert [o.skip_reason for o in result.outcomes] == [SKIP_VALIDATION_FAILED] * 2

    @pytest.mark.asyncio
    async def test_no_processor_is_skip(self):
        h = build(processor=RecordingProcessor(event_types={"UserCreated"}))

        result = await h.orchestrator.process_batch(make_batch(1))

        outcome = result.outcomes[0]
        assert outcome.success
        assert outcome.skip_reason == SKIP_NO_PROCESSOR
        # The claim stays: re-delivery would find no processor either
        assert h.tracker.is_processed("evt-1")

    @pytest.mark.asyncio
    async def test_processor_skip_not_retried(self):
        processor = RecordingProcessor(fail_always={"evt-1": SkippedRecordError("stale update")})
        h = build(processor=processor)

        result = await h.orchestrator.process_batch(make_batch(1))

        outcome = result.outcomes[0]
        assert outcome.success
        assert outcome.skip_reason == SKIP_PROCESSOR_SKIPPED
        assert outcome.attempt_count == 1
        assert processor.attempts_for("evt-1") == 1
        assert not h.tracker.is_processed("evt-1")

    @pytest.mark.asyncio
    async def test_skips_advance_checkpoint(self):
        h = build()
        records = make_batch(2) + [make_record(b"garbage", sequence_number="3")]

        await h.orchestrator.process_batch(records)

        assert (await h.store.get(STREAM_ARN)).position == "3"


# =============================================================================
# Deduplication
# =============================================================================


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_duplicate_within_batch(self):
        h = build()
        records = [
            make_record(make_event(event_id="evt-1"), sequence_number="1"),
            make_record(make_event(event_id="evt-1"), sequence_number="2"),
        ]

        result = await h.orchestrator.process_batch(records)

        assert h.processor.attempts_for("evt-1") == 1
        assert [o.skip_reason for o in result.outcomes].count(SKIP_DUPLICATE) == 1
        assert result.failed_identifiers == []

    @pytest.mark.asyncio
    async def test_redelivered_batch_is_skipped(self):
        h = build()
        records = make_batch(3)

        await h.orchestrator.process_batch(records)
        result = await h.orchestrator.process_batch(records)

        assert len(h.processor.calls) == 3
        assert [o.skip_reason for o in result.outcomes] == [SKIP_DUPLICATE] * 3

    @pytest.mark.asyncio
    async def test_failed_record_reprocessed_on_redelivery(self):
        processor = RecordingProcessor(fail_times={"evt-1": [TerminalError("bad state")]})
        h = build(processor=processor)
        records = make_batch(1)

        first = await h.orchestrator.process_batch(records)
        second = await h.orchestrator.process_batch(records)

        assert first.failed_identifiers == ["1"]
        assert second.failed_identifiers == []
        assert second.outcomes[0].skip_reason is None
        assert processor.attempts_for("evt-1") == 2

    @pytest.mark.asyncio
    async def test_event_without_id_not_deduplicated(self):
        payload = {"eventType": "Ping", "userId": "user-1"}

        class AnyProcessor(RecordingProcessor):
            async def process(self, data, event_type):
                self.calls.append((data.get("eventId"), event_type))

        h = build(processor=AnyProcessor(), validator=AcceptAllValidator())
        record = make_record(payload, sequence_number="1")

        await h.orchestrator.process_batch([record])
        await h.orchestrator.process_batch([record])

        assert len(h.processor.calls) == 2
        assert len(h.tracker) == 0


# =============================================================================
# Retry and dead-lettering
# =============================================================================


class TestRetryAndDeadLetter:

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self):
        h = build(processor=always_failing("evt-1"))

        result = await h.orchestrator.process_batch(make_batch(1))

        outcome = result.outcomes[0]
        assert not outcome.success
        assert outcome.attempt_count == 3
        assert outcome.error_kind == ErrorKind.RETRYABLE
        assert h.processor.attempts_for("evt-1") == 3

        assert len(h.sink) == 1
        message = h.sink.messages[0]
        assert message.attempt_count == 3
        assert message.sequence_number == "1"
        assert message.error.type == "RetryableError"
        assert message.correlation_id == outcome.correlation_id

    @pytest.mark.asyncio
    async def test_max_attempts_override(self):
        h = build(processor=always_failing("evt-1"), max_attempts=3)
        h.orchestrator.max_attempts = 5

        await h.orchestrator.process_batch(make_batch(1))

        assert h.processor.attempts_for("evt-1") == 5

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self):
        processor = RecordingProcessor(
            fail_times={"evt-1": [RetryableError("timeout"), ConnectionResetError("reset")]}
        )
        h = build(processor=processor)

        result = await h.orchestrator.process_batch(make_batch(1))

        outcome = result.outcomes[0]
        assert outcome.success
        assert outcome.skip_reason is None
        assert outcome.attempt_count == 3
        assert len(h.sink) == 0
        assert h.tracker.is_processed("evt-1")

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self):
        h = build(processor=always_failing("evt-1", error=TerminalError("negative limit")))

        result = await h.orchestrator.process_batch(make_batch(1))

        assert h.processor.attempts_for("evt-1") == 1
        assert result.outcomes[0].error_kind == ErrorKind.TERMINAL
        assert h.sink.messages[0].error.kind == "terminal"
        assert not h.tracker.is_processed("evt-1")

    @pytest.mark.asyncio
    async def test_backoff_between_attempts_only(self):
        sleep = RecordingSleep()
        h = build(processor=always_failing("evt-1"), sleep=sleep)

        await h.orchestrator.process_batch(make_batch(1))

        assert len(sleep.delays) == 2
        assert 0.09 <= sleep.delays[0] <= 0.11
        assert 0.18 <= sleep.delays[1] <= 0.22

    @pytest.mark.asyncio
    async def test_dlq_first_attempt_time_is_arrival(self):
        h = build(processor=always_failing("evt-1"))
        record = make_record(sequence_number="1", arrival_time=1700000000.5)

        await h.orchestrator.process_batch([record])

        message = h.sink.messages[0]
        assert message.first_attempt_time == 1700000000.5
        assert message.last_attempt_time >= message.first_attempt_time

    @pytest.mark.asyncio
    async def test_dlq_failure_does_not_change_result(self):
        h = build(processor=always_failing("evt-2"))
        h.orchestrator.dlq_router = DeadLetterRouter(FailingSink())

        result = await h.orchestrator.process_batch(make_batch(3))

        assert result.failed_identifiers == ["2"]
        assert (await h.store.get(STREAM_ARN)).position == "3"

    @pytest.mark.asyncio
    async def test_dlq_router_error_is_contained(self):
        h = build(processor=always_failing("evt-1"), dlq_router=ExplodingRouter())

        result = await h.orchestrator.process_batch(make_batch(1))

        assert result.failed_identifiers == ["1"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_fatal(self):
        class BrokenProcessor(RecordingProcessor):
            def can_handle(self, event_type):
                raise RuntimeError("registry bug")

        h = build(processor=BrokenProcessor())

        result = await h.orchestrator.process_batch(make_batch(2))

        assert result.failed_identifiers == ["1", "2"]
        assert all(o.error_kind == ErrorKind.FATAL for o in result.outcomes)
        assert [m.error.kind for m in h.sink.messages] == ["fatal", "fatal"]
        assert await h.store.get(STREAM_ARN) is None

    @pytest.mark.asyncio
    async def test_fatal_outcome_and_dlq_message_share_correlation_id(self):
        class BrokenProcessor(RecordingProcessor):
            def can_handle(self, event_type):
                raise RuntimeError("registry bug")

        h = build(processor=BrokenProcessor())
        # No arrival time, so each id is random
        records = [
            make_record(make_event(event_id=f"evt-{i}"), sequence_number=str(i), arrival_time=None)
            for i in (1, 2)
        ]

        result = await h.orchestrator.process_batch(records)

        by_sequence = {m.sequence_number: m.correlation_id for m in h.sink.messages}
        for outcome in result.outcomes:
            assert outcome.error_kind == ErrorKind.FATAL
            assert by_sequence[outcome.record.sequence_number] == outcome.correlation_id


# =============================================================================
# Checkpointing
# =============================================================================


class TestCheckpointing:

    @pytest.mark.asyncio
    async def test_checkpoint_at_last_record(self):
        clock = FakeClock(now=1700000100.0)
        h = build(clock=clock)

        await h.orchestrator.process_batch(make_batch(4))

        checkpoint = await h.store.get(STREAM_ARN)
        assert checkpoint.partition_id == STREAM_ARN
        assert checkpoint.position == "4"
        assert checkpoint.record_count == 4
        assert checkpoint.timestamp == 1700000100.0

    @pytest.mark.asyncio
    async def test_checkpoint_is_input_order_not_highest_sequence(self):
        h = build()
        records = [
            make_record(make_event(event_id="a"), sequence_number="20"),
            make_record(make_event(event_id="b"), sequence_number="10"),
        ]

        await h.orchestrator.process_batch(records)

        assert (await h.store.get(STREAM_ARN)).position == "10"

    @pytest.mark.asyncio
    async def test_no_checkpoint_when_all_fail(self):
        h = build(processor=always_failing("evt-1", "evt-2"))

        await h.orchestrator.process_batch(make_batch(2))

        assert await h.store.get(STREAM_ARN) is None

    @pytest.mark.asyncio
    async def test_last_success_policy_passes_failed_record(self):
        h = build(processor=always_failing("evt-1"))

        await h.orchestrator.process_batch(make_batch(3))

        assert (await h.store.get(STREAM_ARN)).position == "3"

    @pytest.mark.asyncio
    async def test_contiguous_prefix_policy(self):
        h = build(
            processor=always_failing("evt-3", "evt-5"),
            checkpoint_policy=CheckpointPolicy.CONTIGUOUS_PREFIX,
        )

        await h.orchestrator.process_batch(make_batch(5))

        checkpoint = await h.store.get(STREAM_ARN)
        assert checkpoint.position == "2"

    @pytest.mark.asyncio
    async def test_contiguous_prefix_with_leading_failure(self):
        h = build(processor=always_failing("evt-1"), checkpoint_policy="contiguous_prefix")

        await h.orchestrator.process_batch(make_batch(3))

        assert await h.store.get(STREAM_ARN) is None

    @pytest.mark.asyncio
    async def test_checkpoint_save_failure_swallowed(self):
        h = build(store=FailingCheckpointStore())

        result = await h.orchestrator.process_batch(make_batch(2))

        assert result.failed_identifiers == []
        assert result.succeeded == 2

    @pytest.mark.asyncio
    async def test_checkpointing_disabled(self):
        h = build()
        h.orchestrator.checkpoint_store = None

        result = await h.orchestrator.process_batch(make_batch(2))

        assert result.succeeded == 2

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValueError):
            build(checkpoint_policy="newest")
