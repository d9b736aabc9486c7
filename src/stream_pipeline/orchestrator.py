"""
Batch orchestrator for ordered shard batches.

Runs every record of a batch through decode, dedup, validation and the
matching processor, with bounded concurrency and classified retry, then
dead-letters the failures and checkpoints the partition.

Per-record flow:
1. Derive a correlation id
2. Decode payload (undecodable → skipped)
3. Claim the event id with the idempotency tracker (duplicate → skipped)
4. Validate (invalid → claim released, skipped)
5. Find a processor (none → skipped)
6. Process through the retry executor (exhausted or terminal → claim
   released, failed)

Skipped records count as successes: re-delivering them cannot help, so they
are never reported back to the host for retry.

Usage:
    orchestrator = BatchOrchestrator(
        processors=ProcessorRegistry([UserLimitProcessor(repo)]),
        validator=SchemaValidator(schemas),
        checkpoint_store=InMemoryCheckpointStore(),
        dlq_router=DeadLetterRouter(InMemoryDeadLetterSink()),
    )
    result = await orchestrator.process_batch(records)
    return result.to_response()
"""

import inspect
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from core.errors import SkippedRecordError, classify_exception
from core.logging import LogContext, generate_batch_id, log_exception
from core.resilience import ConcurrencyLimiter, RetryExecutor, RetryStats
from core.types import ErrorKind
from stream_pipeline import metrics
from stream_pipeline.checkpoint_store import CheckpointStore
from stream_pipeline.correlation import correlation_id_for
from stream_pipeline.dedup_store import IdempotencyTracker
from stream_pipeline.dlq import DeadLetterEntry, DeadLetterRouter
from stream_pipeline.processors import EventProcessor, ProcessorRegistry
from stream_pipeline.types import (
    SKIP_DECODE_FAILED,
    SKIP_DUPLICATE,
    SKIP_NO_PROCESSOR,
    SKIP_PROCESSOR_SKIPPED,
    SKIP_VALIDATION_FAILED,
    BatchResult,
    Checkpoint,
    ProcessingOutcome,
    StreamRecord,
)
from stream_pipeline.validation import ValidationResult, Validator

logger = logging.getLogger(__name__)


class CheckpointPolicy(str, Enum):
    """Which successful record a batch checkpoint points at."""

    # Last success in input order, even if an earlier record failed
    LAST_SUCCESS = "last_success"
    # Last record of the unbroken leading run of successes
    CONTIGUOUS_PREFIX = "contiguous_prefix"


class BatchOrchestrator:
    """Processes shard batches and reports which records the host should retry."""

    def __init__(
        self,
        processors: ProcessorRegistry | list[EventProcessor],
        validator: Validator,
        idempotency: IdempotencyTracker | None = None,
        retry_executor: RetryExecutor | None = None,
        checkpoint_store: CheckpointStore | None = None,
        dlq_router: DeadLetterRouter | None = None,
        limiter: ConcurrencyLimiter | None = None,
        max_attempts: int | None = None,
        checkpoint_policy: CheckpointPolicy | str = CheckpointPolicy.LAST_SUCCESS,
        clock: Callable[[], float] = time.time,
    ):
        if not isinstance(processors, ProcessorRegistry):
            processors = ProcessorRegistry(list(processors))
        self.processors = processors
        self.validator = validator
        self.idempotency = idempotency if idempotency is not None else IdempotencyTracker()
        self.retry_executor = retry_executor if retry_executor is not None else RetryExecutor()
        self.checkpoint_store = checkpoint_store
        self.dlq_router = dlq_router if dlq_router is not None else DeadLetterRouter()
        self.limiter = limiter if limiter is not None else ConcurrencyLimiter()
        self.max_attempts = max_attempts
        self.checkpoint_policy = CheckpointPolicy(checkpoint_policy)
        self._clock = clock

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        await self.idempotency.start()

    async def stop(self) -> None:
        await self.idempotency.stop()

    async def __aenter__(self) -> "BatchOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # =========================================================================
    # Batch
    # =========================================================================

    async def process_batch(self, records: list[StreamRecord]) -> BatchResult:
        """
        Process one ordered batch.

        Never raises for per-record failures; those are reported in the
        result. DLQ and checkpoint errors are logged and do not change it.
        """
        if not records:
            logger.debug("Empty batch, nothing to do")
            return BatchResult()

        start = time.perf_counter()
        partition_id = records[0].partition_id

        with LogContext(batch_id=generate_batch_id(), partition_id=partition_id):
            logger.info("Processing batch", extra={"batch_size": len(records)})

            # One id per record, shared by its log lines, outcome and DLQ message
            jobs = [(record, correlation_id_for(record)) for record in records]
            results = await self.limiter.map(self._process_tracked, jobs)
            outcomes = [
                self._outcome_from_result(record, correlation_id, result)
                for (record, correlation_id), result in zip(jobs, results)
            ]

            successes = [o for o in outcomes if o.success]
            failures = [o for o in outcomes if not o.success]

            if failures:
                await self._dead_letter(failures)

            if successes and self.checkpoint_store is not None:
                await self._checkpoint(outcomes, len(successes))

            result = BatchResult(
                failed_identifiers=[o.record.sequence_number for o in failures],
                outcomes=outcomes,
            )

            duration = time.perf_counter() - start
            metrics.observe_batch_duration(duration)
            logger.info(
                "Batch complete",
                extra={
                    "batch_size": len(records),
                    "records_succeeded": result.succeeded - result.skipped,
                    "records_skipped": result.skipped,
                    "records_failed": result.failed,
                    "duration_ms": round(duration * 1000, 2),
                },
            )
            return result

    async def _process_tracked(self, job: tuple[StreamRecord, str]) -> ProcessingOutcome:
        record, correlation_id = job
        metrics.update_in_flight(self.limiter.in_flight)
        try:
            return await self.process_record(record, correlation_id)
        finally:
            metrics.update_in_flight(self.limiter.in_flight - 1)

    def _outcome_from_result(
        self,
        record: StreamRecord,
        correlation_id: str,
        result: ProcessingOutcome | BaseException,
    ) -> ProcessingOutcome:
        if isinstance(result, ProcessingOutcome):
            return result
        if not isinstance(result, Exception):
            # Cancellation and interpreter exits are not per-record failures
            raise result

        log_exception(
            logger,
            result,
            "Unhandled exception processing record",
            sequence_number=record.sequence_number,
            correlation_id=correlation_id,
            error_kind=ErrorKind.FATAL.value,
        )
        metrics.record_outcome("failed")
        return ProcessingOutcome(
            record=record,
            success=False,
            correlation_id=correlation_id,
            error=result,
            error_kind=ErrorKind.FATAL,
        )

    async def _dead_letter(self, failures: list[ProcessingOutcome]) -> None:
        entries = [
            DeadLetterEntry(
                record=o.record,
                error=o.error or RuntimeError("Unknown error"),
                attempt_count=o.attempt_count,
                correlation_id=o.correlation_id,
                first_attempt_time=o.first_attempt_at,
                last_attempt_time=o.last_attempt_at,
                error_kind=o.error_kind,
            )
            for o in failures
        ]
        logger.info("Handling failures", extra={"failed_count": len(entries)})
        try:
            await self.dlq_router.send_batch(entries)
        except Exception as e:
            log_exception(logger, e, "DLQ routing failed", failed_count=len(entries))

    def _checkpoint_index(self, outcomes: list[ProcessingOutcome]) -> int | None:
        if self.checkpoint_policy == CheckpointPolicy.CONTIGUOUS_PREFIX:
            index = None
            for i, outcome in enumerate(outcomes):
                if not outcome.success:
                    break
                index = i
            return index

        for i in range(len(outcomes) - 1, -1, -1):
            if outcomes[i].success:
                return i
        return None

    async def _checkpoint(self, outcomes: list[ProcessingOutcome], success_count: int) -> None:
        index = self._checkpoint_index(outcomes)
        if index is None:
            logger.debug("No checkpoint position for batch")
            return

        record = outcomes[index].record
        if any(not o.success for o in outcomes[:index]):
            logger.warning(
                "Checkpoint lies past a failed record",
                extra={"checkpoint_sequence": record.sequence_number},
            )

        checkpoint = Checkpoint(
            partition_id=record.partition_id,
            position=record.sequence_number,
            timestamp=self._clock(),
            record_count=success_count,
        )
        try:
            await self.checkpoint_store.save(checkpoint)
        except Exception as e:
            log_exception(
                logger,
                e,
                "Failed to update checkpoint",
                level=logging.WARNING,
                checkpoint_sequence=checkpoint.position,
            )
            metrics.record_checkpoint_save("failure")
            return

        metrics.record_checkpoint_save("success")
        logger.debug(
            "Checkpoint updated",
            extra={
                "checkpoint_sequence": checkpoint.position,
                "record_count": checkpoint.record_count,
            },
        )

    # =========================================================================
    # Record
    # =========================================================================

    async def process_record(
        self, record: StreamRecord, correlation_id: str | None = None
    ) -> ProcessingOutcome:
        """Run one record through the pipeline. Per-record errors become outcomes."""
        if correlation_id is None:
            correlation_id = correlation_id_for(record)
        with LogContext(correlation_id=correlation_id):
            outcome = await self._process_record(record, correlation_id)

        if not outcome.success:
            metrics.record_outcome("failed")
        elif outcome.skipped:
            metrics.record_outcome("skipped")
            metrics.record_skip(outcome.skip_reason)
        else:
            metrics.record_outcome("success")
        return outcome

    async def _process_record(
        self, record: StreamRecord, correlation_id: str
    ) -> ProcessingOutcome:
        try:
            payload = record.decode()
        except SkippedRecordError as e:
            logger.warning(
                "Record could not be decoded, skipping",
                extra={"sequence_number": record.sequence_number, "error_message": e.message},
            )
            return self._skipped(record, correlation_id, SKIP_DECODE_FAILED)

        event_id = payload.get("eventId")
        user_id = payload.get("userId")
        claim_key = str(event_id) if event_id else None

        if not event_id:
            logger.warning("Event missing eventId, cannot check idempotency")

        if event_id and user_id:
            if not self.idempotency.check_and_mark_in_progress(claim_key, str(user_id)):
                logger.info(
                    "Duplicate event detected, skipping",
                    extra={"event_id": claim_key},
                )
                return self._skipped(record, correlation_id, SKIP_DUPLICATE)

        validation = await self._validate(payload)
        if not validation.valid:
            logger.warning(
                "Event validation failed, skipping",
                extra={"event_id": claim_key, "error_message": validation.error},
            )
            self._release(claim_key)
            metrics.record_validation_error()
            return self._skipped(record, correlation_id, SKIP_VALIDATION_FAILED)

        event_type = validation.event_type
        processor = self.processors.find(event_type)
        if processor is None:
            logger.debug(
                "No processor found for event type, skipping",
                extra={"event_type": event_type},
            )
            return self._skipped(record, correlation_id, SKIP_NO_PROCESSOR)

        data = validation.data if validation.data is not None else payload
        logger.info(
            "Processing event",
            extra={
                "event_type": event_type,
                "event_id": claim_key,
                "processor": type(processor).__name__,
            },
        )

        stats = RetryStats()
        try:
            await self.retry_executor.execute(
                lambda: processor.process(data, event_type),
                max_attempts=self.max_attempts,
                stats=stats,
                operation_name=f"process:{event_type}",
            )
        except SkippedRecordError as e:
            self._release(claim_key)
            logger.info(
                "Processor skipped event",
                extra={"event_type": event_type, "skip_reason": e.reason},
            )
            return self._skipped(
                record, correlation_id, SKIP_PROCESSOR_SKIPPED, stats=stats
            )
        except Exception as e:
            self._release(claim_key)
            kind = classify_exception(e)
            log_exception(
                logger,
                e,
                "Record processing failed",
                include_traceback=False,
                error_kind=kind.value,
                attempt=stats.attempts,
                event_type=event_type,
            )
            metrics.record_retry_attempts(stats.attempts - 1)
            return ProcessingOutcome(
                record=record,
                success=False,
                correlation_id=correlation_id,
                attempt_count=stats.attempts,
                error=e,
                error_kind=kind,
                first_attempt_at=stats.first_attempt_at,
                last_attempt_at=stats.last_attempt_at,
            )

        metrics.record_retry_attempts(stats.attempts - 1)
        return ProcessingOutcome(
            record=record,
            success=True,
            correlation_id=correlation_id,
            attempt_count=stats.attempts,
            first_attempt_at=stats.first_attempt_at,
            last_attempt_at=stats.last_attempt_at,
        )

    async def _validate(self, payload: dict[str, Any]) -> ValidationResult:
        try:
            result = self.validator.validate(payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(
                "Validator raised, treating event as invalid",
                extra={"error_type": type(e).__name__, "error_message": str(e)[:200]},
            )
            return ValidationResult(valid=False, error=str(e))
        return result

    def _release(self, claim_key: str | None) -> None:
        if claim_key:
            self.idempotency.unmark_processed(claim_key)

    def _skipped(
        self,
        record: StreamRecord,
        correlation_id: str,
        reason: str,
        stats: RetryStats | None = None,
    ) -> ProcessingOutcome:
        if stats is not None:
            metrics.record_retry_attempts(stats.attempts - 1)
        return ProcessingOutcome(
            record=record,
            success=True,
            correlation_id=correlation_id,
            attempt_count=stats.attempts if stats else 0,
            skip_reason=reason,
            first_attempt_at=stats.first_attempt_at if stats else None,
            last_attempt_at=stats.last_attempt_at if stats else None,
        )


__all__ = ["BatchOrchestrator", "CheckpointPolicy"]
