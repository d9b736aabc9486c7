"""DLQ router for records the pipeline gave up on."""

import asyncio
import logging
import time
from dataclasses import dataclass

from core.errors import classify_exception
from core.types import ErrorKind
from stream_pipeline import metrics
from stream_pipeline.dlq.models import DLQError, DLQMessage
from stream_pipeline.dlq.sinks import DeadLetterSink
from stream_pipeline.types import StreamRecord

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterEntry:
    """One failed record and the context of its last attempt."""

    record: StreamRecord
    error: BaseException
    attempt_count: int
    correlation_id: str
    first_attempt_time: float | None = None
    last_attempt_time: float | None = None
    error_kind: ErrorKind | None = None

    @property
    def kind(self) -> ErrorKind:
        return self.error_kind or classify_exception(self.error)


class DeadLetterRouter:
    """Builds DLQ messages and hands them to a sink.

    Send failures are logged, never raised: a DLQ outage must not change
    the batch result.
    """

    def __init__(self, sink: DeadLetterSink | None = None):
        self._sink = sink
        if sink is None:
            logger.warning("DLQ sink not configured, dead-lettering disabled")

    @property
    def sink(self) -> DeadLetterSink | None:
        return self._sink

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    def build_message(self, entry: DeadLetterEntry) -> DLQMessage:
        now = time.time()
        # Arrival time stands in for the first attempt when known
        first = entry.record.arrival_time
        if first is None:
            first = entry.first_attempt_time if entry.first_attempt_time is not None else now
        last = entry.last_attempt_time if entry.last_attempt_time is not None else now

        return DLQMessage(
            original_record=entry.record.to_dict(),
            error=DLQError.from_exception(entry.error, entry.kind),
            attempt_count=entry.attempt_count,
            first_attempt_time=first,
            last_attempt_time=last,
            correlation_id=entry.correlation_id,
        )

    async def send(self, entry: DeadLetterEntry) -> bool:
        """Send one entry. Returns True if the sink accepted it."""
        if self._sink is None:
            logger.warning(
                "DLQ not configured, cannot send failed record",
                extra={
                    "sequence_number": entry.record.sequence_number,
                    "correlation_id": entry.correlation_id,
                },
            )
            return False

        try:
            message = self.build_message(entry)
            await self._sink.send(message)
        except Exception as e:
            logger.error(
                "Failed to send record to DLQ",
                extra={
                    "sequence_number": entry.record.sequence_number,
                    "correlation_id": entry.correlation_id,
                    "error_message": str(e)[:200],
                    "error": str(entry.error)[:200],
                },
                exc_info=True,
            )
            metrics.record_dlq_send("failure")
            return False

        logger.info(
            "Record sent to DLQ",
            extra={
                "sequence_number": entry.record.sequence_number,
                "correlation_id": entry.correlation_id,
                "error_type": type(entry.error).__name__,
                "error_kind": entry.kind.value,
                "attempt": entry.attempt_count,
            },
        )
        metrics.record_dlq_send("success")
        return True

    async def send_batch(self, entries: list[DeadLetterEntry]) -> int:
        """
        Send entries concurrently.

        Returns:
            Number of entries the sink failed to accept
        """
        if not entries:
            return 0
        if self._sink is None:
            logger.warning(
                "DLQ not configured, dropping failed records",
                extra={"failed_count": len(entries)},
            )
            return len(entries)

        logger.info("Sending batch to DLQ", extra={"batch_size": len(entries)})

        results = await asyncio.gather(
            *(self.send(entry) for entry in entries), return_exceptions=True
        )
        failed_count = sum(1 for r in results if r is not True)
        if failed_count:
            logger.error(
                "Some records failed to send to DLQ",
                extra={"batch_size": len(entries), "failed_count": failed_count},
            )
        return failed_count


__all__ = ["DeadLetterEntry", "DeadLetterRouter"]
