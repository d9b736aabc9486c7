"""Scoped log context."""

from typing import Optional

from core.logging.context import get_log_context, set_log_context


class LogContext:
    """
    Set log context fields for the duration of a with block.

    Fields left as None keep their current value. On exit every field goes
    back to what it was on entry, including after an exception:

        with LogContext(batch_id=batch_id, partition_id=record.partition_id):
            await self._run(records)

    Each asyncio task runs in a copy of the caller's context, so a record
    task's correlation_id never leaks into a sibling task.
    """

    def __init__(
        self,
        batch_id: Optional[str] = None,
        partition_id: Optional[str] = None,
        stage: Optional[str] = None,
        worker_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        self._fields = dict(
            batch_id=batch_id,
            partition_id=partition_id,
            stage=stage,
            worker_id=worker_id,
            correlation_id=correlation_id,
        )
        self._saved: dict[str, str] = {}

    def __enter__(self) -> "LogContext":
        self._saved = get_log_context()
        set_log_context(**self._fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        set_log_context(**self._saved)
