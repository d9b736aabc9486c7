"""Context variables for structured logging."""

from contextvars import ContextVar
from typing import Dict, Optional

_batch_id: ContextVar[str] = ContextVar("batch_id", default="")
_partition_id: ContextVar[str] = ContextVar("partition_id", default="")
_stage_name: ContextVar[str] = ContextVar("stage_name", default="")
_worker_id: ContextVar[str] = ContextVar("worker_id", default="")
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def set_log_context(
    batch_id: Optional[str] = None,
    partition_id: Optional[str] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> None:
    if batch_id is not None:
        _batch_id.set(batch_id)
    if partition_id is not None:
        _partition_id.set(partition_id)
    if stage is not None:
        _stage_name.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)
    if correlation_id is not None:
        _correlation_id.set(correlation_id)


def get_log_context() -> Dict[str, str]:
    return {
        "batch_id": _batch_id.get(),
        "partition_id": _partition_id.get(),
        "stage": _stage_name.get(),
        "worker_id": _worker_id.get(),
        "correlation_id": _correlation_id.get(),
    }


def clear_log_context() -> None:
    _batch_id.set("")
    _partition_id.set("")
    _stage_name.set("")
    _worker_id.set("")
    _correlation_id.set("")
