"""Log formatters for JSON and console output."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.utils.json_serializers import json_serializer

CONTEXT_FIELDS = ("stage", "batch_id", "partition_id", "worker_id", "correlation_id")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, for jq and log shippers.

    Ambient context (batch, partition, correlation) is injected from
    contextvars. Known extra fields are copied from the record; numeric ones
    are coerced so a stray string never changes a column's type downstream.
    Unknown extras are dropped.
    """

    # field name -> coercion (None means copy as-is)
    FIELDS: dict[str, type | None] = {
        # record identity
        "correlation_id": None,
        "event_id": None,
        "event_type": None,
        "sequence_number": None,
        "partition_key": None,
        "event_source_arn": None,
        # errors
        "error_kind": None,
        "error_type": None,
        "error_message": None,
        "error_code": None,
        "error": None,
        "callback_error": None,
        "skip_reason": None,
        # batch accounting
        "batch_size": int,
        "records_succeeded": int,
        "records_failed": int,
        "records_skipped": int,
        "records_duplicate": int,
        "failed_count": int,
        "duration_ms": float,
        # retry, limiter, breaker
        "attempt": int,
        "max_attempts": int,
        "delay_seconds": float,
        "retry_after": float,
        "in_flight": int,
        "circuit_name": None,
        "circuit_state": None,
        "from_state": None,
        # checkpoint, dlq, dedup
        "checkpoint_sequence": None,
        "record_count": int,
        "dlq_sink": None,
        "dlq_url": None,
        "entries": int,
        "swept": int,
        "processor": None,
        "operation": None,
    }

    # DEBUG for tracing, ERROR and above for triage
    SOURCE_LEVELS = frozenset({logging.DEBUG, logging.ERROR, logging.CRITICAL})

    @classmethod
    def _coerce(cls, field: str, value: Any) -> Any:
        convert = cls.FIELDS[field]
        if convert is None:
            return value
        try:
            return convert(value)
        except (TypeError, ValueError):
            return None

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_log_context()
        entry.update((k, context[k]) for k in CONTEXT_FIELDS if context.get(k))

        if record.levelno in self.SOURCE_LEVELS:
            entry["file"] = f"{record.filename}:{record.lineno}"

        # Record extras win over ambient context
        for field in self.FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = self._coerce(field, value)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value is not None else None,
                "stacktrace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable single-line format for local runs.

        2025-06-15 10:30:00 - WARNING - [local-runner] - [shard-1] - [batch:b-..] [c-..] #42 Message

    Levels are colored only when stderr is a terminal.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *args, use_colors: bool | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def _level(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno) if self._use_colors else None
        if color:
            return f"{color}{record.levelname}{self.RESET}"
        return record.levelname

    def format(self, record: logging.LogRecord) -> str:
        context = get_log_context()

        head = [
            datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S"),
            self._level(record),
        ]
        head.extend(f"[{context[k]}]" for k in ("stage", "partition_id") if context.get(k))

        batch_id = getattr(record, "batch_id", None) or context.get("batch_id")
        correlation_id = getattr(record, "correlation_id", None) or context.get("correlation_id")
        sequence_number = getattr(record, "sequence_number", None)

        tags = []
        if batch_id:
            tags.append(f"[batch:{batch_id}]")
        if correlation_id:
            tags.append(f"[{correlation_id}]")
        if sequence_number is not None:
            tags.append(f"#{sequence_number}")

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return " - ".join(head) + " - " + " ".join([*tags, message])
