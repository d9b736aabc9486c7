"""
Dead-letter sinks.

A sink durably stores DLQ messages. send() raises on failure; the router
decides what to do about it.

Supported backends:
- "memory": keeps messages in a list (tests, local runs)
- "json": one JSON file per message under a directory
- "none": dead-lettering disabled
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Protocol

from core.errors import ConfigurationError
from stream_pipeline.dlq.models import DLQMessage

logger = logging.getLogger(__name__)

SINK_TYPE_MEMORY = "memory"
SINK_TYPE_JSON = "json"
SINK_TYPE_NONE = "none"

SINK_TYPES = (SINK_TYPE_MEMORY, SINK_TYPE_JSON, SINK_TYPE_NONE)

DEFAULT_DLQ_PATH = "./.dlq"


class DeadLetterSink(Protocol):
    """Protocol for dead-letter destinations."""

    async def send(self, message: DLQMessage) -> None:
        ...


class InMemoryDeadLetterSink:
    """Collects messages in memory."""

    def __init__(self) -> None:
        self.messages: list[DLQMessage] = []

    async def send(self, message: DLQMessage) -> None:
        self.messages.append(message)

    def clear(self) -> None:
        self.messages.clear()

    def __len__(self) -> int:
        return len(self.messages)


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileDeadLetterSink:
    """Writes each message to <path>/<timestamp_ms>-<sequence>.json atomically."""

    def __init__(self, path: str | Path = DEFAULT_DLQ_PATH):
        self._base_path = Path(path)
        logger.info(
            "JsonFileDeadLetterSink initialized",
            extra={"dlq_url": str(self._base_path)},
        )

    def _file_for(self, message: DLQMessage) -> Path:
        seq = _UNSAFE_FILENAME_CHARS.sub("_", message.sequence_number) or "unknown"
        return self._base_path / f"{int(message.dlq_timestamp * 1000)}-{seq}.json"

    def _write(self, message: DLQMessage) -> Path:
        self._base_path.mkdir(parents=True, exist_ok=True)
        path = self._file_for(message)
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(message.model_dump_json(indent=2), encoding="utf-8")
        os.replace(temp_path, path)
        return path

    async def send(self, message: DLQMessage) -> None:
        path = await asyncio.to_thread(self._write, message)
        logger.debug(
            "Wrote DLQ message",
            extra={"path": str(path), "correlation_id": message.correlation_id},
        )


def create_dead_letter_sink(
    sink_type: str = SINK_TYPE_MEMORY,
    path: str | Path | None = None,
) -> DeadLetterSink | None:
    """Create a dead-letter sink by type name.

    Returns:
        DeadLetterSink implementation, or None when dead-lettering is disabled

    Raises:
        ConfigurationError: If the sink type is unknown
    """
    sink_type = (sink_type or SINK_TYPE_MEMORY).lower()

    if sink_type == SINK_TYPE_MEMORY:
        return InMemoryDeadLetterSink()
    if sink_type == SINK_TYPE_JSON:
        return JsonFileDeadLetterSink(path or DEFAULT_DLQ_PATH)
    if sink_type == SINK_TYPE_NONE:
        return None
    raise ConfigurationError(
        f"Unknown DLQ sink type: '{sink_type}'. Must be one of: {', '.join(SINK_TYPES)}."
    )


__all__ = [
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "JsonFileDeadLetterSink",
    "SINK_TYPES",
    "create_dead_letter_sink",
]
