"""Checkpoint stores for per-partition progress.

A checkpoint records the last position in a partition that the pipeline
considers safely processed. One checkpoint per partition; saving overwrites.

Supported backends:
- "memory": process-local dict (tests, single run)
- "json": one JSON file per partition (local development)
- "none": checkpointing disabled

Usage:
    store = create_checkpoint_store("json", storage_path="./.checkpoints")
    await store.save(Checkpoint(partition_id, position, time.time(), 10))
    checkpoint = await store.get(partition_id)
"""

import asyncio
import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Protocol

from core.errors import ConfigurationError
from stream_pipeline.types import Checkpoint

logger = logging.getLogger(__name__)

STORE_TYPE_MEMORY = "memory"
STORE_TYPE_JSON = "json"
STORE_TYPE_NONE = "none"
STORE_TYPE_DYNAMODB = "dynamodb"

STORE_TYPES = (STORE_TYPE_MEMORY, STORE_TYPE_JSON, STORE_TYPE_NONE, STORE_TYPE_DYNAMODB)

DEFAULT_STORAGE_PATH = "./.checkpoints"


# =============================================================================
# Protocol definition
# =============================================================================


class CheckpointStore(Protocol):
    """Protocol for checkpoint persistence."""

    async def save(self, checkpoint: Checkpoint) -> None:
        """Persist checkpoint, replacing any previous one for its partition."""
        ...

    async def get(self, partition_id: str) -> Checkpoint | None:
        """Return the latest checkpoint for partition_id, or None."""
        ...

    async def delete(self, partition_id: str) -> None:
        ...


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryCheckpointStore:
    """Process-local checkpoint store."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}

    async def save(self, checkpoint: Checkpoint) -> None:
        self._checkpoints[checkpoint.partition_id] = checkpoint
        logger.debug(
            "Saved checkpoint",
            extra={
                "partition_id": checkpoint.partition_id,
                "checkpoint_sequence": checkpoint.position,
                "record_count": checkpoint.record_count,
            },
        )

    async def get(self, partition_id: str) -> Checkpoint | None:
        return self._checkpoints.get(partition_id)

    async def delete(self, partition_id: str) -> None:
        self._checkpoints.pop(partition_id, None)

    def clear(self) -> None:
        self._checkpoints.clear()

    def __len__(self) -> int:
        return len(self._checkpoints)


# =============================================================================
# JSON implementation (local files)
# =============================================================================


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JsonCheckpointStore:
    """Local JSON file checkpoint store.

    One file per partition. Uses atomic write pattern (write to temp file,
    then os.replace). Single-process concurrency only.
    """

    def __init__(self, storage_path: str | Path = DEFAULT_STORAGE_PATH):
        self._base_path = Path(storage_path)
        self._locks: dict[str, asyncio.Lock] = {}

        logger.info(
            "JsonCheckpointStore initialized",
            extra={"storage_path": str(self._base_path)},
        )

    def _path_for(self, partition_id: str) -> Path:
        # Partition ids are stream ARNs; keep names readable but collision-free
        safe = _UNSAFE_FILENAME_CHARS.sub("_", partition_id)[-80:]
        digest = hashlib.sha1(partition_id.encode("utf-8")).hexdigest()[:12]
        return self._base_path / f"{safe}-{digest}.json"

    def _get_lock(self, partition_id: str) -> asyncio.Lock:
        if partition_id not in self._locks:
            self._locks[partition_id] = asyncio.Lock()
        return self._locks[partition_id]

    async def save(self, checkpoint: Checkpoint) -> None:
        path = self._path_for(checkpoint.partition_id)
        async with self._get_lock(checkpoint.partition_id):
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")

            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)

            # Atomic replace
            os.replace(temp_path, path)

        logger.debug(
            "Saved checkpoint to JSON file",
            extra={
                "partition_id": checkpoint.partition_id,
                "checkpoint_sequence": checkpoint.position,
                "path": str(path),
            },
        )

    async def get(self, partition_id: str) -> Checkpoint | None:
        path = self._path_for(partition_id)
        if not path.exists():
            return None

        async with self._get_lock(partition_id):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
                return Checkpoint.from_dict(data)
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Failed to load checkpoint, ignoring it",
                    extra={"path": str(path), "error": str(e)},
                )
                return None

    async def delete(self, partition_id: str) -> None:
        path = self._path_for(partition_id)
        async with self._get_lock(partition_id):
            path.unlink(missing_ok=True)


# =============================================================================
# Factory function
# =============================================================================


def create_checkpoint_store(
    store_type: str = STORE_TYPE_MEMORY,
    storage_path: str | Path | None = None,
) -> CheckpointStore | None:
    """Create a checkpoint store by type name.

    Returns:
        CheckpointStore implementation, or None when checkpointing is disabled

    Raises:
        ConfigurationError: If the store type is unknown or has no backend
    """
    store_type = (store_type or STORE_TYPE_MEMORY).lower()

    if store_type == STORE_TYPE_MEMORY:
        return InMemoryCheckpointStore()
    if store_type == STORE_TYPE_JSON:
        return JsonCheckpointStore(storage_path or DEFAULT_STORAGE_PATH)
    if store_type == STORE_TYPE_NONE:
        logger.info("Checkpointing disabled")
        return None
    if store_type == STORE_TYPE_DYNAMODB:
        raise ConfigurationError(
            "Checkpoint store type 'dynamodb' has no backend in this build. "
            "Use 'memory', 'json' or 'none'."
        )
    raise ConfigurationError(
        f"Unknown checkpoint store type: '{store_type}'. "
        f"Must be one of: {', '.join(STORE_TYPES)}."
    )


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "JsonCheckpointStore",
    "STORE_TYPES",
    "create_checkpoint_store",
]
