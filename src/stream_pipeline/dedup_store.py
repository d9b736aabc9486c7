"""In-memory idempotency tracking for at-least-once delivery.

Remembers which event ids were recently accepted so that a re-delivered
record is skipped instead of processed twice. Entries expire after a TTL;
reads evict lazily and an optional background task sweeps periodically.

All mutating methods are synchronous so check-and-mark cannot interleave
with another record task on the same event loop.

Usage:
    tracker = IdempotencyTracker(ttl_seconds=3600)
    await tracker.start()

    if tracker.check_and_mark_in_progress(event_id, user_id):
        try:
            await process(event)
        except Exception:
            tracker.unmark_processed(event_id)
            raise

    await tracker.stop()

Limitations:
- Process-local; entries do not survive a restart
- Not shared between hosts consuming the same stream
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0


@dataclass
class IdempotencyEntry:
    """Claim on an event id."""

    key: str
    owner: str
    inserted_at: float


@dataclass
class IdempotencyStats:
    tracked_count: int
    oldest_entry: float | None


class IdempotencyTracker:
    """TTL-bounded set of accepted event ids."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, IdempotencyEntry] = {}
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: IdempotencyEntry, now: float) -> bool:
        return now - entry.inserted_at > self.ttl_seconds

    def _get_live(self, key: str) -> IdempotencyEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            return None
        return entry

    def is_processed(self, key: str) -> bool:
        entry = self._get_live(key)
        if entry is None:
            return False
        self._log_duplicate(entry)
        return True

    def check_and_mark_in_progress(self, key: str, owner: str) -> bool:
        """
        Claim key for processing.

        Returns:
            True if the key was absent or expired and is now claimed,
            False if an unexpired claim already exists
        """
        entry = self._get_live(key)
        if entry is not None:
            self._log_duplicate(entry)
            return False

        self._entries[key] = IdempotencyEntry(key=key, owner=owner, inserted_at=self._clock())
        logger.debug(
            "Event marked as in progress",
            extra={"event_id": key, "entries": len(self._entries)},
        )
        return True

    def mark_processed(self, key: str, owner: str) -> None:
        self._entries[key] = IdempotencyEntry(key=key, owner=owner, inserted_at=self._clock())
        logger.debug(
            "Event marked as processed",
            extra={"event_id": key, "entries": len(self._entries)},
        )

    def unmark_processed(self, key: str) -> None:
        """Release a claim so a re-delivery can be processed again."""
        if self._entries.pop(key, None) is not None:
            logger.debug(
                "Event unmarked",
                extra={"event_id": key, "entries": len(self._entries)},
            )

    def sweep_expired(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug(
                "Swept expired idempotency entries",
                extra={"swept": len(expired), "entries": len(self._entries)},
            )
        return len(expired)

    def get_stats(self) -> IdempotencyStats:
        oldest = min((e.inserted_at for e in self._entries.values()), default=None)
        return IdempotencyStats(tracked_count=len(self._entries), oldest_entry=oldest)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Idempotency tracker cleared")

    def _log_duplicate(self, entry: IdempotencyEntry) -> None:
        logger.info(
            "Duplicate event detected",
            extra={
                "event_id": entry.key,
                "owner": entry.owner,
                "processed_at": entry.inserted_at,
            },
        )

    # =========================================================================
    # Background sweep
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the periodic sweep on the running loop. Idempotent."""
        if self.is_running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.debug(
            "Idempotency sweep started",
            extra={"delay_seconds": self.sweep_interval_seconds},
        )

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None
        logger.debug("Idempotency sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.warning(
                    "Idempotency sweep failed",
                    extra={"error": str(e)},
                    exc_info=True,
                )


__all__ = [
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_TTL_SECONDS",
    "IdempotencyEntry",
    "IdempotencyStats",
    "IdempotencyTracker",
]
