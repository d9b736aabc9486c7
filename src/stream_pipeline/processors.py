"""Event processor contract and registry.

Processors hold the business logic for validated events. The orchestrator
looks one up per record by event type and calls it through the retry
executor, so process() may be invoked more than once for the same event.
"""

import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class EventProcessor(Protocol):
    """Business handler for one or more event types."""

    def can_handle(self, event_type: str) -> bool:
        ...

    async def process(self, data: dict[str, Any], event_type: str) -> None:
        """Apply the event. Raise to fail the attempt; raise SkippedRecordError to skip."""
        ...


class ProcessorRegistry:
    """Ordered list of processors; the first one that can handle an event type wins."""

    def __init__(self, processors: list[EventProcessor] | None = None):
        self._processors: list[EventProcessor] = []
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: EventProcessor) -> None:
        if not isinstance(processor, EventProcessor):
            raise TypeError(
                f"{type(processor).__name__} does not implement can_handle/process"
            )
        self._processors.append(processor)
        logger.debug(
            "Registered event processor",
            extra={"processor": type(processor).__name__},
        )

    def find(self, event_type: str | None) -> EventProcessor | None:
        if not event_type:
            return None
        for processor in self._processors:
            if processor.can_handle(event_type):
                return processor
        logger.debug(
            "No processor found for event type",
            extra={"event_type": event_type},
        )
        return None

    @property
    def processors(self) -> list[EventProcessor]:
        return list(self._processors)

    def __len__(self) -> int:
        return len(self._processors)


class LoggingProcessor:
    """Accepts every event type and only logs it. Used by the local runner."""

    def __init__(self, event_types: set[str] | None = None):
        self._event_types = event_types

    def can_handle(self, event_type: str) -> bool:
        return self._event_types is None or event_type in self._event_types

    async def process(self, data: dict[str, Any], event_type: str) -> None:
        logger.info(
            "Processed event",
            extra={
                "event_type": event_type,
                "event_id": data.get("eventId"),
                "processor": type(self).__name__,
            },
        )


__all__ = ["EventProcessor", "LoggingProcessor", "ProcessorRegistry"]
