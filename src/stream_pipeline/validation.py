"""
Event validation.

The orchestrator accepts any object with a validate(payload) method, sync or
async, returning a ValidationResult. SchemaValidator is the stock
implementation built on pydantic models: every event must satisfy
EventEnvelope, and event types with a registered model must satisfy it too.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    valid: bool
    event_type: str | None = None
    data: dict[str, Any] | None = None
    error: str | None = None


class Validator(Protocol):
    def validate(
        self, payload: dict[str, Any]
    ) -> ValidationResult | Awaitable[ValidationResult]:
        ...


class EventEnvelope(BaseModel):
    """Fields every event must carry. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event_id: str = Field(..., alias="eventId", min_length=1)
    event_type: str = Field(..., alias="eventType", min_length=1)
    timestamp: str = Field(..., min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)

    @field_validator("event_id", "event_type", "user_id")
    @classmethod
    def validate_non_empty_strings(cls, v: str, info) -> str:
        """Ensure identifier fields are not whitespace-only."""
        if not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty or whitespace")
        return v.strip()


def format_validation_error(error: ValidationError) -> str:
    """Join pydantic errors into one message: "field: msg; field: msg"."""
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "event"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


class SchemaValidator:
    """Validates events against the envelope and a per-event-type model."""

    def __init__(
        self,
        schemas: dict[str, type[EventEnvelope]] | None = None,
        allow_unknown_types: bool = False,
    ):
        self._schemas: dict[str, type[EventEnvelope]] = dict(schemas or {})
        self.allow_unknown_types = allow_unknown_types

    def register(self, event_type: str, model: type[EventEnvelope]) -> None:
        self._schemas[event_type] = model

    @property
    def event_types(self) -> list[str]:
        return sorted(self._schemas)

    def validate(self, payload: dict[str, Any]) -> ValidationResult:
        try:
            envelope = EventEnvelope.model_validate(payload)
        except ValidationError as e:
            return ValidationResult(valid=False, error=format_validation_error(e))

        event_type = envelope.event_type
        model = self._schemas.get(event_type)
        if model is None:
            if not self.allow_unknown_types:
                return ValidationResult(
                    valid=False,
                    event_type=event_type,
                    error=f"Unknown event type: {event_type}",
                )
            model = EventEnvelope

        try:
            validated = model.model_validate(payload)
        except ValidationError as e:
            return ValidationResult(
                valid=False,
                event_type=event_type,
                error=format_validation_error(e),
            )

        return ValidationResult(
            valid=True,
            event_type=event_type,
            data=validated.model_dump(by_alias=True),
        )


__all__ = [
    "EventEnvelope",
    "SchemaValidator",
    "ValidationResult",
    "Validator",
    "format_validation_error",
]
