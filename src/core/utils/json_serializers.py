"""json.dumps default= hook for log lines and file-backed stores."""

import dataclasses
from collections.abc import Callable
from datetime import date
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any

# First match wins; datetime is a date subclass
_CONVERTERS: tuple[tuple[type | tuple[type, ...], Callable[[Any], Any]], ...] = (
    (date, lambda v: v.isoformat()),
    (Decimal, float),
    (PurePath, str),
    ((bytes, bytearray, memoryview), lambda v: bytes(v).decode("utf-8", errors="replace")),
    (Enum, lambda v: v.value),
    (BaseException, lambda v: f"{type(v).__name__}: {v}"),
)


def json_serializer(obj: Any) -> Any:
    """
    Convert obj into something json can encode, keeping numbers numeric.

    Dataclass instances (Checkpoint, DLQ entries) become dicts, plain objects
    their __dict__, anything else str(obj).
    """
    for types, convert in _CONVERTERS:
        if isinstance(obj, types):
            return convert(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if hasattr(obj, "__dict__"):
        return vars(obj)
    return str(obj)


__all__ = ["json_serializer"]
