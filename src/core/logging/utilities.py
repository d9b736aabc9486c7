"""Exception logging helper."""

import logging
from typing import Any

MAX_ERROR_MESSAGE_LENGTH = 500

# Attribute names LogRecord already owns; logging raises KeyError if extra
# tries to set one of them
_RESERVED_LOG_KEYS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def _truncate(text: str) -> str:
    if len(text) <= MAX_ERROR_MESSAGE_LENGTH:
        return text
    return text[:MAX_ERROR_MESSAGE_LENGTH] + "..."


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **fields: Any,
) -> None:
    """
    Log exc with error_type, error_message and, for PipelineError, error_kind.

    Extra fields pass through as structured context. Names that collide
    with LogRecord attributes are dropped rather than raising.

    Example:
        except Exception as e:
            log_exception(logger, e, "Processor failed", event_id=event_id)
    """
    kind = getattr(exc, "kind", None)
    if fields.get("error_kind") is None and kind is not None:
        fields["error_kind"] = getattr(kind, "value", str(kind))
    fields.setdefault("error_type", type(exc).__name__)
    fields["error_message"] = _truncate(str(exc))

    extra = {k: v for k, v in fields.items() if k not in _RESERVED_LOG_KEYS}
    logger.log(level, msg, exc_info=exc if include_traceback else None, extra=extra)
