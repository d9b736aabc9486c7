"""Logging setup and configuration."""

import logging
import secrets
import sys
import time
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_LEVEL = logging.INFO

# Library loggers held at WARNING
NOISY_LOGGERS = ("asyncio", "urllib3")


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelNamesMapping().get(str(level).upper())
    return DEFAULT_LOG_LEVEL if resolved is None else resolved


def setup_logging(
    name: str = "stream_pipeline",
    level: int | str = DEFAULT_LOG_LEVEL,
    json_format: bool = False,
    log_file: Path | None = None,
    stage: str | None = None,
    worker_id: str | None = None,
    suppress_noisy: bool = True,
) -> logging.Logger:
    """
    Install handlers on the root logger, replacing any already there.

    Console output goes to stderr so stdout stays free for the batch
    response. A log_file always gets JSON lines, whatever the console uses.

    Args:
        name: Logger name to return
        level: Level name or number; unknown names fall back to INFO
        json_format: JSON lines on the console instead of the console format
        log_file: Extra JSON-lines file, parent directories created
        stage: Stage name stamped on every line via log context
        worker_id: Worker id stamped on every line via log context
        suppress_noisy: Hold NOISY_LOGGERS at WARNING
    """
    set_log_context(stage=stage, worker_id=worker_id)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    handlers[0].setFormatter(JSONFormatter() if json_format else ConsoleFormatter())

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    root = logging.getLogger()
    root.setLevel(_resolve_level(level))
    root.handlers[:] = handlers

    if suppress_noisy:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug("Logging initialized", extra={"operation": "setup_logging"})
    return logger


def log_worker_startup(
    logger: logging.Logger,
    worker_name: str,
    settings: dict | None = None,
) -> None:
    """Log a start line followed by one line per effective setting, sorted by key."""
    logger.info("Starting %s", worker_name)
    for key in sorted(settings or {}):
        logger.info("  %s = %s", key, settings[key])


def generate_batch_id() -> str:
    """
    Batch id for log correlation: b-YYYYMMDD-HHMMSS-xxxx (UTC, random hex suffix).
    """
    return f"b-{time.strftime('%Y%m%d-%H%M%S', time.gmtime())}-{secrets.token_hex(2)}"
