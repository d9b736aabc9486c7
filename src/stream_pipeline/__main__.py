"""Local batch runner. Use --help for usage."""

import argparse
import asyncio
import base64
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from config import build_orchestrator, load_config
from core.errors import ConfigurationError
from core.logging import log_worker_startup, setup_logging
from core.utils import generate_worker_id
from stream_pipeline.processors import LoggingProcessor
from stream_pipeline.types import StreamRecord
from stream_pipeline.validation import SchemaValidator

# __main__.py is at src/stream_pipeline/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

LOCAL_STREAM_ARN = "arn:aws:kinesis:us-east-1:123456789012:stream/local"

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one shard batch locally from a JSON events file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run a file of Kinesis records or bare events
  python -m stream_pipeline --events data/events.json

  # Debug logging as JSON lines
  python -m stream_pipeline --events data/events.json --log-level DEBUG --json-logs
""",
    )
    parser.add_argument(
        "--events",
        type=Path,
        required=True,
        help="JSON list of Kinesis event records or bare event objects",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: src/config/config.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (overrides LOG_LEVEL and config)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    return parser.parse_args(argv)


def _event_to_payload(event: dict[str, Any]) -> dict[str, Any]:
    # {"eventId", "type", "payload", "createdAt"} export shape
    if "payload" in event and "type" in event:
        payload = dict(event.get("payload") or {})
        created_at = event.get("createdAt")
        timestamp = (
            time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime(created_at / 1000))
            if isinstance(created_at, (int, float))
            else str(created_at or "")
        )
        return {
            "eventId": event.get("eventId"),
            "eventType": event.get("type"),
            "timestamp": timestamp,
            "userId": payload.get("userId"),
            **payload,
        }
    return event


def load_records(path: Path) -> list[StreamRecord]:
    """Read a JSON file into records.

    Accepts a {"Records": [...]} Kinesis event, a list of Kinesis records, or
    a list of bare events. Bare events are base64-wrapped with sequential
    sequence numbers.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("Records", [data])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list or a Kinesis event object")

    records = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"{path}: item {index} is not a JSON object")

        if "kinesis" in item:
            records.append(StreamRecord.from_kinesis_record(item))
            continue

        payload = _event_to_payload(item)
        created_at = item.get("createdAt")
        arrival = created_at / 1000 if isinstance(created_at, (int, float)) else time.time()
        records.append(
            StreamRecord.from_kinesis_record(
                {
                    "eventSourceARN": LOCAL_STREAM_ARN,
                    "kinesis": {
                        "partitionKey": str(payload.get("userId") or index),
                        "sequenceNumber": str(index),
                        "data": base64.b64encode(json.dumps(payload).encode("utf-8")).decode(
                            "ascii"
                        ),
                        "approximateArrivalTimestamp": arrival,
                    },
                }
            )
        )
    return records


async def run(args: argparse.Namespace) -> dict[str, Any]:
    config = load_config(args.config)
    setup_logging(
        level=args.log_level or config.log_level,
        json_format=args.json_logs or config.json_logs,
        stage="local-runner",
        worker_id=generate_worker_id("local-runner"),
    )
    log_worker_startup(logger, "stream_pipeline local runner", config.to_dict())

    records = load_records(args.events)
    logger.info("Loaded events", extra={"batch_size": len(records)})

    orchestrator = build_orchestrator(
        config,
        processors=[LoggingProcessor()],
        validator=SchemaValidator(allow_unknown_types=True),
    )
    async with orchestrator:
        result = await orchestrator.process_batch(records)

    logger.info(
        "Handler execution completed",
        extra={
            "records_succeeded": result.succeeded,
            "records_failed": result.failed,
        },
    )
    return result.to_response()


def main(argv: list[str] | None = None) -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    try:
        response = asyncio.run(run(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error running local batch: {e}", file=sys.stderr)
        return 1
    except Exception:
        logger.critical("Fatal error running local batch", exc_info=True)
        return 1

    print(json.dumps(response, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
