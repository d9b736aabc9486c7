"""Pipeline configuration from YAML file and environment.

Loads from config/config.yaml when present; every setting has a default so
the file is optional. Environment variables override file values, and
${VAR_NAME} / ${VAR_NAME:-default} syntax is expanded inside the YAML.

Environment overrides:
    KINESIS_MAX_CONCURRENCY        records processed concurrently per batch
    KINESIS_MAX_RETRIES            processor attempts per record
    RETRY_INITIAL_DELAY_MS         first backoff delay
    RETRY_MAX_DELAY_MS             backoff cap
    IDEMPOTENCY_TTL_MS             how long an accepted event id is remembered
    IDEMPOTENCY_SWEEP_INTERVAL_MS  background sweep period
    CHECKPOINT_STORE_TYPE          memory | json | none (REPOSITORY_TYPE as fallback)
    CHECKPOINT_STORAGE_PATH        directory for the json store
    CHECKPOINT_POLICY              last_success | contiguous_prefix
    DLQ_SINK_TYPE                  memory | json | none
    DLQ_PATH                       directory for the json sink
    LOG_LEVEL                      DEBUG | INFO | WARNING | ERROR
"""

import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import ConfigurationError
from core.resilience import ConcurrencyLimiter, RetryConfig, RetryExecutor
from stream_pipeline.checkpoint_store import STORE_TYPES, create_checkpoint_store
from stream_pipeline.dedup_store import IdempotencyTracker
from stream_pipeline.dlq import DeadLetterRouter, create_dead_letter_sink
from stream_pipeline.dlq.sinks import SINK_TYPES
from stream_pipeline.orchestrator import BatchOrchestrator, CheckpointPolicy
from stream_pipeline.processors import EventProcessor, ProcessorRegistry
from stream_pipeline.validation import Validator

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        # Support both ${VAR} and ${VAR:-default} syntax
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"


@dataclass
class PipelineConfig:
    """Batch pipeline configuration.

    Configuration structure:
        pipeline:
          concurrency: {max_concurrency}
          retry: {max_attempts, initial_delay_ms, max_delay_ms, multiplier, jitter}
          idempotency: {ttl_ms, sweep_interval_ms}
          checkpoint: {store_type, storage_path, policy}
          dlq: {sink_type, path}
          logging: {level, json}
    """

    max_concurrency: int = 10
    max_attempts: int = 3
    retry_initial_delay_ms: float = 100.0
    retry_max_delay_ms: float = 5000.0
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.1
    idempotency_ttl_ms: float = 3_600_000.0
    idempotency_sweep_interval_ms: float = 300_000.0
    checkpoint_store_type: str = "memory"
    checkpoint_storage_path: str = "./.checkpoints"
    checkpoint_policy: str = CheckpointPolicy.LAST_SUCCESS.value
    dlq_sink_type: str = "memory"
    dlq_path: str = "./.dlq"
    log_level: str = "INFO"
    json_logs: bool = False

    def validate(self) -> None:
        """Check every setting and raise one ConfigurationError listing all problems."""
        errors: List[str] = []

        if self.max_concurrency < 1:
            errors.append(f"max_concurrency must be at least 1, got {self.max_concurrency}")
        if self.max_attempts < 1:
            errors.append(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.retry_initial_delay_ms < 0:
            errors.append(
                f"retry_initial_delay_ms must be non-negative, got {self.retry_initial_delay_ms}"
            )
        if self.retry_max_delay_ms < 0:
            errors.append(f"retry_max_delay_ms must be non-negative, got {self.retry_max_delay_ms}")
        if self.retry_multiplier < 1:
            errors.append(f"retry_multiplier must be at least 1, got {self.retry_multiplier}")
        if not 0 <= self.retry_jitter <= 1:
            errors.append(f"retry_jitter must be between 0 and 1, got {self.retry_jitter}")
        if self.idempotency_ttl_ms <= 0:
            errors.append(f"idempotency_ttl_ms must be positive, got {self.idempotency_ttl_ms}")
        if self.idempotency_sweep_interval_ms <= 0:
            errors.append(
                "idempotency_sweep_interval_ms must be positive, "
                f"got {self.idempotency_sweep_interval_ms}"
            )
        if self.checkpoint_store_type.lower() not in STORE_TYPES:
            errors.append(
                f"checkpoint_store_type must be one of {', '.join(STORE_TYPES)}, "
                f"got '{self.checkpoint_store_type}'"
            )
        policies = [p.value for p in CheckpointPolicy]
        if self.checkpoint_policy not in policies:
            errors.append(
                f"checkpoint_policy must be one of {', '.join(policies)}, "
                f"got '{self.checkpoint_policy}'"
            )
        if self.dlq_sink_type.lower() not in SINK_TYPES:
            errors.append(
                f"dlq_sink_type must be one of {', '.join(SINK_TYPES)}, "
                f"got '{self.dlq_sink_type}'"
            )
        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"log_level must be one of {', '.join(LOG_LEVELS)}, got '{self.log_level}'")

        if errors:
            raise ConfigurationError(
                "Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors),
                context={"errors": errors},
            )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.retry_initial_delay_ms / 1000,
            max_delay=self.retry_max_delay_ms / 1000,
            exponential_base=self.retry_multiplier,
            jitter=self.retry_jitter,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# (env var, field, type)
ENV_OVERRIDES = [
    ("KINESIS_MAX_CONCURRENCY", "max_concurrency", int),
    ("KINESIS_MAX_RETRIES", "max_attempts", int),
    ("RETRY_INITIAL_DELAY_MS", "retry_initial_delay_ms", float),
    ("RETRY_MAX_DELAY_MS", "retry_max_delay_ms", float),
    ("IDEMPOTENCY_TTL_MS", "idempotency_ttl_ms", float),
    ("IDEMPOTENCY_SWEEP_INTERVAL_MS", "idempotency_sweep_interval_ms", float),
    ("REPOSITORY_TYPE", "checkpoint_store_type", str),
    ("CHECKPOINT_STORE_TYPE", "checkpoint_store_type", str),
    ("CHECKPOINT_STORAGE_PATH", "checkpoint_storage_path", str),
    ("CHECKPOINT_POLICY", "checkpoint_policy", str),
    ("DLQ_SINK_TYPE", "dlq_sink_type", str),
    ("DLQ_PATH", "dlq_path", str),
    ("LOG_LEVEL", "log_level", str),
]

# YAML section/key → field
YAML_FIELDS = {
    ("concurrency", "max_concurrency"): ("max_concurrency", int),
    ("retry", "max_attempts"): ("max_attempts", int),
    ("retry", "initial_delay_ms"): ("retry_initial_delay_ms", float),
    ("retry", "max_delay_ms"): ("retry_max_delay_ms", float),
    ("retry", "multiplier"): ("retry_multiplier", float),
    ("retry", "jitter"): ("retry_jitter", float),
    ("idempotency", "ttl_ms"): ("idempotency_ttl_ms", float),
    ("idempotency", "sweep_interval_ms"): ("idempotency_sweep_interval_ms", float),
    ("checkpoint", "store_type"): ("checkpoint_store_type", str),
    ("checkpoint", "storage_path"): ("checkpoint_storage_path", str),
    ("checkpoint", "policy"): ("checkpoint_policy", str),
    ("dlq", "sink_type"): ("dlq_sink_type", str),
    ("dlq", "path"): ("dlq_path", str),
    ("logging", "level"): ("log_level", str),
    ("logging", "json"): ("json_logs", "bool"),
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(value: Any, kind: Any) -> Any:
    if kind == "bool":
        return _to_bool(value)
    return kind(value)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> PipelineConfig:
    """Load pipeline configuration.

    Priority (highest first):
    1. overrides (field name → value)
    2. Environment variables
    3. config.yaml
    4. Defaults

    Raises:
        FileNotFoundError: An explicit config_path does not exist
        ConfigurationError: A value cannot be parsed or fails validation
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    errors: List[str] = []

    if config_path is not None and not Path(config_path).exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_FILE
    if path.exists():
        logger.info("Loading configuration from file: %s", path)
        yaml_data = _expand_env_vars(load_yaml(path))
        pipeline = yaml_data.get("pipeline", {}) or {}
        for (section, key), (field_name, kind) in YAML_FIELDS.items():
            section_data = pipeline.get(section) or {}
            if key not in section_data or section_data[key] in (None, ""):
                continue
            try:
                values[field_name] = _coerce(section_data[key], kind)
            except (TypeError, ValueError):
                errors.append(f"pipeline.{section}.{key}: cannot parse {section_data[key]!r}")

    for env_var, field_name, kind in ENV_OVERRIDES:
        raw = environ.get(env_var)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = kind(raw)
        except ValueError:
            errors.append(f"{env_var}: cannot parse {raw!r} as {kind.__name__}")

    if overrides:
        logger.debug("Applying overrides: %s", list(overrides.keys()))
        values.update(overrides)

    if errors:
        raise ConfigurationError(
            "Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors),
            context={"errors": errors},
        )

    config = PipelineConfig(**values)
    config.validate()
    logger.debug("Configuration loaded: %s", config.to_dict())
    return config


def build_orchestrator(
    config: PipelineConfig,
    processors: ProcessorRegistry | List[EventProcessor],
    validator: Validator,
) -> BatchOrchestrator:
    """Wire a BatchOrchestrator with every component built from config."""
    config.validate()

    checkpoint_store = create_checkpoint_store(
        config.checkpoint_store_type, config.checkpoint_storage_path
    )
    dlq_sink = create_dead_letter_sink(config.dlq_sink_type, config.dlq_path)

    return BatchOrchestrator(
        processors=processors,
        validator=validator,
        idempotency=IdempotencyTracker(
            ttl_seconds=config.idempotency_ttl_ms / 1000,
            sweep_interval_seconds=config.idempotency_sweep_interval_ms / 1000,
        ),
        retry_executor=RetryExecutor(config.retry_config()),
        checkpoint_store=checkpoint_store,
        dlq_router=DeadLetterRouter(dlq_sink),
        limiter=ConcurrencyLimiter(config.max_concurrency),
        max_attempts=config.max_attempts,
        checkpoint_policy=config.checkpoint_policy,
    )


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "PipelineConfig",
    "build_orchestrator",
    "load_config",
    "load_yaml",
]
